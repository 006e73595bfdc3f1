"""
Prompt assembly for extraction, reconciliation and quality passes.

Every extraction prompt states the same contract: only the NEW transcript
may supply new values, the OLD transcript is context, locked fields are
never changed, and every value needs a verbatim quote.

Prompts are written in English or German, chosen by ``request.lang``.
JSON keys and decision keywords stay English in both.
"""

from __future__ import annotations

import json
from datetime import date
from typing import Any, Optional

from formfill.schemas.exemplar import Exemplar
from formfill.schemas.extraction import CandidateValue, ExtractionRequest
from formfill.schemas.fields import EnumField, FieldSpec, FieldType
from formfill.services.value_coercer import serialize

MAX_SHOTS_PER_FIELD = 3
PER_FIELD_SHOT_CHARS = 300
CONTEXT_CHARS = 6000

ENGLISH = "en"
GERMAN = "de"


def prompt_language(lang: Optional[str]) -> str:
    """Any ``de*`` tag selects German; everything else is English."""
    return GERMAN if (lang or ENGLISH).strip().lower().startswith(GERMAN) else ENGLISH


# Type hints shown to the model, per field type
TYPE_HINTS = {
    ENGLISH: {
        FieldType.TEXT.value: "string",
        FieldType.MULTI_VALUE.value: "comma-separated string of items (or an array of strings)",
        FieldType.NUMBER.value: "number without units",
        FieldType.DATE.value: "date as YYYY-MM-DD",
        FieldType.ENUM.value: "exactly one of the allowed values",
    },
    GERMAN: {
        FieldType.TEXT.value: "Zeichenkette",
        FieldType.MULTI_VALUE.value: "kommagetrennte Liste von Einträgen (oder ein Array von Zeichenketten)",
        FieldType.NUMBER.value: "Zahl ohne Einheiten",
        FieldType.DATE.value: "Datum als YYYY-MM-DD",
        FieldType.ENUM.value: "genau einer der zulässigen Werte",
    },
}

EXTRACTION_RULES = {
    ENGLISH: [
        "Only the NEW transcript is a source of new values.",
        "The OLD transcript is context only; never extract a value that appears only there.",
        "If the NEW transcript does not mention a field, return value=null with status \"absent\".",
        "If the NEW transcript gives contradictory values, return value=null with status \"conflict\".",
        "Never propose a value for a field marked locked=true; return null for it.",
        "Never guess. An empty field is better than a wrong one.",
        "For every non-null value, \"evidence\" must be a short verbatim quote copied from the NEW transcript.",
        "Dates must be YYYY-MM-DD. Numbers plain, no units.",
    ],
    GERMAN: [
        "Nur das NEUE Transkript ist Quelle für neue Werte.",
        "Das ALTE Transkript ist nur Kontext; extrahiere nie einen Wert, der nur dort vorkommt.",
        "Wenn das NEUE Transkript ein Feld nicht erwähnt, gib value=null mit status \"absent\" zurück.",
        "Wenn das NEUE Transkript widersprüchliche Werte enthält, gib value=null mit status \"conflict\" zurück.",
        "Schlage für Felder mit locked=true NIEMALS einen Wert vor; gib dafür null zurück.",
        "Nicht raten. Ein leeres Feld ist besser als ein falsches.",
        "Für jeden Wert ungleich null muss \"evidence\" ein kurzes wörtliches Zitat aus dem NEUEN Transkript sein.",
        "Datumsformat: YYYY-MM-DD. Zahlen ohne Einheiten.",
    ],
}

RECONCILE_RULES = {
    ENGLISH: [
        "Choose EXACTLY ONE decision per field: {choices}, 'merge', or 'keep_current'.",
        "The source of new information is ONLY the NEW transcript.",
        "Never overwrite a field with locked=true; use 'keep_current'.",
        "Prefer the candidate that is consistent with the NEW transcript.",
        "If both are consistent, prefer the higher-confidence candidate.",
        "If all candidates are empty or uncertain, use 'keep_current'.",
        "'merge' is ONLY allowed for multi-value fields ({multi_ids}).",
        "For enum, text, number and date fields NEVER merge; pick the better single value.",
    ],
    GERMAN: [
        "Wähle pro Feld GENAU EINE Entscheidung: {choices}, 'merge' oder 'keep_current'.",
        "Quelle für neue Informationen ist NUR das NEUE Transkript.",
        "Felder mit locked=true NIEMALS überschreiben; nutze 'keep_current'.",
        "Bevorzuge den Kandidaten, der zum NEUEN Transkript passt.",
        "Wenn beide passen, bevorzuge den Kandidaten mit höherer Konfidenz.",
        "Wenn alle Kandidaten leer oder unsicher sind, nutze 'keep_current'.",
        "'merge' ist NUR für Mehrfach-Felder erlaubt ({multi_ids}).",
        "Für Enum-, Text-, Zahl- und Datumsfelder NIEMALS mergen; wähle den besseren Einzelwert.",
    ],
}

QUALITY_RULES = {
    ENGLISH: [
        "For each field, rate how well the value is supported by the transcript (0 = unsupported, 1 = certain).",
        "Include a short verbatim quote (<= 120 chars) supporting the value when possible.",
        "Do NOT change values; only score them.",
        "Report a contradiction ONLY when transcript text clearly conflicts with a non-null value; "
        "give a short reason and the verbatim conflicting quote.",
    ],
    GERMAN: [
        "Bewerte für jedes Feld, wie gut der Wert durch das Transkript belegt ist (0 = nicht belegt, 1 = sicher).",
        "Füge wenn möglich ein kurzes wörtliches Zitat (<= 120 Zeichen) hinzu, das den Wert belegt.",
        "Ändere die Werte NICHT, nur bewerten.",
        "Melde einen Widerspruch NUR, wenn Transkripttext einem Wert ungleich null klar widerspricht; "
        "gib einen kurzen Grund und das wörtliche widersprechende Zitat an.",
    ],
}

LABELS = {
    ENGLISH: {
        "system": "You are a cautious, extractive information-extraction system filling {scope}. "
                  "Never guess. Return only valid JSON, no explanations outside JSON. Today is {today}.",
        "scope_form": "a structured form",
        "scope_field": "one form field",
        "task_batch": "Task: Extract the value of each field below from the NEW transcript.",
        "task_single": "Task: Extract ONE field precisely: {id}.",
        "rules": "Rules:",
        "all_ids": "Include ALL field ids in the output.",
        "multi_single": "For multiple values return one comma-separated string, e.g. \"value1, value2\".",
        "solved_examples": "Solved examples (for format and judgment only):",
        "example": "Example",
        "examples": "Examples:",
        "text": "Text",
        "expected": "Expected",
        "fields": "Fields:",
        "field": "Field:",
        "current_values": "Current values:",
        "current_value": "Current value",
        "old": "OLD transcript (context only; do NOT extract from this):",
        "new": "NEW transcript (extract ONLY from this):",
        "empty": "(empty)",
        "output_shape": "Output JSON shape:",
        "output_for": "Output JSON for \"{id}\":",
        "required": "required",
        "format": "Format",
        "allowed": "Allowed values",
        "pattern": "Must match pattern",
        "guidelines": "Guidelines",
        "no_multi": "none in this form",
        "judge_system": "You are a strict verifier arbitrating between extraction candidates. Return only JSON.",
        "judge_fields": "FIELDS:",
        "judge_context": "CONTEXT (OLD transcript, then NEW transcript):",
        "judge_return": "Return JSON ONLY as { \"<fieldId>\": { \"decision\": <decision>, \"reason\": <short string> } }.",
        "quality_system": "You are a quality checker for extracted form values. Return only JSON.",
        "filled_values": "Filled values:",
        "full_transcript": "Transcript (full):",
        "quality_return": "Return JSON ONLY as { \"<fieldId>\": { \"confidence\": <0..1>, \"quote\": <string|null>, "
                          "\"contradiction\": { \"reason\": <string>, \"quote\": <string> } | null } }.",
    },
    GERMAN: {
        "system": "Du bist ein vorsichtiges, extraktives Informationsextraktionssystem und füllst {scope}. "
                  "Nicht raten. Gib nur gültiges JSON zurück, keine Erklärungen außerhalb des JSON. Heute ist {today}.",
        "scope_form": "ein strukturiertes Formular",
        "scope_field": "ein einzelnes Formularfeld",
        "task_batch": "Aufgabe: Extrahiere den Wert jedes folgenden Feldes aus dem NEUEN Transkript.",
        "task_single": "Aufgabe: Extrahiere genau EIN Feld: {id}.",
        "rules": "Regeln:",
        "all_ids": "Gib ALLE Feld-IDs in der Ausgabe an.",
        "multi_single": "Bei mehreren Werten gib eine kommagetrennte Zeichenkette zurück, z. B. \"Wert1, Wert2\".",
        "solved_examples": "Gelöste Beispiele (nur für Format und Einschätzung):",
        "example": "Beispiel",
        "examples": "Beispiele:",
        "text": "Text",
        "expected": "Erwartet",
        "fields": "Felder:",
        "field": "Feld:",
        "current_values": "Aktuelle Werte:",
        "current_value": "Aktueller Wert",
        "old": "ALTES Transkript (nur Kontext; NICHT daraus extrahieren):",
        "new": "NEUES Transkript (NUR hieraus extrahieren):",
        "empty": "(leer)",
        "output_shape": "JSON-Ausgabeformat:",
        "output_for": "JSON-Ausgabe für \"{id}\":",
        "required": "Pflichtfeld",
        "format": "Format",
        "allowed": "Zulässige Werte",
        "pattern": "Muss dem Muster entsprechen",
        "guidelines": "Leitlinien",
        "no_multi": "keine in diesem Formular",
        "judge_system": "Du bist ein strenger Verifizierer und entscheidest zwischen Extraktionskandidaten. "
                        "Gib nur JSON zurück.",
        "judge_fields": "FELDER:",
        "judge_context": "KONTEXT (ALTES Transkript, dann NEUES Transkript):",
        "judge_return": "Gib NUR JSON im Format { \"<fieldId>\": { \"decision\": <Entscheidung>, "
                        "\"reason\": <kurzer Text> } } zurück.",
        "quality_system": "Du prüfst die Qualität extrahierter Formularwerte. Gib nur JSON zurück.",
        "filled_values": "Ausgefüllte Werte:",
        "full_transcript": "Transkript (vollständig):",
        "quality_return": "Antworte NUR als JSON: { \"<fieldId>\": { \"confidence\": <0..1>, \"quote\": <Text|null>, "
                          "\"contradiction\": { \"reason\": <Text>, \"quote\": <Text> } | null } }.",
    },
}

FIELD_RESULT_SHAPE = """{
    "value": <value or null>,
    "confidence": <number 0..1>,
    "status": "extracted" | "absent" | "conflict",
    "reason": "info_not_found" | "contradictory_evidence" | "format_mismatch" | "low_confidence" | "not_applicable" | null,
    "actionMessage": <short question asking the user for the value, or null>,
    "evidence": <verbatim quote from the NEW transcript, or null>
  }"""


def _dump(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2, default=str)


def _short(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + " …"


def _bullets(lines: list[str]) -> list[str]:
    return [f"- {line}" for line in lines]


def today_iso(request: ExtractionRequest) -> str:
    return request.today or date.today().isoformat()


def describe_field(spec: FieldSpec, lang: str = ENGLISH) -> str:
    """One prompt line per field: id, label, type and guidance."""
    t = LABELS[lang]
    required = f", {t['required']}" if spec.required else ""
    lines = [f"{spec.id} ({spec.label}, type={spec.type}{required})", f"  - {t['format']}: {TYPE_HINTS[lang][spec.type]}"]
    if isinstance(spec, EnumField):
        lines.append(f"  - {t['allowed']}: {', '.join(spec.options)}")
    pattern = getattr(spec, "pattern", None)
    if pattern:
        lines.append(f"  - {t['pattern']}: {pattern}")
    if spec.description:
        lines.append(f"  - {t['guidelines']}: {spec.description}")
    return "\n".join(lines)


def current_values_block(request: ExtractionRequest, fields: list[FieldSpec]) -> list[dict[str, Any]]:
    out = []
    for f in fields:
        cv = request.current(f.id)
        out.append({
            "id": f.id,
            "value": cv.value,
            "source": cv.source,
            "locked": cv.locked,
        })
    return out


def shots_for_field(field_id: str, exemplars: list[Exemplar]) -> list[Exemplar]:
    """Exemplars that carry an expected value for ``field_id`` (most similar first)."""
    return [ex for ex in exemplars if field_id in ex.expected][:MAX_SHOTS_PER_FIELD]


def _shots_block(fields: list[FieldSpec], exemplars: list[Exemplar], lang: str) -> str:
    t = LABELS[lang]
    ids = {f.id for f in fields}
    blocks = []
    for i, ex in enumerate(exemplars[:MAX_SHOTS_PER_FIELD], start=1):
        expected = {k: v for k, v in ex.expected.items() if k in ids}
        blocks.append(f"{t['example']} {i}:\n{t['text']}: {ex.transcript}\n{t['expected']}: {_dump(expected)}")
    return "\n\n".join(blocks)


def _transcripts_block(request: ExtractionRequest, lang: str) -> list[str]:
    t = LABELS[lang]
    return [t["old"], request.old_text or t["empty"], "", t["new"], request.new_text]


def _system_prompt(request: ExtractionRequest, lang: str, scope: str) -> str:
    t = LABELS[lang]
    return t["system"].format(scope=t[scope], today=today_iso(request))


def build_batch_prompt(request: ExtractionRequest, fields: list[FieldSpec]) -> tuple[str, str]:
    """Prompt asking for every field in one response."""
    lang = prompt_language(request.lang)
    t = LABELS[lang]
    sections = [
        t["task_batch"],
        "",
        t["rules"],
        *_bullets([*EXTRACTION_RULES[lang], t["all_ids"]]),
    ]
    shots = _shots_block(fields, request.few_shots, lang)
    if shots:
        sections += ["", t["solved_examples"], shots]
    sections += [
        "",
        t["fields"],
        "\n\n".join(describe_field(f, lang) for f in fields),
        "",
        t["current_values"],
        _dump(current_values_block(request, fields)),
        "",
        *_transcripts_block(request, lang),
        "",
        t["output_shape"],
        "{\n  \"<fieldId>\": " + FIELD_RESULT_SHAPE + ",\n  ...\n}",
    ]
    return _system_prompt(request, lang, "scope_form"), "\n".join(sections)


def build_single_field_prompt(request: ExtractionRequest, spec: FieldSpec) -> tuple[str, str]:
    """Narrow prompt for one field (per-field mode and escalation)."""
    lang = prompt_language(request.lang)
    t = LABELS[lang]
    current = request.current(spec.id)
    rules = list(EXTRACTION_RULES[lang])
    if spec.type == FieldType.MULTI_VALUE.value:
        rules.append(t["multi_single"])
    sections = [t["task_single"].format(id=spec.id), "", t["rules"], *_bullets(rules)]

    shots = shots_for_field(spec.id, request.few_shots)
    if shots:
        sections += ["", t["examples"]]
        for i, ex in enumerate(shots, start=1):
            sections.append(f"{t['text']} {i}: {_short(ex.transcript, PER_FIELD_SHOT_CHARS)}")
            expected = json.dumps(serialize(ex.expected.get(spec.id), spec), ensure_ascii=False)
            sections.append(f"{t['expected']}: {expected}")

    sections += [
        "",
        t["field"],
        describe_field(spec, lang),
        f"{t['current_value']}: {json.dumps(current.value, ensure_ascii=False)} (locked: {str(current.locked).lower()})",
        "",
        *_transcripts_block(request, lang),
        "",
        t["output_for"].format(id=spec.id),
        FIELD_RESULT_SHAPE.replace("\n  ", "\n"),
    ]
    return _system_prompt(request, lang, "scope_field"), "\n".join(sections)


def build_reconcile_prompt(
    request: ExtractionRequest,
    candidates: dict[str, dict[str, CandidateValue]],
    provider_names: list[str],
) -> tuple[str, str]:
    """
    One decision prompt over the whole field set.

    ``candidates`` maps provider name -> field id -> candidate.
    """
    lang = prompt_language(request.lang)
    t = LABELS[lang]
    choices = ", ".join(f"'{p}'" for p in provider_names)
    multi_ids = ", ".join(f.id for f in request.fields if f.type == FieldType.MULTI_VALUE.value) or t["no_multi"]
    rules = [r.format(choices=choices, multi_ids=multi_ids) for r in RECONCILE_RULES[lang]]

    summaries = []
    for f in request.fields:
        cv = request.current(f.id)
        summaries.append({
            "id": f.id,
            "label": f.label,
            "type": f.type,
            "required": f.required,
            "locked": cv.locked,
            "current": cv.value,
            "options": f.options if isinstance(f, EnumField) else [],
            "guidelines": f.description,
            "candidates": {
                p: {
                    "value": candidates.get(p, {}).get(f.id, CandidateValue()).value,
                    "confidence": candidates.get(p, {}).get(f.id, CandidateValue()).confidence,
                }
                for p in provider_names
            },
        })

    user = "\n".join([
        t["rules"],
        *_bullets(rules),
        "",
        t["judge_fields"],
        _dump(summaries),
        "",
        t["judge_context"],
        _short(request.combined_transcript, CONTEXT_CHARS),
        "",
        t["judge_return"],
    ])
    return t["judge_system"], user


def build_quality_prompt(
    request: ExtractionRequest,
    accepted: dict[str, CandidateValue],
) -> tuple[str, str]:
    """Scoring prompt over one extractor's accepted values."""
    lang = prompt_language(request.lang)
    t = LABELS[lang]
    filled = {
        f.id: {"value": accepted[f.id].value, "type": f.type, "label": f.label}
        for f in request.fields
        if f.id in accepted
    }
    user = "\n".join([
        t["rules"],
        *_bullets(QUALITY_RULES[lang]),
        "",
        t["filled_values"],
        _dump(filled),
        "",
        t["full_transcript"],
        _short(request.combined_transcript, CONTEXT_CHARS),
        "",
        t["quality_return"],
    ])
    return t["quality_system"], user


def action_message(spec: FieldSpec, reason: Optional[str]) -> str:
    if reason == "contradictory_evidence":
        return f"We found conflicting values for {spec.label}. Which is correct?"
    return f"Please provide {spec.label}."

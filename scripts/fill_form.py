"""
CLI tool to run one extraction request from a JSON file.

Usage:
    python scripts/fill_form.py <request.json> [--field FIELD_ID] [--providers 2]
        [--granularity per_field] [--verifier] [--lang de] [--out result.json]

Examples:
    # Fill every field with the configured default pipeline
    python scripts/fill_form.py samples/ticket.json

    # Two providers, one prompt per field, judged by the verifier model
    python scripts/fill_form.py samples/ticket.json --providers 2 --granularity per_field --verifier

    # Just one field
    python scripts/fill_form.py samples/ticket.json --field status
"""

import argparse
import asyncio
import json
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from formfill.errors import RequestValidationError
from formfill.logging_config import setup_logging, get_logger
from formfill.services.data_extraction import create_engine

setup_logging()
logger = get_logger(__name__)


async def fill_form(
    path: str,
    field_id: str | None = None,
    providers: int | None = None,
    granularity: str | None = None,
    verifier: bool = False,
    lang: str | None = None,
) -> dict:
    """Load a request file, run the engine, and return the JSON-ready result."""
    with open(path, encoding="utf-8") as fh:
        payload = json.load(fh)

    if providers or granularity or verifier:
        pipeline = dict(payload.get("pipeline") or {})
        if providers:
            pipeline["provider_count"] = providers
        if granularity:
            pipeline["granularity"] = granularity
        if verifier:
            pipeline["reconciliation"] = "verifier"
        payload["pipeline"] = pipeline

    if lang:
        payload["lang"] = lang

    engine = create_engine()
    if field_id:
        filled = await engine.extract_one_field(payload, field_id)
        return {field_id: filled.model_dump(mode="json", exclude_none=True)}

    result = await engine.extract_all_fields(payload)
    return result.model_dump(mode="json", exclude_none=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Fill a form from a transcript request file")
    parser.add_argument("request", help="Path to a JSON extraction request")
    parser.add_argument("--field", help="Only fill this field id")
    parser.add_argument("--providers", type=int, choices=[1, 2], help="Number of extraction providers")
    parser.add_argument("--granularity", choices=["batch", "per_field"], help="One prompt, or one per field")
    parser.add_argument("--verifier", action="store_true", help="Use the verifier model to reconcile/score")
    parser.add_argument("--lang", help="Prompt language, e.g. en or de")
    parser.add_argument("--out", help="Write the result here instead of stdout")

    args = parser.parse_args()

    try:
        output = asyncio.run(fill_form(
            args.request,
            field_id=args.field,
            providers=args.providers,
            granularity=args.granularity,
            verifier=args.verifier,
            lang=args.lang,
        ))
    except RequestValidationError as e:
        logger.error("invalid_request", path=args.request, error=str(e))
        sys.exit(2)

    text = json.dumps(output, ensure_ascii=False, indent=2)
    if args.out:
        with open(args.out, "w", encoding="utf-8") as fh:
            fh.write(text + "\n")
        print(f"Result written to {args.out}")
    else:
        print(text)


if __name__ == "__main__":
    main()

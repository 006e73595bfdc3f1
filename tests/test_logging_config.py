"""Tests for log shaping helpers."""

from formfill.logging_config import _add_request_id, _shorten_text, preview, request_id_var, request_scope


class TestPreview:
    def test_short_text_untouched(self):
        assert preview("the ticket is closed") == "the ticket is closed"
        assert preview(None) is None

    def test_long_text_is_shortened(self):
        out = preview("x" * 500, limit=10)
        assert out.startswith("x" * 10)
        assert out.endswith("[500 chars]")


class TestProcessors:
    def test_transcript_keys_are_shortened(self):
        event = {"event": "extraction_started", "transcript": "y" * 400, "fields": 3}
        out = _shorten_text(None, "info", event)
        assert len(out["transcript"]) < 200
        assert out["fields"] == 3

    def test_request_scope_tags_entries(self):
        with request_scope("req-1") as rid:
            assert rid == "req-1"
            assert _add_request_id(None, "info", {"event": "x"})["request_id"] == "req-1"
        assert request_id_var.get() == ""
        assert "request_id" not in _add_request_id(None, "info", {"event": "x"})

import logging

from mediaops.logging_filters import SanitizeFilter, sanitize


def test_html_error_pages_are_trimmed_to_their_title():
    page = "<!DOCTYPE html><html><head><title>502 Bad Gateway</title></head><body>" + "x" * 500 + "</body></html>"
    out = sanitize(f"provider said: {page}")
    assert out.startswith("502 Bad Gateway")
    assert "[HTML" in out


def test_secrets_are_redacted():
    assert sanitize("Authorization: Bearer abc.def-123") == "Authorization: Bearer <redacted>"
    assert sanitize("X-Processing-Signature: q1w2e3==") == "X-Processing-Signature: <redacted>"
    assert sanitize("plain message") == "plain message"


def test_filter_rewrites_record_and_keeps_it():
    record = logging.LogRecord("uvicorn.error", logging.INFO, __file__, 1, "token %s", ("Bearer s3cr3t",), None)
    assert SanitizeFilter().filter(record) is True
    assert record.getMessage() == "token Bearer <redacted>"

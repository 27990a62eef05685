"""Tests for JSON log formatting and request-id propagation."""

import json
import logging

from pulsar.logging_config import (
    REDACTED,
    JsonFormatter,
    RequestContextFilter,
    _request_id_var,
    get_request_id,
    new_request_id,
)


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("pulsar.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formats_one_json_object():
    line = JsonFormatter().format(_record("Claimed job %s" % "abc", job_id="abc"))
    payload = json.loads(line)

    assert payload["level"] == "INFO"
    assert payload["logger"] == "pulsar.test"
    assert payload["message"] == "Claimed job abc"
    assert payload["job_id"] == "abc"
    assert "request_id" not in payload


def test_includes_bound_request_id():
    token = _request_id_var.set("req-42")
    try:
        assert get_request_id() == "req-42"
        payload = json.loads(JsonFormatter().format(_record("hello")))
    finally:
        _request_id_var.reset(token)

    assert payload["request_id"] == "req-42"
    assert get_request_id() == ""


def test_non_serializable_extra_is_stringified():
    payload = json.loads(JsonFormatter().format(_record("x", credential={"keys": {1, 2}})))
    assert isinstance(payload["credential"]["keys"], str)


def test_explicit_request_id_wins_over_context():
    token = _request_id_var.set("req-42")
    try:
        payload = json.loads(JsonFormatter().format(_record("x", request_id="9f8e7d6c")))
    finally:
        _request_id_var.reset(token)

    assert payload["request_id"] == "9f8e7d6c"


def test_filter_stamps_context_request_id():
    record = _record("x")
    token = _request_id_var.set("req-42")
    try:
        assert RequestContextFilter().filter(record) is True
    finally:
        _request_id_var.reset(token)

    # Formatting after the request ended still uses the stamped id.
    assert json.loads(JsonFormatter().format(record))["request_id"] == "req-42"


def test_sensitive_extras_redacted():
    record = _record(
        "Worker auth",
        authorization="Bearer s3cret",
        credential={"scheme": "exact", "signature": "0xdeadbeef"},
    )
    payload = json.loads(JsonFormatter().format(record))

    assert payload["authorization"] == REDACTED
    assert payload["credential"] == {"scheme": "exact", "signature": REDACTED}
    assert "0xdeadbeef" not in json.dumps(payload)


def test_new_request_id_is_8_hex_chars():
    request_id = new_request_id()
    assert len(request_id) == 8
    int(request_id, 16)

import json
import logging
import sys

from gatekeeper.core.logging_setup import JsonFormatter


def _record(msg, exc_info=None):
    return logging.LogRecord("gatekeeper.test", logging.WARNING, __file__, 1, msg, ("bob",), exc_info)


def test_json_formatter_emits_one_object_per_record():
    payload = json.loads(JsonFormatter().format(_record("locked out %s")))

    assert payload["level"] == "WARNING"
    assert payload["logger"] == "gatekeeper.test"
    assert payload["message"] == "locked out bob"
    assert payload["timestamp"].endswith("+00:00")
    assert "exception" not in payload


def test_json_formatter_includes_traceback():
    try:
        raise ValueError("boom")
    except ValueError:
        record = _record("failed for %s", sys.exc_info())

    payload = json.loads(JsonFormatter().format(record))
    assert "ValueError: boom" in payload["exception"]

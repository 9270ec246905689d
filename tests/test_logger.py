from __future__ import annotations

import json
import logging
from pathlib import Path
import sys


ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from replyflow.utils.logger import (
    SimpleFormatter,
    StructuredJsonFormatter,
    clear_request_context,
    set_request_id,
)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("replyflow.test", logging.INFO, __file__, 1, "rule matched", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields_and_request_id() -> None:
    set_request_id("req-123")
    try:
        line = StructuredJsonFormatter().format(_record(event_code="automation.rule.evaluated", rule_id="auto_1"))
    finally:
        clear_request_context()

    payload = json.loads(line)
    assert payload["message"] == "rule matched"
    assert payload["request_id"] == "req-123"
    assert payload["event_code"] == "automation.rule.evaluated"
    assert payload["rule_id"] == "auto_1"
    assert "pathname" not in payload


def test_simple_formatter_appends_known_extras() -> None:
    line = SimpleFormatter().format(_record(event_code="webhook.delivery.retry", owner_id="u1"))

    assert "rule matched" in line
    assert "event_code=webhook.delivery.retry" in line
    assert "owner_id=u1" in line


def test_set_request_id_generates_when_missing() -> None:
    try:
        generated = set_request_id()
    finally:
        clear_request_context()

    assert generated
    assert len(generated) == 12

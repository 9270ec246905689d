from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import sys
from typing import Any

import pytest


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from replyflow.automation.actions import (
    ActionExecutor,
    ActionHandler,
    ArchiveHandler,
    ForwardHandler,
    SendMessageHandler,
    render_template,
)
from replyflow.automation.matcher import TriggerMatcher
from replyflow.automation.models import ActionKind, AutomationRule, InboundMessageEvent


FIXED_NOW = datetime(2026, 3, 1, 9, 30, 15, tzinfo=timezone.utc)


def _rule(action: str, **params: Any) -> AutomationRule:
    return AutomationRule(
        id="auto_1",
        owner_id="u1",
        name="rule",
        trigger="keyword:price",
        action=action,
        action_params=dict(params),
    )


def _event(body: str = "What is the price?", sender: str = "alice") -> InboundMessageEvent:
    return InboundMessageEvent(id="m1", sender=sender, body=body)


def _executor() -> ActionExecutor:
    return ActionExecutor(clock=lambda: FIXED_NOW)


def test_render_template_replaces_known_placeholders() -> None:
    rendered = render_template("{sender} said {message} at {time} on {date} {unknown}", _event("hi"), FIXED_NOW)

    assert rendered == "alice said hi at 09:30:15 on 2026-03-01 {unknown}"


def test_render_template_defaults_missing_sender() -> None:
    rendered = render_template("Hi {sender}", _event(sender=""), FIXED_NOW)

    assert rendered == "Hi User"


def test_send_message_renders_reply_for_sender() -> None:
    rule = _rule("SEND_MESSAGE", responseMessage="Hi {sender}, prices are on our site")

    result = _executor().execute(rule, _event())

    assert result.success is True
    assert result.details == {
        "type": "SEND_MESSAGE",
        "message": "Hi alice, prices are on our site",
        "recipient": "alice",
        "timestamp": FIXED_NOW.isoformat(),
    }
    assert result.duration_ms >= 0


def test_send_message_without_template_uses_default_reply() -> None:
    result = _executor().execute(_rule("SEND_MESSAGE"), _event())

    assert result.details["message"] == "Auto-reply"


def test_forward_uses_configured_target_or_default() -> None:
    executor = ActionExecutor(default_forward_target="ops", clock=lambda: FIXED_NOW)

    explicit = executor.execute(_rule("FORWARD", forwardTo="sales"), _event())
    fallback = executor.execute(_rule("FORWARD"), _event())

    assert explicit.details["forwardTo"] == "sales"
    assert explicit.details["originalMessage"] == "What is the price?"
    assert fallback.details["forwardTo"] == "ops"


def test_archive_records_message_id() -> None:
    result = _executor().execute(_rule("ARCHIVE"), _event())

    assert result.details == {"type": "ARCHIVE", "messageId": "m1", "archivedAt": FIXED_NOW.isoformat()}


def test_unknown_action_returns_failed_result() -> None:
    result = _executor().execute(_rule("SHOUT"), _event())

    assert result.success is False
    assert result.details is None
    assert "SHOUT" in str(result.error)
    assert result.to_dict()["error"] == result.error


def test_handler_exception_becomes_failed_result() -> None:
    class _ExplodingArchive(ArchiveHandler):
        def run(self, rule, event, now):  # type: ignore[override]
            raise RuntimeError("disk full")

    executor = ActionExecutor([SendMessageHandler(), ForwardHandler(), _ExplodingArchive()])

    result = executor.execute(_rule("ARCHIVE"), _event())

    assert result.success is False
    assert result.error == "disk full"


def test_executor_requires_handler_for_every_action_kind() -> None:
    with pytest.raises(ValueError) as excinfo:
        ActionExecutor([SendMessageHandler(), ArchiveHandler()])

    assert ActionKind.FORWARD.value in str(excinfo.value)


def test_base_handler_is_abstract() -> None:
    with pytest.raises(NotImplementedError):
        ActionHandler().run(_rule("ARCHIVE"), _event(), FIXED_NOW)


def test_render_template_does_not_expand_placeholders_inside_values() -> None:
    rendered = render_template("{sender} wrote {message} on {date}", _event("see {time}", sender="{date}"), FIXED_NOW)

    assert rendered == "{date} wrote see {time} on 2026-03-01"


def test_price_keyword_rule_replies_to_sender() -> None:
    rule = _rule("SEND_MESSAGE", responseMessage="Hi {sender}, price is $10")
    event = _event("what is the Price?", sender="alice")

    assert TriggerMatcher().matches(rule, event)
    result = _executor().execute(rule, event)

    assert result.success is True
    assert result.details["message"] == "Hi alice, price is $10"
    assert result.details["recipient"] == "alice"

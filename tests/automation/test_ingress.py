from __future__ import annotations

import asyncio
from pathlib import Path
import sys
from typing import Any

import pytest


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from replyflow.automation.delivery import Outbox
from replyflow.automation.ingress import WebhookIngress, validate_event
from replyflow.automation.logs import AuditLog, ExecutionLog
from replyflow.automation.models import AutomationRule
from replyflow.automation.pipeline import ExecutionPipeline
from replyflow.automation.rule_store import InMemoryRuleRepository, RuleStore
from replyflow.errors import (
    DeliveryFailedError,
    DeliveryNotFoundError,
    InvalidFieldError,
    InvalidTokenError,
    MissingFieldError,
    RetryCancelledError,
    TransientDeliveryError,
)


class _FlakySender:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.sent: list[dict[str, Any]] = []

    async def send(self, outbound: dict[str, Any]) -> Any:
        if self.failures > 0:
            self.failures -= 1
            raise TransientDeliveryError("endpoint busy")
        self.sent.append(outbound)
        return {"status": "sent"}


def _ingress(tmp_path: Path, sender: Any = None, **kwargs: Any) -> tuple[WebhookIngress, ExecutionLog, AuditLog]:
    rules = [
        AutomationRule(
            id="auto_price",
            owner_id="u1",
            name="Pricing",
            trigger="keyword:price",
            action="SEND_MESSAGE",
            action_params={"responseMessage": "Hi {sender}"},
        )
    ]
    kwargs.setdefault("retry_base_delay_seconds", 0.001)
    execution_log = ExecutionLog(tmp_path / "execution.log")
    audit_log = AuditLog(tmp_path / "audit.log")
    pipeline = ExecutionPipeline(RuleStore(InMemoryRuleRepository(rules)), execution_log, audit_log)
    ingress = WebhookIngress(
        pipeline,
        audit_log,
        sender=sender,
        outbox=Outbox(),
        verify_token="verify-me",
        **kwargs,
    )
    return ingress, execution_log, audit_log


def _event(message_id: str = "m1", message: str = "What is the price?") -> dict[str, Any]:
    return {"id": message_id, "sender": "alice", "message": message, "timestamp": "2026-03-01T10:00:00+00:00"}


def test_validate_event_requires_fields_and_length() -> None:
    with pytest.raises(MissingFieldError):
        validate_event({"id": "m1", "sender": "alice"})
    with pytest.raises(InvalidFieldError):
        validate_event({"id": "m1", "sender": "alice", "message": 42})
    with pytest.raises(InvalidFieldError):
        validate_event({"id": "m1", "sender": "alice", "message": "x" * 11}, max_message_length=10)
    with pytest.raises(InvalidFieldError):
        validate_event(["not", "an", "object"])


def test_handle_message_records_receipt_and_runs_rules(tmp_path: Path) -> None:
    ingress, execution_log, audit_log = _ingress(tmp_path)

    result = ingress.handle_message({"ownerId": "u1", "event": _event()})

    assert result["success"] is True
    assert result["messageId"] == "m1"
    assert result["automationsTriggered"] == 1
    received = audit_log.query_by_resource("m1")
    assert received[0].action_type == "MESSAGE_RECEIVED"
    assert received[0].details == {"sender": "alice", "platform": "facebook", "messageLength": 18}
    assert execution_log.get_stats("auto_price")["totalRuns"] == 1
    assert ingress.outbox.get("m1")[0]["message"] == "Hi alice"


def test_invalid_message_leaves_no_trace(tmp_path: Path) -> None:
    ingress, execution_log, audit_log = _ingress(tmp_path)

    with pytest.raises(MissingFieldError):
        ingress.handle_message({"ownerId": "u1", "event": {"id": "m1", "sender": "alice", "message": ""}})

    assert not audit_log.path.exists()
    assert not execution_log.path.exists()


def test_batch_isolates_failures(tmp_path: Path) -> None:
    ingress, _, _ = _ingress(tmp_path)

    summary = ingress.handle_batch("u1", [_event("m1"), {"id": "m2", "sender": "bob"}, _event("m3", "hello")])

    assert summary["totalProcessed"] == 3
    assert summary["successCount"] == 2
    assert summary["failureCount"] == 1
    failed = summary["results"][1]
    assert failed["messageId"] == "m2"
    assert failed["success"] is False
    assert failed["code"] == "MISSING_FIELD"


def test_retry_delivery_resends_pending_items(tmp_path: Path) -> None:
    sender = _FlakySender(failures=2)
    ingress, _, audit_log = _ingress(tmp_path, sender=sender)
    ingress.handle_message({"ownerId": "u1", "event": _event()})

    result = asyncio.run(ingress.retry_delivery("m1", max_retries=3, owner_id="u1"))

    assert result["success"] is True
    assert result["attempt"] == 3
    assert result["delivered"] == 1
    assert sender.sent[0]["recipient"] == "alice"
    assert audit_log.query_by_owner("u1")[0].action_type == "DELIVERY_RETRIED"


def test_retry_delivery_gives_up_after_max_retries(tmp_path: Path) -> None:
    ingress, _, _ = _ingress(tmp_path, sender=_FlakySender(failures=10))
    ingress.handle_message({"ownerId": "u1", "event": _event()})

    with pytest.raises(DeliveryFailedError) as excinfo:
        asyncio.run(ingress.retry_delivery("m1", max_retries=2))

    assert str(excinfo.value).startswith("Failed after 2 retries")


def test_retry_unknown_delivery_is_not_found(tmp_path: Path) -> None:
    ingress, _, _ = _ingress(tmp_path)

    with pytest.raises(DeliveryNotFoundError):
        asyncio.run(ingress.retry_delivery("missing"))


def test_shutdown_cancels_scheduled_retries(tmp_path: Path) -> None:
    ingress, _, _ = _ingress(
        tmp_path,
        sender=_FlakySender(failures=10),
        retry_max_attempts=5,
        retry_base_delay_seconds=30,
    )
    ingress.handle_message({"ownerId": "u1", "event": _event()})

    async def run() -> None:
        task = ingress.schedule_retry("m1")
        await asyncio.sleep(0.01)
        await ingress.shutdown()
        assert task.done()
        with pytest.raises((RetryCancelledError, asyncio.CancelledError)):
            task.result()

    asyncio.run(run())


def test_subscription_handshake(tmp_path: Path) -> None:
    ingress, _, _ = _ingress(tmp_path)

    assert ingress.verify_subscription("subscribe", "verify-me", "12345") == "12345"
    with pytest.raises(InvalidTokenError):
        ingress.verify_subscription("subscribe", "wrong", "12345")
    with pytest.raises(InvalidTokenError):
        ingress.verify_subscription("unsubscribe", "verify-me", "12345")

from __future__ import annotations

import asyncio
from pathlib import Path
import sys

import httpx
import pytest


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from replyflow.automation.delivery import HttpOutboundSender, Outbox, collect_outbound, retry_with_backoff
from replyflow.errors import (
    DeliveryFailedError,
    RetryCancelledError,
    TransientDeliveryError,
    ValidationError,
)


def test_retry_succeeds_after_transient_failures() -> None:
    calls: list[int] = []

    async def attempt(n: int) -> str:
        calls.append(n)
        if n < 3:
            raise TransientDeliveryError("endpoint busy")
        return "ok"

    result = asyncio.run(retry_with_backoff(attempt, max_attempts=3, base_delay_seconds=0.001))

    assert result == "ok"
    assert calls == [1, 2, 3]


def test_retry_exhaustion_reports_last_error() -> None:
    async def attempt(n: int) -> str:
        raise TransientDeliveryError(f"busy {n}")

    with pytest.raises(DeliveryFailedError) as excinfo:
        asyncio.run(retry_with_backoff(attempt, max_attempts=2, base_delay_seconds=0.001))

    assert str(excinfo.value) == "Failed after 2 retries: busy 2"
    assert isinstance(excinfo.value.__cause__, TransientDeliveryError)


def test_non_retryable_error_is_raised_immediately() -> None:
    calls: list[int] = []

    async def attempt(n: int) -> str:
        calls.append(n)
        raise ValidationError("bad payload")

    with pytest.raises(ValidationError):
        asyncio.run(retry_with_backoff(attempt, max_attempts=5, base_delay_seconds=0.001))

    assert calls == [1]


def test_unknown_errors_are_retried() -> None:
    calls: list[int] = []

    async def attempt(n: int) -> str:
        calls.append(n)
        if n == 1:
            raise RuntimeError("socket reset")
        return "ok"

    assert asyncio.run(retry_with_backoff(attempt, max_attempts=2, base_delay_seconds=0.001)) == "ok"
    assert calls == [1, 2]


def test_stop_event_cancels_backoff_wait() -> None:
    async def run() -> None:
        stop_event = asyncio.Event()

        async def attempt(n: int) -> str:
            raise TransientDeliveryError("busy")

        task = asyncio.create_task(
            retry_with_backoff(attempt, max_attempts=3, base_delay_seconds=30, stop_event=stop_event)
        )
        await asyncio.sleep(0.01)
        stop_event.set()
        with pytest.raises(RetryCancelledError):
            await asyncio.wait_for(task, timeout=1)

    asyncio.run(run())


def test_outbox_evicts_oldest_entries() -> None:
    outbox = Outbox(max_size=16)
    for idx in range(20):
        outbox.put(f"m{idx}", [{"type": "SEND_MESSAGE", "message": str(idx)}])
    outbox.put("empty", [])

    assert len(outbox) == 16
    assert outbox.get("m0") is None
    assert outbox.get("m19") == [{"type": "SEND_MESSAGE", "message": "19"}]
    assert outbox.get("empty") is None


def test_collect_outbound_keeps_successful_send_and_forward() -> None:
    outcomes = [
        {"automationId": "a1", "result": {"success": True, "details": {"type": "SEND_MESSAGE", "message": "hi"}}},
        {"automationId": "a2", "result": {"success": True, "details": {"type": "ARCHIVE", "messageId": "m1"}}},
        {"automationId": "a3", "result": {"success": False, "error": "boom"}},
        {"automationId": "a4", "result": {"success": True, "details": {"type": "FORWARD", "forwardTo": "ops"}}},
    ]

    outbound = collect_outbound("m1", outcomes)

    assert [item["automationId"] for item in outbound] == ["a1", "a4"]
    assert all(item["messageId"] == "m1" for item in outbound)


def test_http_sender_maps_status_codes() -> None:
    statuses = iter([200, 503, 400])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), json={"ok": True})

    async def run() -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sender = HttpOutboundSender("http://delivery.test/send", api_key="k", client=client)
        try:
            assert await sender.send({"type": "SEND_MESSAGE"}) == {"ok": True}
            with pytest.raises(TransientDeliveryError):
                await sender.send({"type": "SEND_MESSAGE"})
            with pytest.raises(DeliveryFailedError):
                await sender.send({"type": "SEND_MESSAGE"})
        finally:
            await sender.aclose()

    asyncio.run(run())

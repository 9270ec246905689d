"""
描述: 出站投递与重投。
主要功能:
    - OutboundSender 协议及 dry-run / HTTP 两种实现
    - 按消息 ID 暂存待投递条目（LRU 容量上限）
    - 指数退避重试，等待可被停机事件打断
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
import logging
from threading import Lock
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import httpx

from replyflow.errors import (
    DeliveryFailedError,
    RetryCancelledError,
    TransientDeliveryError,
    is_retryable,
)
from replyflow.utils.metrics import record_delivery_attempt


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

OUTBOUND_ACTIONS = {"SEND_MESSAGE", "FORWARD"}


# region 出站发送
class OutboundSender(Protocol):
    async def send(self, outbound: dict[str, Any]) -> Any: ...


class DryRunSender:
    """Logs outbound items instead of sending them."""

    async def send(self, outbound: dict[str, Any]) -> Any:
        LOGGER.info(
            "outbound dry-run",
            extra={
                "event_code": "delivery.dry_run",
                "outbound_type": str(outbound.get("type") or ""),
                "message_id": str(outbound.get("messageId") or ""),
            },
        )
        return {"status": "dry_run"}


class HttpOutboundSender:
    def __init__(
        self,
        endpoint_url: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint_url = endpoint_url
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(self, outbound: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(self._endpoint_url, json=outbound, headers=self._headers)
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(f"delivery transport error: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(f"delivery endpoint returned {response.status_code}")
        if response.status_code >= 400:
            raise DeliveryFailedError(
                f"delivery rejected with {response.status_code}",
                details={"body": response.text[:500]},
            )
        try:
            return response.json()
        except ValueError:
            return {"status": response.status_code}

    async def aclose(self) -> None:
        await self._client.aclose()
# endregion


# region 待投递暂存
class Outbox:
    """In-memory LRU of pending outbound items keyed by inbound message id."""

    def __init__(self, max_size: int = 2048) -> None:
        self._max_size = max(16, int(max_size))
        self._items: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()
        self._lock = Lock()

    def put(self, message_id: str, outbound: list[dict[str, Any]]) -> None:
        if not message_id or not outbound:
            return
        with self._lock:
            self._items.pop(message_id, None)
            self._items[message_id] = [dict(item) for item in outbound]
            while len(self._items) > self._max_size:
                self._items.popitem(last=False)

    def get(self, message_id: str) -> list[dict[str, Any]] | None:
        with self._lock:
            items = self._items.get(message_id)
            return [dict(item) for item in items] if items is not None else None

    def __len__(self) -> int:
        return len(self._items)


def collect_outbound(message_id: str, outcomes: list[dict[str, Any]]) -> list[dict[str, Any]]:
    outbound: list[dict[str, Any]] = []
    for outcome in outcomes:
        result = outcome.get("result") or {}
        details = result.get("details")
        if not result.get("success") or not isinstance(details, dict):
            continue
        if details.get("type") not in OUTBOUND_ACTIONS:
            continue
        outbound.append(dict(details, messageId=message_id, automationId=outcome.get("automationId")))
    return outbound
# endregion


# region 退避重试
async def retry_with_backoff(
    attempt_fn: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay_seconds: float = 1.0,
    stop_event: asyncio.Event | None = None,
    label: str = "",
) -> T:
    """Run ``attempt_fn`` up to ``max_attempts`` times, waiting base * 2**(n-1) between tries.

    Each failure is logged before the wait. The wait returns early with
    RetryCancelledError once ``stop_event`` is set.
    """
    attempts = max(1, int(max_attempts))
    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        if stop_event is not None and stop_event.is_set():
            raise RetryCancelledError(f"retry cancelled before attempt {attempt}: {label}")
        try:
            result = await attempt_fn(attempt)
        except Exception as exc:
            if not is_retryable(exc):
                record_delivery_attempt("rejected")
                raise
            last_error = exc
            record_delivery_attempt("failed")
            LOGGER.warning(
                "delivery attempt failed",
                extra={
                    "event_code": "webhook.delivery.retry",
                    "delivery_id": label,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error": str(exc) or exc.__class__.__name__,
                },
            )
            if attempt >= attempts:
                break
            delay = float(base_delay_seconds) * (2 ** (attempt - 1))
            if stop_event is None:
                await asyncio.sleep(delay)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
            raise RetryCancelledError(f"retry cancelled during backoff: {label}") from exc
        else:
            record_delivery_attempt("success")
            return result

    message = str(last_error) if last_error is not None else "unknown error"
    raise DeliveryFailedError(f"Failed after {attempts} retries: {message}") from last_error
# endregion

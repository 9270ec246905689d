"""
描述: Webhook 入站处理。
主要功能:
    - 校验入站消息结构，校验失败时不做任何处理与记录
    - 记录 MESSAGE_RECEIVED 审计并调用执行流水线
    - 批量处理（逐条隔离失败）
    - 出站条目重投（指数退避、可随停机取消）
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from replyflow.automation.delivery import (
    DryRunSender,
    OutboundSender,
    Outbox,
    collect_outbound,
    retry_with_backoff,
)
from replyflow.automation.logs import AuditLog, append_safely
from replyflow.automation.models import (
    AUDIT_DELIVERY_RETRIED,
    AUDIT_MESSAGE_RECEIVED,
    RESOURCE_MESSAGE,
    AuditRecord,
    InboundMessageEvent,
    utc_now_iso,
)
from replyflow.automation.pipeline import ExecutionPipeline
from replyflow.errors import (
    DeliveryNotFoundError,
    InvalidFieldError,
    InvalidTokenError,
    MissingFieldError,
    ReplyflowError,
)
from replyflow.utils.metrics import record_webhook_message


LOGGER = logging.getLogger(__name__)

REQUIRED_EVENT_FIELDS = ("id", "sender", "message")


def validate_event(event: Any, max_message_length: int = 5000) -> dict[str, Any]:
    if not isinstance(event, dict):
        raise InvalidFieldError("event", "must be an object")
    for field_name in REQUIRED_EVENT_FIELDS:
        if not event.get(field_name):
            raise MissingFieldError(field_name)
    if not isinstance(event["message"], str):
        raise InvalidFieldError("message", "must be a string")
    if len(event["message"]) > max_message_length:
        raise InvalidFieldError("message", f"exceeds maximum length of {max_message_length}")
    return event


class WebhookIngress:
    def __init__(
        self,
        pipeline: ExecutionPipeline,
        audit_log: AuditLog,
        *,
        sender: OutboundSender | None = None,
        outbox: Outbox | None = None,
        verify_token: str = "",
        max_message_length: int = 5000,
        retry_max_attempts: int = 3,
        retry_base_delay_seconds: float = 1.0,
        default_platform: str = "facebook",
    ) -> None:
        self._pipeline = pipeline
        self._audit_log = audit_log
        self._sender = sender or DryRunSender()
        self._outbox = outbox or Outbox()
        self._verify_token = verify_token
        self._max_message_length = max_message_length
        self._retry_max_attempts = max(1, int(retry_max_attempts))
        self._retry_base_delay_seconds = float(retry_base_delay_seconds)
        self._default_platform = default_platform
        self._stop_event: asyncio.Event | None = None
        self._stopped = False
        self._retry_tasks: set[asyncio.Task[Any]] = set()
        self._last_received: str | None = None

    def _get_stop_event(self) -> asyncio.Event:
        event = self._stop_event
        if event is None:
            event = asyncio.Event()
            if self._stopped:
                event.set()
            self._stop_event = event
        return event

    @property
    def outbox(self) -> Outbox:
        return self._outbox

    # region 单条与批量
    def handle_message(self, envelope: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(envelope, dict):
            raise InvalidFieldError("body", "must be an object")
        owner_id = str(envelope.get("ownerId") or envelope.get("userId") or "").strip()
        if not owner_id:
            raise MissingFieldError("ownerId")
        raw_event = envelope.get("event", envelope.get("messageData"))
        if raw_event is None:
            raise MissingFieldError("event")
        try:
            validate_event(raw_event, self._max_message_length)
        except ReplyflowError:
            record_webhook_message("invalid")
            raise

        platform = str(envelope.get("platform") or self._default_platform)
        event = InboundMessageEvent.from_payload(raw_event, platform=platform)
        self._last_received = utc_now_iso()

        append_safely(
            self._audit_log,
            AuditRecord(
                owner_id=owner_id,
                action_type=AUDIT_MESSAGE_RECEIVED,
                resource_type=RESOURCE_MESSAGE,
                resource_id=event.id,
                details={
                    "sender": event.sender,
                    "platform": platform,
                    "messageLength": len(event.body),
                },
            ),
        )

        outcomes = self._pipeline.process_message(owner_id, event)
        self._outbox.put(event.id, collect_outbound(event.id, outcomes))
        record_webhook_message("processed")
        LOGGER.info(
            "webhook message processed",
            extra={
                "event_code": "webhook.message.processed",
                "owner_id": owner_id,
                "message_id": event.id,
                "automations_triggered": len(outcomes),
            },
        )
        return {
            "success": True,
            "messageId": event.id,
            "automationsTriggered": len(outcomes),
            "results": outcomes,
        }

    def handle_batch(self, owner_id: str, events: list[Any], platform: str | None = None) -> dict[str, Any]:
        results: list[dict[str, Any]] = []
        for raw_event in events:
            message_id = raw_event.get("id") if isinstance(raw_event, dict) else None
            try:
                result = self.handle_message(
                    {
                        "ownerId": owner_id,
                        "event": raw_event,
                        "platform": platform or self._default_platform,
                    }
                )
            except Exception as exc:
                code = exc.code if isinstance(exc, ReplyflowError) else "INTERNAL_ERROR"
                if not isinstance(exc, ReplyflowError):
                    LOGGER.exception(
                        "batch item failed",
                        extra={"event_code": "webhook.batch.item_failed", "message_id": message_id},
                    )
                results.append(
                    {
                        "messageId": message_id,
                        "success": False,
                        "error": str(exc) or exc.__class__.__name__,
                        "code": code,
                    }
                )
                continue
            results.append({"messageId": message_id, "success": True, "result": result})

        success_count = sum(1 for item in results if item["success"])
        return {
            "totalProcessed": len(events),
            "successCount": success_count,
            "failureCount": len(results) - success_count,
            "results": results,
        }
    # endregion

    # region 重投
    async def retry_delivery(
        self,
        delivery_id: str,
        max_retries: int | None = None,
        owner_id: str = "",
    ) -> dict[str, Any]:
        normalized_id = str(delivery_id or "").strip()
        pending = self._outbox.get(normalized_id)
        if pending is None:
            raise DeliveryNotFoundError(normalized_id)

        attempts_used = 0

        async def _attempt(attempt: int) -> list[Any]:
            nonlocal attempts_used
            attempts_used = attempt
            LOGGER.info(
                "delivery attempt",
                extra={"event_code": "webhook.delivery.attempt", "delivery_id": normalized_id, "attempt": attempt},
            )
            return [await self._sender.send(item) for item in pending]

        responses = await retry_with_backoff(
            _attempt,
            max_attempts=max_retries if max_retries is not None else self._retry_max_attempts,
            base_delay_seconds=self._retry_base_delay_seconds,
            stop_event=self._get_stop_event(),
            label=normalized_id,
        )
        if owner_id:
            append_safely(
                self._audit_log,
                AuditRecord(
                    owner_id=owner_id,
                    action_type=AUDIT_DELIVERY_RETRIED,
                    resource_type=RESOURCE_MESSAGE,
                    resource_id=normalized_id,
                    details={"attempt": attempts_used, "outboundCount": len(pending)},
                ),
            )
        return {
            "success": True,
            "attempt": attempts_used,
            "webhookId": normalized_id,
            "delivered": len(pending),
            "responses": responses,
        }

    def schedule_retry(self, delivery_id: str, max_retries: int | None = None, owner_id: str = "") -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(
            self.retry_delivery(delivery_id, max_retries=max_retries, owner_id=owner_id)
        )
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
        return task

    async def shutdown(self) -> None:
        self._stopped = True
        if self._stop_event is not None:
            self._stop_event.set()
        tasks = list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        LOGGER.info("webhook ingress stopped", extra={"event_code": "webhook.ingress.stopped"})
    # endregion

    # region 订阅校验与状态
    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str:
        expected = str(self._verify_token or "")
        if mode != "subscribe" or not expected or token != expected:
            raise InvalidTokenError("Invalid verification token")
        return str(challenge or "")

    def status(self) -> dict[str, Any]:
        return {
            "status": "active",
            "endpoints": {
                "messages": "/webhook/messages",
                "batch": "/webhook/messages/batch",
                "verify": "/webhook/messages",
            },
            "lastReceived": self._last_received,
            "pendingDeliveries": len(self._outbox),
        }
    # endregion

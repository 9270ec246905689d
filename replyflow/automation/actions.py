"""
描述: 自动化动作执行器。
主要功能:
    - 每种动作类型对应一个处理器类 (SEND_MESSAGE / FORWARD / ARCHIVE)
    - 渲染回复模板占位符
    - 捕获处理器异常，统一返回 ExecutionResult
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
import time
from typing import Any, Callable

from replyflow.automation.models import (
    ActionKind,
    AutomationRule,
    ExecutionResult,
    InboundMessageEvent,
)
from replyflow.errors import UnknownActionError
from replyflow.utils.metrics import record_automation_action


LOGGER = logging.getLogger(__name__)

DEFAULT_RESPONSE_MESSAGE = "Auto-reply"
DEFAULT_SENDER_NAME = "User"

Clock = Callable[[], datetime]
_PLACEHOLDER_RE = re.compile(r"\{(sender|message|time|date)\}")


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def render_template(template: str, event: InboundMessageEvent, now: datetime) -> str:
    """Replace {sender} {message} {time} {date}; any other braces stay as written."""
    values = {
        "sender": event.sender or DEFAULT_SENDER_NAME,
        "message": event.body or "",
        "time": now.strftime("%H:%M:%S"),
        "date": now.strftime("%Y-%m-%d"),
    }
    # substituted values are never rescanned
    return _PLACEHOLDER_RE.sub(lambda match: values[match.group(1)], str(template or ""))


# region 动作处理器
class ActionHandler:
    """Base class; subclasses set ``kind`` and implement ``run``."""

    kind: ActionKind

    def run(self, rule: AutomationRule, event: InboundMessageEvent, now: datetime) -> dict[str, Any]:
        raise NotImplementedError


class SendMessageHandler(ActionHandler):
    kind = ActionKind.SEND_MESSAGE

    def run(self, rule: AutomationRule, event: InboundMessageEvent, now: datetime) -> dict[str, Any]:
        template = str(rule.action_params.get("responseMessage") or DEFAULT_RESPONSE_MESSAGE)
        return {
            "type": self.kind.value,
            "message": render_template(template, event, now),
            "recipient": event.sender,
            "timestamp": now.isoformat(),
        }


class ForwardHandler(ActionHandler):
    kind = ActionKind.FORWARD

    def __init__(self, default_target: str = "admin") -> None:
        self._default_target = default_target

    def run(self, rule: AutomationRule, event: InboundMessageEvent, now: datetime) -> dict[str, Any]:
        target = str(rule.action_params.get("forwardTo") or "").strip() or self._default_target
        return {
            "type": self.kind.value,
            "originalMessage": event.body,
            "forwardTo": target,
            "timestamp": now.isoformat(),
        }


class ArchiveHandler(ActionHandler):
    kind = ActionKind.ARCHIVE

    def run(self, rule: AutomationRule, event: InboundMessageEvent, now: datetime) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "messageId": event.id,
            "archivedAt": now.isoformat(),
        }
# endregion


class ActionExecutor:
    def __init__(
        self,
        handlers: list[ActionHandler] | None = None,
        *,
        default_forward_target: str = "admin",
        clock: Clock | None = None,
    ) -> None:
        if handlers is None:
            handlers = [
                SendMessageHandler(),
                ForwardHandler(default_forward_target),
                ArchiveHandler(),
            ]
        self._handlers: dict[str, ActionHandler] = {handler.kind.value: handler for handler in handlers}
        missing = [kind for kind in ActionKind.values() if kind not in self._handlers]
        if missing:
            raise ValueError(f"no action handler registered for: {', '.join(missing)}")
        self._clock = clock or _utc_now

    def execute(self, rule: AutomationRule, event: InboundMessageEvent) -> ExecutionResult:
        action = str(rule.action or "")
        start = time.perf_counter()
        try:
            handler = self._handlers.get(action)
            if handler is None:
                raise UnknownActionError(action)
            details = handler.run(rule, event, self._clock())
        except Exception as exc:
            elapsed = time.perf_counter() - start
            record_automation_action(action or "unknown", "failed", elapsed)
            LOGGER.warning(
                "automation action failed",
                extra={
                    "event_code": "automation.action.failed",
                    "rule_id": rule.id,
                    "action_type": action,
                    "error": str(exc) or exc.__class__.__name__,
                },
            )
            return ExecutionResult(
                success=False,
                action=action,
                duration_ms=int(round(elapsed * 1000)),
                error=str(exc) or exc.__class__.__name__,
            )

        elapsed = time.perf_counter() - start
        record_automation_action(action, "success", elapsed)
        LOGGER.info(
            "automation action executed",
            extra={
                "event_code": "automation.action.executed",
                "rule_id": rule.id,
                "action_type": action,
            },
        )
        return ExecutionResult(
            success=True,
            action=action,
            duration_ms=int(round(elapsed * 1000)),
            details=details,
        )

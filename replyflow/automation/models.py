"""
描述: 自动化流水线共享模型。
主要功能:
    - 规则、入站消息、执行/审计记录的数据结构
    - 动作类型与状态常量
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ActionKind(str, Enum):
    SEND_MESSAGE = "SEND_MESSAGE"
    FORWARD = "FORWARD"
    ARCHIVE = "ARCHIVE"

    @classmethod
    def values(cls) -> list[str]:
        return [item.value for item in cls]


STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"

AUDIT_MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
AUDIT_AUTOMATION_EXECUTED = "AUTOMATION_EXECUTED"
AUDIT_AUTOMATION_CREATED = "AUTOMATION_CREATED"
AUDIT_AUTOMATION_UPDATED = "AUTOMATION_UPDATED"
AUDIT_AUTOMATION_DELETED = "AUTOMATION_DELETED"
AUDIT_DELIVERY_RETRIED = "DELIVERY_RETRIED"

RESOURCE_MESSAGE = "MESSAGE"
RESOURCE_AUTOMATION = "AUTOMATION"


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class AutomationRule:
    id: str
    owner_id: str
    name: str
    trigger: str
    action: str
    action_params: dict[str, Any] = field(default_factory=dict)
    template_id: str | None = None
    enabled: bool = True
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.owner_id,
            "name": self.name,
            "trigger": self.trigger,
            "action": self.action,
            "actionParams": dict(self.action_params),
            "templateId": self.template_id,
            "enabled": self.enabled,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AutomationRule:
        raw_params = payload.get("actionParams")
        action_params = dict(raw_params) if isinstance(raw_params, dict) else {}
        # flat responseMessage / forwardTo entries written by older clients
        for key in ("responseMessage", "forwardTo"):
            if key in payload and key not in action_params:
                action_params[key] = payload[key]
        template_raw = payload.get("templateId")
        return cls(
            id=str(payload.get("id") or "").strip(),
            owner_id=str(payload.get("userId") or payload.get("ownerId") or "").strip(),
            name=str(payload.get("name") or ""),
            trigger=str(payload.get("trigger") or ""),
            action=str(payload.get("action") or ""),
            action_params=action_params,
            template_id=str(template_raw) if template_raw is not None else None,
            enabled=payload.get("enabled") is not False,
            created_at=str(payload.get("createdAt") or utc_now_iso()),
            updated_at=str(payload.get("updatedAt") or utc_now_iso()),
        )


@dataclass(frozen=True)
class InboundMessageEvent:
    id: str
    sender: str
    body: str
    received_at: str = field(default_factory=utc_now_iso)
    platform: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any], platform: str = "") -> InboundMessageEvent:
        return cls(
            id=str(payload.get("id") or ""),
            sender=str(payload.get("sender") or ""),
            body=str(payload.get("message") or ""),
            received_at=str(payload.get("timestamp") or utc_now_iso()),
            platform=platform,
        )


@dataclass
class ExecutionResult:
    success: bool
    action: str
    duration_ms: int
    details: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "action": self.action,
            "executionTime": self.duration_ms,
        }
        if self.success:
            payload["details"] = self.details
        else:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class ExecutionRecord:
    rule_id: str
    owner_id: str
    status: str
    action_kind: str
    duration_ms: int
    message_id: str
    trigger_snapshot: dict[str, Any]
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "automationId": self.rule_id,
            "userId": self.owner_id,
            "status": self.status,
            "action": self.action_kind,
            "executionTimeMs": self.duration_ms,
            "messageId": self.message_id,
            "trigger": self.trigger_snapshot.get("trigger"),
            "triggerSnapshot": dict(self.trigger_snapshot),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionRecord:
        rule_id = str(payload.get("automationId") or "").strip()
        if not rule_id:
            raise ValueError("execution record missing automationId")
        snapshot = payload.get("triggerSnapshot")
        return cls(
            rule_id=rule_id,
            owner_id=str(payload.get("userId") or ""),
            status=str(payload.get("status") or ""),
            action_kind=str(payload.get("action") or ""),
            duration_ms=int(payload.get("executionTimeMs") or 0),
            message_id=str(payload.get("messageId") or ""),
            trigger_snapshot=dict(snapshot) if isinstance(snapshot, dict) else {},
            timestamp=str(payload["timestamp"]),
        )


@dataclass(frozen=True)
class AuditRecord:
    owner_id: str
    action_type: str
    resource_type: str
    resource_id: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "userId": self.owner_id,
            "action": self.action_type,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AuditRecord:
        action_type = str(payload.get("action") or "").strip()
        if not action_type:
            raise ValueError("audit record missing action")
        details = payload.get("details")
        return cls(
            owner_id=str(payload.get("userId") or ""),
            action_type=action_type,
            resource_type=str(payload.get("resourceType") or ""),
            resource_id=str(payload.get("resourceId") or ""),
            details=dict(details) if isinstance(details, dict) else {},
            timestamp=str(payload["timestamp"]),
        )


__all__ = [
    "ActionKind",
    "AuditRecord",
    "AutomationRule",
    "ExecutionRecord",
    "ExecutionResult",
    "InboundMessageEvent",
    "STATUS_FAILED",
    "STATUS_SUCCESS",
    "utc_now_iso",
]

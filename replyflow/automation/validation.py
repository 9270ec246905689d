"""
描述: 规则请求体校验。
主要功能:
    - 收集全部字段错误后一次性抛出 ValidationError
    - 清理 name / trigger 首尾空白
"""

from __future__ import annotations

from typing import Any

from replyflow.automation.models import ActionKind
from replyflow.errors import ValidationError


NAME_MAX_LENGTH = 100
TRIGGER_MAX_LENGTH = 500


def _check_text(
    errors: list[str],
    payload: dict[str, Any],
    key: str,
    max_length: int,
    *,
    partial: bool,
) -> None:
    if partial and key not in payload:
        return
    value = payload.get(key)
    if not value or not isinstance(value, str):
        errors.append(f"{key} is required and must be a string")
    elif not value.strip():
        errors.append(f"{key} cannot be empty")
    elif len(value) > max_length:
        errors.append(f"{key} cannot exceed {max_length} characters")


def validate_rule_payload(payload: Any, *, partial: bool = False) -> dict[str, Any]:
    """Validate a create (or, with ``partial``, update) body and return the cleaned copy."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be an object")
    if not payload:
        raise ValidationError("Request body cannot be empty", code="EMPTY_BODY")

    errors: list[str] = []
    _check_text(errors, payload, "name", NAME_MAX_LENGTH, partial=partial)
    _check_text(errors, payload, "trigger", TRIGGER_MAX_LENGTH, partial=partial)

    if not partial or "action" in payload:
        action = payload.get("action")
        if not action or not isinstance(action, str):
            errors.append("action is required and must be a string")
        elif action not in ActionKind.values():
            errors.append(f"action must be one of: {', '.join(ActionKind.values())}")

    template_id = payload.get("templateId")
    if template_id is not None and not isinstance(template_id, str):
        errors.append("templateId must be a string")

    enabled = payload.get("enabled")
    if "enabled" in payload and not isinstance(enabled, bool):
        errors.append("enabled must be a boolean")

    for key in ("responseMessage", "forwardTo"):
        if key in payload and payload[key] is not None and not isinstance(payload[key], str):
            errors.append(f"{key} must be a string")

    action_params = payload.get("actionParams")
    if action_params is not None and not isinstance(action_params, dict):
        errors.append("actionParams must be an object")

    if errors:
        raise ValidationError("Validation failed", details=errors)

    cleaned = dict(payload)
    for key in ("name", "trigger"):
        if isinstance(cleaned.get(key), str):
            cleaned[key] = cleaned[key].strip()
    return cleaned

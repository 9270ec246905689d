"""
描述: 自动化服务 HTTP 路由。
主要功能:
    - Webhook 入站（订阅握手、单条、批量、重投、状态）
    - 自动化规则 CRUD、执行日志与统计查询
    - 审计日志查询、Prometheus 指标导出
    - 鉴权与滑动窗口限流
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response
from fastapi.responses import PlainTextResponse

from replyflow.auth import Identity, extract_bearer_token, verify_webhook_signature
from replyflow.automation.logs import append_safely
from replyflow.automation.models import (
    AUDIT_AUTOMATION_CREATED,
    AUDIT_AUTOMATION_DELETED,
    AUDIT_AUTOMATION_UPDATED,
    RESOURCE_AUTOMATION,
    AuditRecord,
)
from replyflow.errors import (
    InvalidFieldError,
    InvalidTokenError,
    MissingFieldError,
    RateLimitExceededError,
    ValidationError,
)
from replyflow.server.runtime import AutomationRuntime
from replyflow.utils.metrics import get_metrics, get_metrics_content_type, record_rate_limited


router = APIRouter()


# region 依赖
def get_runtime(request: Request) -> AutomationRuntime:
    return request.app.state.runtime


def enforce_rate_limit(runtime: AutomationRuntime, identity: str, response: Response) -> None:
    if not runtime.settings.rate_limit.enabled:
        return
    decision = runtime.rate_limiter.allow(identity)
    if not decision.allowed:
        record_rate_limited()
        raise RateLimitExceededError(decision.retry_after)
    response.headers.update(decision.headers())


def require_identity(
    response: Response,
    authorization: str | None = Header(default=None),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> Identity:
    token = extract_bearer_token(authorization)
    if runtime.token_verifier is None:
        raise InvalidTokenError("Token verification is not configured")
    identity = runtime.token_verifier.verify(token)
    enforce_rate_limit(runtime, f"user:{identity.subject_id}", response)
    return identity


async def read_webhook_body(request: Request, runtime: AutomationRuntime) -> Any:
    raw_body = await request.body()
    secret = runtime.settings.webhook.signature_secret
    if secret:
        verify_webhook_signature(
            dict(request.headers),
            raw_body,
            secret,
            tolerance_seconds=runtime.settings.webhook.timestamp_tolerance_seconds,
        )
    if not raw_body:
        raise ValidationError("Request body cannot be empty", code="EMPTY_BODY")
    try:
        return json.loads(raw_body)
    except ValueError as exc:
        raise ValidationError("Request body must be valid JSON", code="INVALID_JSON") from exc


def _audit(runtime: AutomationRuntime, owner_id: str, action_type: str, rule_id: str, details: dict[str, Any]) -> None:
    append_safely(
        runtime.audit_log,
        AuditRecord(
            owner_id=owner_id,
            action_type=action_type,
            resource_type=RESOURCE_AUTOMATION,
            resource_id=rule_id,
            details=details,
        ),
    )
# endregion


# region Webhook
@router.get("/webhook/messages")
async def webhook_verify(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> PlainTextResponse:
    return PlainTextResponse(runtime.ingress.verify_subscription(mode, token, challenge))


@router.post("/webhook/messages")
async def webhook_message(
    request: Request,
    response: Response,
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    payload = await read_webhook_body(request, runtime)
    owner_id = str(payload.get("ownerId") or payload.get("userId") or "").strip() if isinstance(payload, dict) else ""
    if not owner_id:
        raise MissingFieldError("ownerId")
    enforce_rate_limit(runtime, f"owner:{owner_id}", response)
    return await asyncio.to_thread(runtime.ingress.handle_message, payload)


@router.post("/webhook/messages/batch")
async def webhook_batch(
    request: Request,
    response: Response,
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    payload = await read_webhook_body(request, runtime)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be an object")
    owner_id = str(payload.get("ownerId") or payload.get("userId") or "").strip()
    if not owner_id:
        raise MissingFieldError("ownerId")
    events = payload.get("events")
    if not isinstance(events, list):
        raise InvalidFieldError("events", "must be an array")
    enforce_rate_limit(runtime, f"owner:{owner_id}", response)
    platform = payload.get("platform")
    return await asyncio.to_thread(
        runtime.ingress.handle_batch,
        owner_id,
        events,
        str(platform) if platform else None,
    )


@router.post("/webhook/deliveries/{delivery_id}/retry")
async def webhook_retry(
    delivery_id: str,
    request: Request,
    response: Response,
    max_retries: int | None = Query(default=None, ge=1, le=10),
    owner_id: str = Query(default="", alias="ownerId"),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    if runtime.settings.webhook.signature_secret:
        await read_webhook_body(request, runtime)
    client_host = request.client.host if request.client else "unknown"
    enforce_rate_limit(runtime, f"owner:{owner_id}" if owner_id else f"ip:{client_host}", response)
    return await runtime.ingress.retry_delivery(delivery_id, max_retries=max_retries, owner_id=owner_id)


@router.get("/webhook/status")
async def webhook_status(runtime: AutomationRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.ingress.status()
# endregion


# region 自动化规则
@router.get("/automations")
def list_automations(
    identity: Identity = Depends(require_identity),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    rules = runtime.rule_store.list_for_owner(identity.subject_id)
    return {"automations": [rule.to_dict() for rule in rules], "count": len(rules)}


@router.post("/automations", status_code=201)
def create_automation(
    payload: Any = Body(default=None),
    identity: Identity = Depends(require_identity),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    rule = runtime.rule_store.create(identity.subject_id, payload)
    _audit(
        runtime,
        identity.subject_id,
        AUDIT_AUTOMATION_CREATED,
        rule.id,
        {"name": rule.name, "trigger": rule.trigger, "action": rule.action},
    )
    return {"automation": rule.to_dict()}


@router.get("/automations/stats")
def owner_stats(
    identity: Identity = Depends(require_identity),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    return runtime.pipeline.get_owner_stats(identity.subject_id)


@router.get("/automations/{rule_id}")
def get_automation(
    rule_id: str,
    identity: Identity = Depends(require_identity),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    return {"automation": runtime.rule_store.get(rule_id, identity.subject_id).to_dict()}


@router.put("/automations/{rule_id}")
def update_automation(
    rule_id: str,
    payload: Any = Body(default=None),
    identity: Identity = Depends(require_identity),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    rule = runtime.rule_store.update(rule_id, identity.subject_id, payload)
    changed = sorted(payload.keys()) if isinstance(payload, dict) else []
    _audit(runtime, identity.subject_id, AUDIT_AUTOMATION_UPDATED, rule.id, {"fields": changed})
    return {"automation": rule.to_dict()}


@router.delete("/automations/{rule_id}")
def delete_automation(
    rule_id: str,
    identity: Identity = Depends(require_identity),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    runtime.rule_store.delete(rule_id, identity.subject_id)
    _audit(runtime, identity.subject_id, AUDIT_AUTOMATION_DELETED, rule_id, {})
    return {"success": True, "id": rule_id}


@router.get("/automations/{rule_id}/logs")
def automation_logs(
    rule_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(require_identity),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    runtime.rule_store.get(rule_id, identity.subject_id)
    records = runtime.execution_log.query_by_rule(rule_id, limit=limit)
    return {"logs": [record.to_dict() for record in records], "count": len(records)}


@router.get("/automations/{rule_id}/stats")
def automation_stats(
    rule_id: str,
    identity: Identity = Depends(require_identity),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    runtime.rule_store.get(rule_id, identity.subject_id)
    return runtime.pipeline.get_stats(rule_id)
# endregion


# region 审计与指标
@router.get("/audit")
def audit_records(
    limit: int = Query(default=100, ge=1, le=1000),
    resource_id: str | None = Query(default=None, alias="resourceId"),
    identity: Identity = Depends(require_identity),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    if resource_id:
        records = [
            record
            for record in runtime.audit_log.query_by_resource(resource_id, limit=limit)
            if record.owner_id == identity.subject_id
        ]
    else:
        records = runtime.audit_log.query_by_owner(identity.subject_id, limit=limit)
    return {"records": [record.to_dict() for record in records], "count": len(records)}


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
# endregion

"""Process-scoped container for the automation stack."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from replyflow.auth import HmacTokenVerifier, TokenVerifier
from replyflow.automation.actions import ActionExecutor
from replyflow.automation.delivery import DryRunSender, HttpOutboundSender, OutboundSender, Outbox
from replyflow.automation.ingress import WebhookIngress
from replyflow.automation.logs import AuditLog, ExecutionLog
from replyflow.automation.pipeline import ExecutionPipeline
from replyflow.automation.rate_limiter import RateLimiter
from replyflow.automation.rule_store import JsonFileRuleRepository, RuleRepository, RuleStore
from replyflow.config import Settings


LOGGER = logging.getLogger(__name__)


@dataclass
class AutomationRuntime:
    settings: Settings
    rule_store: RuleStore
    execution_log: ExecutionLog
    audit_log: AuditLog
    pipeline: ExecutionPipeline
    ingress: WebhookIngress
    rate_limiter: RateLimiter
    token_verifier: TokenVerifier | None
    sender: OutboundSender

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: RuleRepository | None = None,
        sender: OutboundSender | None = None,
        token_verifier: TokenVerifier | None = None,
    ) -> AutomationRuntime:
        automation = settings.automation
        rule_store = RuleStore(repository or JsonFileRuleRepository(automation.resolve_path(automation.rules_file)))
        execution_log = ExecutionLog(automation.resolve_path(automation.execution_log_file))
        audit_log = AuditLog(automation.resolve_path(automation.audit_log_file))
        pipeline = ExecutionPipeline(
            rule_store=rule_store,
            execution_log=execution_log,
            audit_log=audit_log,
            executor=ActionExecutor(default_forward_target=automation.default_forward_target),
        )

        if sender is None:
            if settings.delivery.endpoint_url:
                sender = HttpOutboundSender(
                    settings.delivery.endpoint_url,
                    api_key=settings.delivery.api_key,
                    timeout_seconds=settings.delivery.timeout_seconds,
                )
            else:
                sender = DryRunSender()

        if token_verifier is None and settings.auth.token_secret:
            token_verifier = HmacTokenVerifier(
                settings.auth.token_secret,
                default_ttl_seconds=settings.auth.token_ttl_seconds,
            )

        ingress = WebhookIngress(
            pipeline,
            audit_log,
            sender=sender,
            outbox=Outbox(settings.webhook.outbox_size),
            verify_token=settings.webhook.verify_token,
            max_message_length=automation.max_message_length,
            retry_max_attempts=settings.webhook.retry_max_attempts,
            retry_base_delay_seconds=settings.webhook.retry_base_delay_seconds,
            default_platform=settings.webhook.platform,
        )
        rate_limiter = RateLimiter(limit=settings.rate_limit.limit, window_ms=settings.rate_limit.window_ms)

        LOGGER.info(
            "automation runtime initialized",
            extra={
                "event_code": "runtime.initialized",
                "rules_file": str(automation.resolve_path(automation.rules_file)),
                "delivery_mode": "http" if isinstance(sender, HttpOutboundSender) else "dry_run",
                "auth_configured": token_verifier is not None,
            },
        )
        return cls(
            settings=settings,
            rule_store=rule_store,
            execution_log=execution_log,
            audit_log=audit_log,
            pipeline=pipeline,
            ingress=ingress,
            rate_limiter=rate_limiter,
            token_verifier=token_verifier,
            sender=sender,
        )

    async def close(self) -> None:
        await self.ingress.shutdown()
        if isinstance(self.sender, HttpOutboundSender):
            await self.sender.aclose()
        self.rate_limiter.reset()
        LOGGER.info("automation runtime closed", extra={"event_code": "runtime.closed"})

"""自动化模块入口。"""

from replyflow.automation.models import (
    ActionKind,
    AuditRecord,
    AutomationRule,
    ExecutionRecord,
    ExecutionResult,
    InboundMessageEvent,
)
from replyflow.automation.matcher import RuleMatchResult, TriggerMatcher
from replyflow.automation.actions import ActionExecutor, ActionHandler, render_template
from replyflow.automation.logs import AuditLog, ExecutionLog, append_safely
from replyflow.automation.validation import validate_rule_payload
from replyflow.automation.rule_store import (
    InMemoryRuleRepository,
    JsonFileRuleRepository,
    RuleRepository,
    RuleStore,
)
from replyflow.automation.rate_limiter import RateLimitDecision, RateLimiter
from replyflow.automation.pipeline import ExecutionPipeline
from replyflow.automation.delivery import (
    DryRunSender,
    HttpOutboundSender,
    OutboundSender,
    Outbox,
    retry_with_backoff,
)
from replyflow.automation.ingress import WebhookIngress, validate_event

__all__ = [
    "ActionKind",
    "AuditRecord",
    "AutomationRule",
    "ExecutionRecord",
    "ExecutionResult",
    "InboundMessageEvent",
    "RuleMatchResult",
    "TriggerMatcher",
    "ActionExecutor",
    "ActionHandler",
    "render_template",
    "AuditLog",
    "ExecutionLog",
    "append_safely",
    "validate_rule_payload",
    "InMemoryRuleRepository",
    "JsonFileRuleRepository",
    "RuleRepository",
    "RuleStore",
    "RateLimitDecision",
    "RateLimiter",
    "ExecutionPipeline",
    "DryRunSender",
    "HttpOutboundSender",
    "OutboundSender",
    "Outbox",
    "retry_with_backoff",
    "WebhookIngress",
    "validate_event",
]

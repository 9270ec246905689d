"""
描述: Prometheus 指标收集模块
主要功能:
    - 定义自动化流水线指标 (Counter, Histogram)
    - 提供指标记录的工具函数
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# ============================================
# region 指标定义
# ============================================
AUTOMATION_RULE_COUNT = Counter(
    "replyflow_automation_rules_total",
    "Total automation rule evaluations by status",
    ["status"],
)

AUTOMATION_ACTION_COUNT = Counter(
    "replyflow_automation_actions_total",
    "Total automation action executions by action kind and status",
    ["action", "status"],
)

AUTOMATION_ACTION_DURATION = Histogram(
    "replyflow_automation_action_duration_seconds",
    "Automation action handler duration in seconds",
    ["action"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
)

WEBHOOK_MESSAGE_COUNT = Counter(
    "replyflow_webhook_messages_total",
    "Total inbound webhook messages by status",
    ["status"],
)

RATE_LIMIT_REJECTED_COUNT = Counter(
    "replyflow_rate_limit_rejected_total",
    "Total requests rejected by the rate limiter",
)

LOG_WRITE_FAILURE_COUNT = Counter(
    "replyflow_log_write_failures_total",
    "Total execution/audit log append failures",
    ["log"],
)

DELIVERY_ATTEMPT_COUNT = Counter(
    "replyflow_delivery_attempts_total",
    "Total outbound redelivery attempts by status",
    ["status"],
)
# endregion
# ============================================


# region 指标记录工具函数
def record_automation_rule(status: str) -> None:
    """记录规则匹配结果 (matched / skipped)"""
    AUTOMATION_RULE_COUNT.labels(status=status).inc()


def record_automation_action(action: str, status: str, duration_seconds: float) -> None:
    """记录动作执行状态与耗时"""
    AUTOMATION_ACTION_COUNT.labels(action=action, status=status).inc()
    AUTOMATION_ACTION_DURATION.labels(action=action).observe(duration_seconds)


def record_webhook_message(status: str) -> None:
    WEBHOOK_MESSAGE_COUNT.labels(status=status).inc()


def record_rate_limited() -> None:
    RATE_LIMIT_REJECTED_COUNT.inc()


def record_log_write_failure(log_name: str) -> None:
    LOG_WRITE_FAILURE_COUNT.labels(log=log_name).inc()


def record_delivery_attempt(status: str) -> None:
    DELIVERY_ATTEMPT_COUNT.labels(status=status).inc()
# endregion


# region 指标导出接口
def get_metrics() -> bytes:
    """获取 Prometheus 格式的指标数据 (用于 /metrics 端点)"""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
# endregion

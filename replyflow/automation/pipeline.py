"""
描述: 自动化执行流水线。
主要功能:
    - 加载 owner 的启用规则并按存储顺序逐条匹配
    - 命中后执行动作，并无条件写入执行记录与审计记录
    - 单条规则失败不影响后续规则；规则加载失败则整体中止
    - 规则执行统计聚合
"""

from __future__ import annotations

import logging
from typing import Any

from replyflow.automation.actions import ActionExecutor
from replyflow.automation.logs import AuditLog, ExecutionLog, append_safely
from replyflow.automation.matcher import TriggerMatcher
from replyflow.automation.models import (
    AUDIT_AUTOMATION_EXECUTED,
    RESOURCE_AUTOMATION,
    STATUS_FAILED,
    STATUS_SUCCESS,
    AuditRecord,
    AutomationRule,
    ExecutionRecord,
    ExecutionResult,
    InboundMessageEvent,
)
from replyflow.automation.rule_store import RuleStore
from replyflow.utils.metrics import record_automation_rule


LOGGER = logging.getLogger(__name__)


class ExecutionPipeline:
    def __init__(
        self,
        rule_store: RuleStore,
        execution_log: ExecutionLog,
        audit_log: AuditLog,
        matcher: TriggerMatcher | None = None,
        executor: ActionExecutor | None = None,
    ) -> None:
        self._rule_store = rule_store
        self._execution_log = execution_log
        self._audit_log = audit_log
        self._matcher = matcher or TriggerMatcher()
        self._executor = executor or ActionExecutor()

    def process_message(self, owner_id: str, event: InboundMessageEvent) -> list[dict[str, Any]]:
        # a load failure propagates: no partial processing on an unreadable rule set
        rules = self._rule_store.list_for_owner(owner_id)
        enabled_rules = [rule for rule in rules if rule.enabled]

        outcomes: list[dict[str, Any]] = []
        for rule in enabled_rules:
            try:
                matched = self._evaluate(rule, event)
            except Exception:
                LOGGER.exception(
                    "automation rule evaluation failed",
                    extra={"event_code": "automation.rule.evaluation_failed", "rule_id": rule.id},
                )
                continue
            if not matched:
                continue
            result = self._executor.execute(rule, event)
            self._record(owner_id, rule, event, result)
            outcomes.append(
                {
                    "automationId": rule.id,
                    "triggered": True,
                    "result": result.to_dict(),
                }
            )
        return outcomes

    def _evaluate(self, rule: AutomationRule, event: InboundMessageEvent) -> bool:
        result = self._matcher.match(rule, event)
        status = "matched" if result.matched else "skipped"
        record_automation_rule(status)
        LOGGER.debug(
            "automation rule evaluated",
            extra={
                "event_code": "automation.rule.evaluated",
                "rule_id": rule.id,
                "status": status,
                "reason": result.reason,
                "event_id": event.id,
            },
        )
        return result.matched

    def _record(
        self,
        owner_id: str,
        rule: AutomationRule,
        event: InboundMessageEvent,
        result: ExecutionResult,
    ) -> None:
        snapshot = {"trigger": rule.trigger, "action": rule.action}
        append_safely(
            self._execution_log,
            ExecutionRecord(
                rule_id=rule.id,
                owner_id=owner_id,
                status=STATUS_SUCCESS if result.success else STATUS_FAILED,
                action_kind=rule.action,
                duration_ms=result.duration_ms,
                message_id=event.id,
                trigger_snapshot=snapshot,
            ),
        )
        append_safely(
            self._audit_log,
            AuditRecord(
                owner_id=owner_id,
                action_type=AUDIT_AUTOMATION_EXECUTED,
                resource_type=RESOURCE_AUTOMATION,
                resource_id=rule.id,
                details=dict(snapshot, messageId=event.id, success=result.success),
            ),
        )

    def get_stats(self, rule_id: str) -> dict[str, int]:
        return self._execution_log.get_stats(rule_id)

    def get_owner_stats(self, owner_id: str) -> dict[str, Any]:
        rules = self._rule_store.list_for_owner(owner_id)
        return {
            "totalAutomations": len(rules),
            "enabledAutomations": sum(1 for rule in rules if rule.enabled),
            "automations": [
                {
                    "id": rule.id,
                    "name": rule.name,
                    "enabled": rule.enabled,
                    "executionStats": self.get_stats(rule.id),
                }
                for rule in rules
            ],
        }

"""
描述: 规则触发匹配器。
主要功能:
    - 按 keyword: / from: / 子串 三种模式匹配入站消息
    - 大小写不敏感，不支持转义与正则
"""

from __future__ import annotations

from dataclasses import dataclass

from replyflow.automation.models import AutomationRule, InboundMessageEvent


KEYWORD_PREFIX = "keyword:"
SENDER_PREFIX = "from:"


@dataclass(frozen=True)
class RuleMatchResult:
    matched: bool
    reason: str = ""


class TriggerMatcher:
    def match(self, rule: AutomationRule, event: InboundMessageEvent) -> RuleMatchResult:
        expression = str(rule.trigger or "").lower()
        body = str(event.body or "").lower()
        sender = str(event.sender or "").lower()

        if expression.startswith(KEYWORD_PREFIX):
            keyword = expression[len(KEYWORD_PREFIX):].strip()
            return RuleMatchResult(matched=keyword in body, reason="keyword")

        if expression.startswith(SENDER_PREFIX):
            pattern = expression[len(SENDER_PREFIX):].strip()
            return RuleMatchResult(matched=pattern in sender, reason="sender")

        return RuleMatchResult(matched=expression in body, reason="substring")

    def matches(self, rule: AutomationRule, event: InboundMessageEvent) -> bool:
        return self.match(rule, event).matched

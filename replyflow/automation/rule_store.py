"""
描述: 自动化规则存储。
主要功能:
    - 规则 CRUD，所有读写按 (rule_id, owner_id) 校验归属
    - 同一 owner 的写操作串行化（按 owner 加锁）
    - 提供 JSON 文件与内存两种存储介质
"""

from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import os
from pathlib import Path
from threading import Lock
import time
from typing import Any, Iterator, Protocol
import uuid

from replyflow.automation.models import AutomationRule, utc_now_iso
from replyflow.automation.validation import validate_rule_payload
from replyflow.errors import NotFoundOrNotOwnedError, StorageError, ValidationError


LOGGER = logging.getLogger(__name__)

_IMMUTABLE_KEYS = {"id", "userId", "ownerId", "createdAt", "updatedAt"}
_ACTION_PARAM_KEYS = ("responseMessage", "forwardTo")


# region 存储介质
class RuleRepository(Protocol):
    """Storage medium; every method is atomic on its own."""

    def list_by_owner(self, owner_id: str) -> list[AutomationRule]: ...

    def get(self, rule_id: str) -> AutomationRule | None: ...

    def insert(self, rule: AutomationRule) -> None: ...

    def replace(self, rule: AutomationRule) -> None: ...

    def remove(self, rule_id: str) -> bool: ...


class InMemoryRuleRepository:
    def __init__(self, rules: list[AutomationRule] | None = None) -> None:
        self._lock = Lock()
        self._rules: dict[str, dict[str, Any]] = {}
        for rule in rules or []:
            self._rules[rule.id] = rule.to_dict()

    def list_by_owner(self, owner_id: str) -> list[AutomationRule]:
        with self._lock:
            return [AutomationRule.from_dict(item) for item in self._rules.values() if item["userId"] == owner_id]

    def get(self, rule_id: str) -> AutomationRule | None:
        with self._lock:
            item = self._rules.get(rule_id)
            return AutomationRule.from_dict(item) if item is not None else None

    def insert(self, rule: AutomationRule) -> None:
        with self._lock:
            if rule.id in self._rules:
                raise StorageError(f"duplicate automation id: {rule.id}")
            self._rules[rule.id] = rule.to_dict()

    def replace(self, rule: AutomationRule) -> None:
        with self._lock:
            if rule.id not in self._rules:
                raise StorageError(f"automation disappeared: {rule.id}")
            self._rules[rule.id] = rule.to_dict()

    def remove(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None


class JsonFileRuleRepository:
    """JSON 数组文件存储（进程内锁 + 原子替换）。"""

    def __init__(self, file_path: str | Path) -> None:
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def _read_all(self) -> list[dict[str, Any]]:
        if not self._file_path.exists():
            return []
        try:
            raw = self._file_path.read_text(encoding="utf-8")
            if not raw.strip():
                return []
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to retrieve automations: {exc}") from exc
        if not isinstance(data, list):
            raise StorageError("Failed to retrieve automations: rules file must hold a JSON array")
        return [item for item in data if isinstance(item, dict)]

    def _write_all(self, items: list[dict[str, Any]]) -> None:
        tmp_path = self._file_path.with_name(self._file_path.name + ".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as fp:
                json.dump(items, fp, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self._file_path)
        except OSError as exc:
            raise StorageError(f"Failed to persist automations: {exc}") from exc

    @staticmethod
    def _find_index(items: list[dict[str, Any]], rule_id: str) -> int:
        for idx, item in enumerate(items):
            if str(item.get("id") or "") == rule_id:
                return idx
        return -1

    def list_by_owner(self, owner_id: str) -> list[AutomationRule]:
        with self._lock:
            items = self._read_all()
        return [AutomationRule.from_dict(item) for item in items if str(item.get("userId") or "") == owner_id]

    def get(self, rule_id: str) -> AutomationRule | None:
        with self._lock:
            items = self._read_all()
        idx = self._find_index(items, rule_id)
        return AutomationRule.from_dict(items[idx]) if idx >= 0 else None

    def insert(self, rule: AutomationRule) -> None:
        with self._lock:
            items = self._read_all()
            if self._find_index(items, rule.id) >= 0:
                raise StorageError(f"duplicate automation id: {rule.id}")
            items.append(rule.to_dict())
            self._write_all(items)

    def replace(self, rule: AutomationRule) -> None:
        with self._lock:
            items = self._read_all()
            idx = self._find_index(items, rule.id)
            if idx < 0:
                raise StorageError(f"automation disappeared: {rule.id}")
            items[idx] = rule.to_dict()
            self._write_all(items)

    def remove(self, rule_id: str) -> bool:
        with self._lock:
            items = self._read_all()
            idx = self._find_index(items, rule_id)
            if idx < 0:
                return False
            items.pop(idx)
            self._write_all(items)
            return True
# endregion


def generate_rule_id() -> str:
    return f"auto_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _split_action_params(payload: dict[str, Any], base: dict[str, Any] | None = None) -> dict[str, Any]:
    params = dict(base or {})
    raw_params = payload.get("actionParams")
    if isinstance(raw_params, dict):
        params.update(raw_params)
    for key in _ACTION_PARAM_KEYS:
        if key in payload:
            params[key] = payload[key]
    return params


class _OwnerLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = Lock()
        self.users = 0


class RuleStore:
    def __init__(self, repository: RuleRepository) -> None:
        self._repository = repository
        self._owner_locks: dict[str, _OwnerLock] = {}
        self._registry_lock = Lock()

    @contextmanager
    def _owner_lock(self, owner_id: str) -> Iterator[None]:
        with self._registry_lock:
            entry = self._owner_locks.get(owner_id)
            if entry is None:
                entry = self._owner_locks[owner_id] = _OwnerLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._owner_locks[owner_id]

    def _load_owned(self, rule_id: str, owner_id: str) -> AutomationRule:
        rule = self._repository.get(str(rule_id or ""))
        if rule is None or rule.owner_id != owner_id:
            raise NotFoundOrNotOwnedError(str(rule_id or ""))
        return rule

    def list_for_owner(self, owner_id: str) -> list[AutomationRule]:
        return self._repository.list_by_owner(owner_id)

    def get(self, rule_id: str, owner_id: str) -> AutomationRule:
        return self._load_owned(rule_id, owner_id)

    def create(self, owner_id: str, payload: dict[str, Any]) -> AutomationRule:
        cleaned = validate_rule_payload(payload)
        now = utc_now_iso()
        rule = AutomationRule(
            id=generate_rule_id(),
            owner_id=owner_id,
            name=cleaned["name"],
            trigger=cleaned["trigger"],
            action=cleaned["action"],
            action_params=_split_action_params(cleaned),
            template_id=cleaned.get("templateId"),
            enabled=cleaned.get("enabled") is not False,
            created_at=now,
            updated_at=now,
        )
        with self._owner_lock(owner_id):
            self._repository.insert(rule)
        LOGGER.info(
            "automation created",
            extra={"event_code": "automation.rule.created", "rule_id": rule.id, "owner_id": owner_id},
        )
        return rule

    def update(self, rule_id: str, owner_id: str, updates: dict[str, Any]) -> AutomationRule:
        if not isinstance(updates, dict):
            raise ValidationError("Request body must be an object")
        mutable = {key: value for key, value in updates.items() if key not in _IMMUTABLE_KEYS}
        cleaned = validate_rule_payload(mutable, partial=True)
        with self._owner_lock(owner_id):
            current = self._load_owned(rule_id, owner_id)
            updated = AutomationRule(
                id=current.id,
                owner_id=current.owner_id,
                name=cleaned.get("name", current.name),
                trigger=cleaned.get("trigger", current.trigger),
                action=cleaned.get("action", current.action),
                action_params=_split_action_params(cleaned, current.action_params),
                template_id=cleaned.get("templateId", current.template_id),
                enabled=cleaned.get("enabled", current.enabled),
                created_at=current.created_at,
                updated_at=utc_now_iso(),
            )
            self._repository.replace(updated)
        return updated

    def delete(self, rule_id: str, owner_id: str) -> None:
        with self._owner_lock(owner_id):
            rule = self._load_owned(rule_id, owner_id)
            if not self._repository.remove(rule.id):
                raise NotFoundOrNotOwnedError(rule.id)
        LOGGER.info(
            "automation deleted",
            extra={"event_code": "automation.rule.deleted", "rule_id": rule.id, "owner_id": owner_id},
        )

"""
描述: 执行日志与审计日志存储。
主要功能:
    - 以 JSONL 方式追加写入执行记录与审计记录（只追加，不修改）
    - 读取时跳过损坏行，按时间倒序查询
    - 聚合单条规则的执行统计
"""

from __future__ import annotations

from datetime import datetime
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Generic, TypeVar

from replyflow.automation.models import (
    STATUS_SUCCESS,
    AuditRecord,
    ExecutionRecord,
)
from replyflow.errors import StorageError
from replyflow.utils.metrics import record_log_write_failure


LOGGER = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", ExecutionRecord, AuditRecord)


def _sort_key(timestamp: str) -> float:
    try:
        return datetime.fromisoformat(timestamp).timestamp()
    except (TypeError, ValueError):
        return 0.0


class JsonlLogStore(Generic[RecordT]):
    """追加写 JSONL 日志：进程内锁 + 单次 write。"""

    name = "log"

    def __init__(self, file_path: str | Path, parse: Callable[[dict[str, Any]], RecordT]) -> None:
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        self._parse = parse
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._file_path

    def _append(self, entry: dict[str, Any]) -> None:
        line = json.dumps(entry, ensure_ascii=False) + "\n"
        try:
            with self._lock:
                with self._file_path.open("a", encoding="utf-8") as fp:
                    fp.write(line)
                    fp.flush()
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(f"failed to append {self.name} record: {exc}") from exc

    def _read_all(self) -> list[RecordT]:
        if not self._file_path.exists():
            return []
        try:
            with self._lock:
                raw = self._file_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"failed to read {self.name}: {exc}") from exc

        records: list[RecordT] = []
        skipped = 0
        for line in raw.splitlines():
            text = line.strip()
            if not text:
                continue
            try:
                parsed = json.loads(text)
                if not isinstance(parsed, dict):
                    raise ValueError("log line is not an object")
                records.append(self._parse(parsed))
            except (KeyError, TypeError, ValueError):
                skipped += 1
        if skipped:
            LOGGER.warning(
                "malformed log lines skipped",
                extra={"event_code": "automation.log.malformed", "log": self.name, "skipped": skipped},
            )
        return records

    def _query(self, predicate: Callable[[RecordT], bool], limit: int) -> list[RecordT]:
        max_items = max(0, int(limit))
        matched = [record for record in self._read_all() if predicate(record)]
        matched.sort(key=lambda record: _sort_key(record.timestamp), reverse=True)
        return matched[:max_items]


class ExecutionLog(JsonlLogStore[ExecutionRecord]):
    name = "execution"

    def __init__(self, file_path: str | Path) -> None:
        super().__init__(file_path, ExecutionRecord.from_dict)

    def append(self, record: ExecutionRecord) -> ExecutionRecord:
        self._append(record.to_dict())
        return record

    def query_by_rule(self, rule_id: str, limit: int = 100) -> list[ExecutionRecord]:
        return self._query(lambda record: record.rule_id == rule_id, limit)

    def query_by_owner(self, owner_id: str, limit: int = 100) -> list[ExecutionRecord]:
        return self._query(lambda record: record.owner_id == owner_id, limit)

    def get_stats(self, rule_id: str) -> dict[str, int]:
        records = [record for record in self._read_all() if record.rule_id == rule_id]
        total = len(records)
        if total == 0:
            return {"totalRuns": 0, "successCount": 0, "failureCount": 0, "meanDurationMs": 0}
        # anything but SUCCESS counts as a failure
        success_count = sum(1 for record in records if record.status.upper() == STATUS_SUCCESS)
        return {
            "totalRuns": total,
            "successCount": success_count,
            "failureCount": total - success_count,
            "meanDurationMs": int(round(sum(record.duration_ms for record in records) / total)),
        }


class AuditLog(JsonlLogStore[AuditRecord]):
    name = "audit"

    def __init__(self, file_path: str | Path) -> None:
        super().__init__(file_path, AuditRecord.from_dict)

    def append(self, record: AuditRecord) -> AuditRecord:
        self._append(record.to_dict())
        return record

    def query_by_owner(self, owner_id: str, limit: int = 100) -> list[AuditRecord]:
        return self._query(lambda record: record.owner_id == owner_id, limit)

    def query_by_resource(self, resource_id: str, limit: int = 100) -> list[AuditRecord]:
        return self._query(lambda record: record.resource_id == resource_id, limit)


def append_safely(store: ExecutionLog | AuditLog, record: Any) -> bool:
    """Append a record, reporting storage failures instead of raising."""
    try:
        store.append(record)
    except StorageError as exc:
        record_log_write_failure(store.name)
        LOGGER.error(
            "automation log write failed",
            extra={
                "event_code": "automation.log.write_failed",
                "log": store.name,
                "error": str(exc),
            },
        )
        return False
    return True

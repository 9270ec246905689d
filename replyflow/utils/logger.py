"""
描述: 结构化日志工具库
主要功能:
    - JSON 格式结构化输出
    - 自动注入请求上下文 (Request ID)
    - 统一日志配置初始化
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from typing import Any

from replyflow.config import LoggingSettings


# region 上下文变量
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
# endregion

_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    )
)


# region 日志 Formatter
class StructuredJsonFormatter(logging.Formatter):
    """
    JSON 结构化日志格式化器

    功能:
        - 将日志记录转换为单行 JSON
        - 自动注入当前请求 ID 与 extra 字段
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if request_id := request_id_var.get():
            payload["request_id"] = request_id

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class SimpleFormatter(logging.Formatter):
    """简单文本格式化器（开发环境用）"""

    def format(self, record: logging.LogRecord) -> str:
        base = f"[{self.formatTime(record)}] {record.levelname:5} {record.name}: {record.getMessage()}"
        if request_id := request_id_var.get():
            base += f" (req={request_id[:8]})"

        extras = []
        for key in ("event_code", "rule_id", "owner_id", "duration_ms"):
            if hasattr(record, key):
                extras.append(f"{key}={getattr(record, key)}")
        if extras:
            base += f" [{', '.join(extras)}]"
        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)
        return base
# endregion


# region 上下文管理
def generate_request_id() -> str:
    """生成请求 ID"""
    return str(uuid.uuid4())[:12]


def set_request_id(request_id: str | None = None) -> str:
    value = request_id or generate_request_id()
    request_id_var.set(value)
    return value


def clear_request_context() -> None:
    request_id_var.set("")
# endregion


# region 初始化配置
def setup_logging(settings: LoggingSettings) -> None:
    """
    初始化全局日志配置

    参数:
        settings: 日志配置对象
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    if settings.format == "json":
        handler.setFormatter(StructuredJsonFormatter())
    else:
        handler.setFormatter(SimpleFormatter())

    logging.basicConfig(level=level, handlers=[handler], force=True)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
# endregion

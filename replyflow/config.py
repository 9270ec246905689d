"""
描述: replyflow 全局配置加载器
主要功能:
    - 统一管理服务、自动化、限流、Webhook 配置
    - 支持 YAML 文件加载与环境变量覆盖
"""

from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


# region 基础配置模型
class ServerSettings(BaseModel):
    """服务监听配置"""
    host: str = "0.0.0.0"
    port: int = 8090
    debug: bool = False


class LoggingSettings(BaseModel):
    """日志系统配置"""
    level: str = "INFO"
    format: str = "json"


class AutomationSettings(BaseModel):
    """自动化模块配置"""

    storage_dir: str = "automation_data"
    rules_file: str = "automations.json"
    execution_log_file: str = "execution.log"
    audit_log_file: str = "audit.log"
    default_forward_target: str = "admin"
    max_message_length: int = 5000

    def resolve_path(self, file_name: str) -> Path:
        """相对路径挂在 storage_dir 下，绝对路径原样返回"""
        path = Path(file_name)
        if path.is_absolute():
            return path
        return Path(self.storage_dir) / path


class RateLimitSettings(BaseModel):
    enabled: bool = True
    limit: int = 100
    window_ms: int = 60000


class WebhookSettings(BaseModel):
    """Webhook 入口配置"""
    verify_token: str = ""
    signature_secret: str = ""
    timestamp_tolerance_seconds: int = 300
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    outbox_size: int = 2048
    platform: str = "facebook"


class DeliverySettings(BaseModel):
    endpoint_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


class AuthSettings(BaseModel):
    token_secret: str = ""
    token_ttl_seconds: int = 86400


class Settings(BaseModel):
    """配置聚合根"""
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    automation: AutomationSettings = Field(default_factory=AutomationSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
# endregion


# region 配置加载逻辑
def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replace(match: re.Match[str]) -> str:
            expr = match.group(1)
            if ":-" in expr:
                key, default = expr.split(":-", 1)
                return os.getenv(key, default)
            return os.getenv(expr, "")

        return _ENV_PATTERN.sub(replace, value)
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, dict):
        return {key: _expand_env(val) for key, val in value.items()}
    return value


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return _expand_env(data)


def _set_nested(data: dict[str, Any], keys: list[str], value: Any) -> None:
    current = data
    for key in keys[:-1]:
        current = current.setdefault(key, {})
    current[keys[-1]] = value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    mapping = {
        "REPLYFLOW_HOST": ["server", "host"],
        "REPLYFLOW_PORT": ["server", "port"],
        "REPLYFLOW_DEBUG": ["server", "debug"],
        "LOG_LEVEL": ["logging", "level"],
        "LOG_FORMAT": ["logging", "format"],
        "AUTOMATION_STORAGE_DIR": ["automation", "storage_dir"],
        "AUTOMATION_RULES_FILE": ["automation", "rules_file"],
        "AUTOMATION_EXECUTION_LOG_FILE": ["automation", "execution_log_file"],
        "AUTOMATION_AUDIT_LOG_FILE": ["automation", "audit_log_file"],
        "AUTOMATION_DEFAULT_FORWARD_TARGET": ["automation", "default_forward_target"],
        "RATE_LIMIT_ENABLED": ["rate_limit", "enabled"],
        "RATE_LIMIT_LIMIT": ["rate_limit", "limit"],
        "RATE_LIMIT_WINDOW_MS": ["rate_limit", "window_ms"],
        "WEBHOOK_VERIFY_TOKEN": ["webhook", "verify_token"],
        "WEBHOOK_SIGNATURE_SECRET": ["webhook", "signature_secret"],
        "WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS": ["webhook", "timestamp_tolerance_seconds"],
        "WEBHOOK_RETRY_MAX_ATTEMPTS": ["webhook", "retry_max_attempts"],
        "WEBHOOK_RETRY_BASE_DELAY_SECONDS": ["webhook", "retry_base_delay_seconds"],
        "DELIVERY_ENDPOINT_URL": ["delivery", "endpoint_url"],
        "DELIVERY_API_KEY": ["delivery", "api_key"],
        "DELIVERY_TIMEOUT_SECONDS": ["delivery", "timeout_seconds"],
        "AUTH_TOKEN_SECRET": ["auth", "token_secret"],
        "AUTH_TOKEN_TTL_SECONDS": ["auth", "token_ttl_seconds"],
    }
    for env_key, path in mapping.items():
        env_value = os.getenv(env_key)
        if env_value is not None and env_value != "":
            _set_nested(data, path, env_value)
    return data


def load_settings(config_path: str | None = None) -> Settings:
    path = Path(config_path or os.getenv("CONFIG_PATH", "config.yaml"))
    data = _load_yaml(path)
    data = _apply_env_overrides(data)
    return Settings.model_validate(data)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """获取单例配置对象"""
    return load_settings()
# endregion

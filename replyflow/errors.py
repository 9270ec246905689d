"""
异常处理模块

统一定义自定义异常类，每个异常携带稳定的 code 与 HTTP 状态码，
上层路由据此生成 {error, code, details} 响应。
"""

from __future__ import annotations

from typing import Any


# ============================================
# region 基础异常
# ============================================
class ReplyflowError(Exception):
    """replyflow 基础异常类"""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        if code:
            self.code = code
        self.message = message or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return self.message
# endregion
# ============================================


# ============================================
# region 请求校验
# ============================================
class ValidationError(ReplyflowError):
    code = "VALIDATION_ERROR"
    status_code = 400


class MissingFieldError(ValidationError):
    code = "MISSING_FIELD"

    def __init__(self, field: str) -> None:
        super().__init__(f"Missing required field: {field}", details={"field": field})
        self.field = field


class InvalidFieldError(ValidationError):
    code = "INVALID_FIELD"

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"Invalid field {field}: {reason}", details={"field": field, "reason": reason})
        self.field = field


class NotFoundOrNotOwnedError(ReplyflowError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource_id: str = "") -> None:
        super().__init__("Automation not found or not owned by user", details={"id": resource_id} if resource_id else None)
# endregion
# ============================================


# ============================================
# region 鉴权
# ============================================
class AuthError(ReplyflowError):
    code = "INVALID_TOKEN"
    status_code = 403


class NoTokenError(AuthError):
    code = "NO_TOKEN"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Missing authentication token")


class TokenExpiredError(AuthError):
    code = "TOKEN_EXPIRED"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Token expired")


class InvalidTokenError(AuthError):
    def __init__(self, message: str = "Invalid token") -> None:
        super().__init__(message)
# endregion
# ============================================


# ============================================
# region 执行与投递
# ============================================
class UnknownActionError(ReplyflowError):
    code = "UNKNOWN_ACTION"

    def __init__(self, action: Any) -> None:
        super().__init__(f"Unknown action: {action}")
        self.action = action


class TransientDeliveryError(ReplyflowError):
    code = "DELIVERY_UNAVAILABLE"
    status_code = 503
    retryable = True


class DeliveryFailedError(ReplyflowError):
    code = "DELIVERY_FAILED"
    status_code = 502


class DeliveryNotFoundError(ReplyflowError):
    code = "DELIVERY_NOT_FOUND"
    status_code = 404

    def __init__(self, delivery_id: str) -> None:
        super().__init__(f"No pending delivery for message: {delivery_id}")


class RetryCancelledError(ReplyflowError):
    code = "RETRY_CANCELLED"
    status_code = 503


class RateLimitExceededError(ReplyflowError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, retry_after: int) -> None:
        super().__init__("Too many requests")
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retryAfter"] = self.retry_after
        return payload
# endregion
# ============================================


# ============================================
# region 存储
# ============================================
class StorageError(ReplyflowError):
    code = "STORAGE_ERROR"
    status_code = 500
# endregion
# ============================================


def is_retryable(exc: BaseException) -> bool:
    """Errors outside the taxonomy are treated as transient."""
    if isinstance(exc, ReplyflowError):
        return exc.retryable
    return isinstance(exc, Exception)

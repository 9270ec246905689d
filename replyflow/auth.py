"""
描述: 鉴权边界 (AuthGate)。
主要功能:
    - 从 Authorization 头解析 Bearer 凭证
    - HMAC-SHA256 签名令牌的签发与校验
    - Webhook 请求签名校验
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Protocol

from replyflow.errors import InvalidTokenError, NoTokenError, TokenExpiredError


@dataclass(frozen=True)
class Identity:
    subject_id: str
    email: str = ""
    scope: list[str] = field(default_factory=list)


class TokenVerifier(Protocol):
    def verify(self, token: str) -> Identity: ...


def extract_bearer_token(authorization: str | None) -> str:
    parts = str(authorization or "").strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise NoTokenError()
    return parts[1].strip()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class HmacTokenVerifier:
    """Tokens look like ``<base64url(json claims)>.<hex hmac-sha256>``."""

    def __init__(
        self,
        secret: str,
        clock: Callable[[], float] | None = None,
        default_ttl_seconds: int = 86400,
    ) -> None:
        if not secret:
            raise ValueError("token secret is required")
        self._secret = secret.encode("utf-8")
        self._clock = clock or time.time
        self._default_ttl_seconds = int(default_ttl_seconds)

    def _sign(self, body: str) -> str:
        return hmac.new(self._secret, body.encode("ascii"), hashlib.sha256).hexdigest()

    def issue(
        self,
        subject_id: str,
        email: str = "",
        scope: list[str] | None = None,
        ttl_seconds: int | None = None,
    ) -> str:
        ttl = self._default_ttl_seconds if ttl_seconds is None else int(ttl_seconds)
        claims = {
            "sub": subject_id,
            "email": email,
            "scope": list(scope if scope is not None else ["automations"]),
            "exp": int(self._clock()) + ttl,
        }
        body = _b64encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
        return f"{body}.{self._sign(body)}"

    def verify(self, token: str) -> Identity:
        if not token:
            raise NoTokenError()
        body, sep, signature = token.partition(".")
        if not sep or not body or not signature:
            raise InvalidTokenError()
        if not hmac.compare_digest(signature, self._sign(body)):
            raise InvalidTokenError()
        try:
            claims: dict[str, Any] = json.loads(_b64decode(body))
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidTokenError() from exc
        if not isinstance(claims, dict):
            raise InvalidTokenError()

        subject_id = str(claims.get("sub") or claims.get("userId") or "").strip()
        if not subject_id:
            raise InvalidTokenError()
        try:
            expires_at = float(claims.get("exp") or 0)
        except (TypeError, ValueError) as exc:
            raise InvalidTokenError() from exc
        if expires_at and expires_at <= self._clock():
            raise TokenExpiredError()

        raw_scope = claims.get("scope")
        scope = [str(item) for item in raw_scope] if isinstance(raw_scope, list) else []
        return Identity(subject_id=subject_id, email=str(claims.get("email") or ""), scope=scope)


def verify_webhook_signature(
    headers: dict[str, str],
    raw_body: bytes,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Check ``x-webhook-signature`` = hex hmac-sha256 of ``"<timestamp>." + body``."""
    header_map = {str(key).lower(): str(value) for key, value in headers.items()}
    timestamp_text = str(header_map.get("x-webhook-timestamp") or "").strip()
    signature_text = str(header_map.get("x-webhook-signature") or "").strip()
    if not timestamp_text or not signature_text:
        raise InvalidTokenError("missing webhook signature headers: x-webhook-timestamp / x-webhook-signature")

    try:
        timestamp = int(timestamp_text)
    except ValueError as exc:
        raise InvalidTokenError("invalid x-webhook-timestamp") from exc

    current = int(now if now is not None else time.time())
    if abs(current - timestamp) > max(1, int(tolerance_seconds)):
        raise TokenExpiredError()

    if signature_text.lower().startswith("sha256="):
        signature_text = signature_text.split("=", 1)[1].strip()

    expected = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}".encode("utf-8") + b"." + raw_body,
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(signature_text, expected):
        raise InvalidTokenError("invalid webhook signature")

from __future__ import annotations

import hashlib
import hmac
from pathlib import Path
import sys

import pytest


ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from replyflow.auth import HmacTokenVerifier, extract_bearer_token, verify_webhook_signature
from replyflow.errors import InvalidTokenError, NoTokenError, TokenExpiredError


class _FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_extract_bearer_token() -> None:
    assert extract_bearer_token("Bearer abc.def") == "abc.def"
    assert extract_bearer_token("bearer   xyz  ") == "xyz"
    for header in (None, "", "Basic abc", "Bearer "):
        with pytest.raises(NoTokenError):
            extract_bearer_token(header)


def test_issued_token_round_trips_identity() -> None:
    verifier = HmacTokenVerifier("secret", clock=_FakeClock(1_000))

    identity = verifier.verify(verifier.issue("u1", email="u1@example.com"))

    assert identity.subject_id == "u1"
    assert identity.email == "u1@example.com"
    assert identity.scope == ["automations"]


def test_expired_token_is_rejected() -> None:
    clock = _FakeClock(1_000)
    verifier = HmacTokenVerifier("secret", clock=clock, default_ttl_seconds=60)
    token = verifier.issue("u1")
    clock.now = 1_060

    with pytest.raises(TokenExpiredError) as excinfo:
        verifier.verify(token)

    assert excinfo.value.status_code == 401
    assert excinfo.value.code == "TOKEN_EXPIRED"


def test_tampered_or_foreign_token_is_invalid() -> None:
    verifier = HmacTokenVerifier("secret")
    other = HmacTokenVerifier("other-secret")
    token = verifier.issue("u1")
    body, _, signature = token.partition(".")

    for bad in (other.issue("u1"), body + "." + "0" * len(signature), "garbage", body + "x." + signature):
        with pytest.raises(InvalidTokenError) as excinfo:
            verifier.verify(bad)
        assert excinfo.value.status_code == 403


def test_verifier_requires_secret() -> None:
    with pytest.raises(ValueError):
        HmacTokenVerifier("")


def _sign(secret: str, timestamp: int, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), str(timestamp).encode("utf-8") + b"." + body, hashlib.sha256).hexdigest()


def test_webhook_signature_accepts_valid_request() -> None:
    body = b'{"ownerId":"u1"}'
    headers = {"X-Webhook-Timestamp": "1000", "X-Webhook-Signature": "sha256=" + _sign("s", 1000, body)}

    verify_webhook_signature(headers, body, "s", now=1010)


def test_webhook_signature_rejects_bad_or_stale_requests() -> None:
    body = b"{}"
    good = _sign("s", 1000, body)

    with pytest.raises(InvalidTokenError):
        verify_webhook_signature({}, body, "s", now=1000)
    with pytest.raises(InvalidTokenError):
        verify_webhook_signature({"x-webhook-timestamp": "1000", "x-webhook-signature": good}, b"{ }", "s", now=1000)
    with pytest.raises(TokenExpiredError):
        verify_webhook_signature(
            {"x-webhook-timestamp": "1000", "x-webhook-signature": good},
            body,
            "s",
            tolerance_seconds=300,
            now=1301,
        )

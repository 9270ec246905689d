"""
描述: 管理令牌签发脚本。
主要功能:
    - 使用 auth.token_secret 为指定用户签发 Bearer 令牌
    - 支持自定义有效期与权限范围
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from replyflow.auth import HmacTokenVerifier
from replyflow.config import get_settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue a bearer token for the replyflow API")
    parser.add_argument("subject", help="user id the token is issued for")
    parser.add_argument("--email", default="", help="email claim")
    parser.add_argument("--ttl", type=int, default=None, help="lifetime in seconds (default: auth.token_ttl_seconds)")
    parser.add_argument("--scope", action="append", default=None, help="scope entry, repeatable")
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv(ROOT / ".env")
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    if not settings.auth.token_secret:
        print("auth.token_secret is not configured (set AUTH_TOKEN_SECRET)", file=sys.stderr)
        return 2

    verifier = HmacTokenVerifier(
        settings.auth.token_secret,
        default_ttl_seconds=settings.auth.token_ttl_seconds,
    )
    print(verifier.issue(args.subject, email=args.email, scope=args.scope, ttl_seconds=args.ttl))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

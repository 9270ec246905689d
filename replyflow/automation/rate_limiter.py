"""
描述: 滑动窗口限流器。
主要功能:
    - 按身份维护窗口内已接受请求的时间戳
    - 每次调用先清理过期时间戳，再判断是否放行
    - 按身份加锁，避免并发请求丢失计数
    - 身份数超过阈值时在放行路径上清理空闲窗口
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import math
from threading import Lock
import time
from typing import Callable


def _now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: float
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at_ms / 1000))),
        }


class _Window:
    __slots__ = ("lock", "stamps")

    def __init__(self) -> None:
        self.lock = Lock()
        self.stamps: deque[float] = deque()


class RateLimiter:
    def __init__(
        self,
        limit: int = 100,
        window_ms: int = 60000,
        clock: Callable[[], float] | None = None,
        prune_threshold: int = 10000,
    ) -> None:
        self._limit = max(1, int(limit))
        self._window_ms = max(1, int(window_ms))
        self._clock = clock or _now_ms
        self._windows: dict[str, _Window] = {}
        self._registry_lock = Lock()
        self._prune_threshold = max(1, int(prune_threshold))
        self._next_prune_at = self._prune_threshold

    @property
    def limit(self) -> int:
        return self._limit

    def __len__(self) -> int:
        return len(self._windows)

    def _window(self, identity: str) -> _Window:
        with self._registry_lock:
            window = self._windows.get(identity)
            if window is None:
                if len(self._windows) >= self._next_prune_at:
                    self._drop_expired()
                    self._next_prune_at = max(self._prune_threshold, 2 * len(self._windows))
                window = _Window()
                self._windows[identity] = window
            return window

    def allow(self, identity: str) -> RateLimitDecision:
        key = str(identity or "anonymous")
        while True:
            window = self._window(key)
            with window.lock:
                # a prune pass may have detached this window while we waited
                if self._windows.get(key) is window:
                    return self._decide(window)

    def _decide(self, window: _Window) -> RateLimitDecision:
        now = float(self._clock())
        cutoff = now - self._window_ms
        stamps = window.stamps
        while stamps and stamps[0] <= cutoff:
            stamps.popleft()

        if len(stamps) >= self._limit:
            oldest = stamps[0]
            retry_after = int(math.ceil((oldest + self._window_ms - now) / 1000))
            return RateLimitDecision(
                allowed=False,
                limit=self._limit,
                remaining=0,
                reset_at_ms=oldest + self._window_ms,
                retry_after=max(1, retry_after),
            )

        stamps.append(now)
        return RateLimitDecision(
            allowed=True,
            limit=self._limit,
            remaining=self._limit - len(stamps),
            reset_at_ms=stamps[0] + self._window_ms,
        )

    def prune_idle(self) -> int:
        """Drop identities whose windows are empty; returns how many were dropped."""
        with self._registry_lock:
            return self._drop_expired()

    def _drop_expired(self) -> int:
        # caller holds the registry lock
        cutoff = float(self._clock()) - self._window_ms
        dropped = 0
        for identity in list(self._windows):
            window = self._windows[identity]
            with window.lock:
                while window.stamps and window.stamps[0] <= cutoff:
                    window.stamps.popleft()
                if not window.stamps:
                    del self._windows[identity]
                    dropped += 1
        return dropped

    def reset(self) -> None:
        with self._registry_lock:
            self._windows.clear()

"""外部 API を呼ぶエンドポイント向けのレート制限.

固定ウィンドウ方式。subject（ユーザー ID 等）× ウィンドウごとにカウントする。
memory バックエンドはプロセス内のみ有効なので、複数ワーカーで動かす場合は
supabase バックエンド（rank_tracker.rate_limits テーブル）を使う。
"""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from ranktracker import config, db
from ranktracker.errors import ConfigurationError, RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    remaining: int
    reset_in: int  # 秒


class RateLimiter(ABC):
    """check で1回分を消費し、許可されたかどうかを返す."""

    def __init__(
        self,
        name: str,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

    @abstractmethod
    def check(self, key: str) -> RateLimitResult:
        ...

    def consume(self, key: str) -> RateLimitResult:
        """check して上限超過なら RateLimitExceeded を送出する."""
        result = self.check(key)
        if not result.success:
            logger.warning("レート制限超過: limiter=%s, key=%s", self.name, key)
            raise RateLimitExceeded(result.reset_in)
        return result


class InMemoryRateLimiter(RateLimiter):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._entries: dict[str, tuple[int, float]] = {}  # key -> (count, reset_at)
        self._lock = threading.Lock()

    def _cleanup(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._entries.items() if now >= reset_at]
        for k in expired:
            del self._entries[k]

    def check(self, key: str) -> RateLimitResult:
        with self._lock:
            now = self._clock()
            self._cleanup(now)

            count, reset_at = self._entries.get(key, (0, now + self.window_seconds))
            reset_in = math.ceil(reset_at - now)
            if count >= self.max_requests:
                return RateLimitResult(success=False, remaining=0, reset_in=reset_in)

            count += 1
            self._entries[key] = (count, reset_at)
            return RateLimitResult(
                success=True, remaining=self.max_requests - count, reset_in=reset_in
            )


class SupabaseRateLimiter(RateLimiter):
    """ワーカー間で共有するカウンタ. 加算は DB 側の関数で原子的に行う."""

    def check(self, key: str) -> RateLimitResult:
        now = self._clock()
        window_start = now - (now % self.window_seconds)
        count = db.consume_rate_limit(
            f"{self.name}:{key}",
            datetime.fromtimestamp(window_start, tz=timezone.utc).isoformat(),
            self.window_seconds,
        )
        reset_in = math.ceil(window_start + self.window_seconds - now)
        return RateLimitResult(
            success=count <= self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_in=reset_in,
        )


_BACKENDS = {
    "memory": InMemoryRateLimiter,
    "supabase": SupabaseRateLimiter,
}
_limiters: dict[str, RateLimiter] = {}


def get_rate_limiter(tier: str) -> RateLimiter:
    """config.RATE_LIMIT_TIERS のティアに対応するリミッタを返す（ティアごとに1つ）."""
    if tier not in _limiters:
        backend = _BACKENDS.get(config.RATE_LIMIT_BACKEND)
        if backend is None:
            raise ConfigurationError(f"不明な RATE_LIMIT_BACKEND: {config.RATE_LIMIT_BACKEND}")
        max_requests, window_seconds = config.RATE_LIMIT_TIERS[tier]
        _limiters[tier] = backend(tier, max_requests, window_seconds)
    return _limiters[tier]


def reset_rate_limiters() -> None:
    _limiters.clear()

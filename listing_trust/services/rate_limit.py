from __future__ import annotations

import logging
from typing import Any

from listing_trust.services.errors import RateLimitedError

logger = logging.getLogger(__name__)


def rate_limit_key(action: str, actor_id: str) -> str:
    return f"{action}:{actor_id}"


class SharedRateLimiter:
    """Fixed-window limiter backed by the repository's expiring counters."""

    def __init__(self, repository: Any, *, limit: int, window_seconds: int) -> None:
        self.repository = repository
        self.limit = max(1, limit)
        self.window_seconds = max(1, window_seconds)

    async def check(self, action: str, actor_id: str) -> None:
        key = rate_limit_key(action, actor_id)
        allowed = await self.repository.hit_rate_limit(
            key=key,
            limit=self.limit,
            window_seconds=self.window_seconds,
        )
        if not allowed:
            logger.warning("rate limit exceeded key=%s limit=%s window_seconds=%s", key, self.limit, self.window_seconds)
            raise RateLimitedError(f"too many {action} requests; retry later")

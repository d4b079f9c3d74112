"""Sliding-window request budgets per owner and per origin address."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from salesrecon.config import Settings
from salesrecon.errors import RateLimitError

logger = logging.getLogger(__name__)

ORIGIN_CLASS = "origin"


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    limit: int
    window_seconds: int


def rules_from_settings(settings: Settings) -> dict[str, RateLimitRule]:
    return {
        "standard": RateLimitRule(settings.rate_limit_standard_per_minute, 60),
        "bulk": RateLimitRule(settings.rate_limit_bulk_per_hour, 3600),
        "heavy": RateLimitRule(settings.rate_limit_heavy_per_hour, 3600),
        ORIGIN_CLASS: RateLimitRule(settings.rate_limit_origin_per_minute, 60),
    }


class RateLimiter:
    """Thread-safe sliding-window limiter.

    Each (action class, key) pair keeps the timestamps of the requests still inside
    its window. A request is admitted and recorded only when the window has room.
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rules = dict(rules)
        self._clock = clock
        self._guard = threading.Lock()
        self._hits: dict[tuple[str, str], deque[float]] = {}

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Callable[[], float] = time.monotonic) -> "RateLimiter":
        return cls(rules_from_settings(settings), clock=clock)

    def check(self, owner_id: str, action_class: str) -> None:
        """Charge one request against the owner's budget for ``action_class``."""

        if action_class not in self._rules or action_class == ORIGIN_CLASS:
            raise ValueError(f"Unknown rate limit class: {action_class}")
        self._admit(action_class, owner_id)

    def check_origin(self, origin: str) -> None:
        self._admit(ORIGIN_CLASS, origin)

    def _admit(self, action_class: str, key: str) -> None:
        rule = self._rules[action_class]
        now = self._clock()
        with self._guard:
            hits = self._hits.setdefault((action_class, key), deque())
            window_start = now - rule.window_seconds
            while hits and hits[0] <= window_start:
                hits.popleft()
            if len(hits) >= rule.limit:
                retry_after = max(0.0, hits[0] + rule.window_seconds - now)
                logger.warning(
                    "rate_limit.exceeded class=%s key=%s limit=%d window_s=%d retry_after_s=%.2f",
                    action_class,
                    key,
                    rule.limit,
                    rule.window_seconds,
                    retry_after,
                )
                raise RateLimitError(
                    action_class,
                    retry_after,
                    limit=rule.limit,
                    window_seconds=rule.window_seconds,
                )
            hits.append(now)

    def reset(self) -> None:
        with self._guard:
            self._hits.clear()

# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Per-identity, per-operation rate limiting.

Fixed-window counters held in the store. ``check`` is read-only and is what
the rotation state machine consults before doing any work; only
successful operations advance a counter (via ``hit`` or the store's atomic
commit), so rejected attempts never lock an identity out.

Default limits:
- rotation:     1 per hour per handle
- revocation:   1 per day per handle
- message:      100 per minute per sender
- registration: 4 per hour per client address
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from ..core.config import CoreSettings
from .models import Operation
from .store import AuthStore, RateCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationLimit:
    """Threshold and window for one operation."""

    max_requests: int
    window_seconds: int

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)


DEFAULT_LIMITS: dict[str, OperationLimit] = {
    Operation.ROTATION.value: OperationLimit(max_requests=1, window_seconds=3600),
    Operation.REVOCATION.value: OperationLimit(max_requests=1, window_seconds=86400),
    Operation.MESSAGE.value: OperationLimit(max_requests=100, window_seconds=60),
    Operation.REGISTRATION.value: OperationLimit(max_requests=4, window_seconds=3600),
}


def limits_from_settings(settings: CoreSettings) -> dict[str, OperationLimit]:
    """Build the limit table from configuration."""
    return {
        Operation.ROTATION.value: OperationLimit(1, settings.rotation_cooldown_seconds),
        Operation.REVOCATION.value: OperationLimit(1, settings.revocation_cooldown_seconds),
        Operation.MESSAGE.value: OperationLimit(settings.message_rate_limit, settings.message_rate_window_seconds),
        Operation.REGISTRATION.value: OperationLimit(
            settings.registration_rate_limit, settings.registration_rate_window_seconds
        ),
    }


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate-limit check."""

    allowed: bool
    operation: str
    limit: int
    remaining: int
    reset_at: datetime
    retry_after_seconds: int = 0

    def headers(self) -> dict[str, str]:
        """Rate-limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
            "X-RateLimit-Operation": self.operation,
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimiter:
    """Bounds the frequency of sensitive operations per identity."""

    def __init__(self, store: AuthStore, limits: dict[str, OperationLimit] | None = None) -> None:
        self._store = store
        self._limits = dict(DEFAULT_LIMITS)
        if limits:
            self._limits.update(limits)

    def limit_for(self, operation: str | Operation) -> OperationLimit:
        key = operation.value if isinstance(operation, Operation) else operation
        try:
            return self._limits[key]
        except KeyError:
            raise ValueError(f"No rate limit configured for operation: {key}") from None

    def _decide(
        self,
        counter: RateCounter | None,
        operation: str,
        limit: OperationLimit,
        now: datetime,
        allowed: bool,
    ) -> RateLimitDecision:
        if counter is None or not counter.is_current(now, limit.window):
            return RateLimitDecision(
                allowed=allowed,
                operation=operation,
                limit=limit.max_requests,
                remaining=limit.max_requests,
                reset_at=now + limit.window,
            )

        reset_at = counter.window_start + limit.window
        retry_after = 0 if allowed else max(1, math.ceil((reset_at - now).total_seconds()))
        return RateLimitDecision(
            allowed=allowed,
            operation=operation,
            limit=limit.max_requests,
            remaining=max(0, limit.max_requests - counter.count),
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    def check(self, identity: str, operation: str | Operation, now: datetime | None = None) -> RateLimitDecision:
        """Would one more ``operation`` by ``identity`` be allowed? Never mutates state."""
        now = now or datetime.now(UTC)
        op = operation.value if isinstance(operation, Operation) else operation
        limit = self.limit_for(op)
        counter = self._store.get_rate_counter(identity, op)
        allowed = counter is None or counter.allows(now, limit.window, limit.max_requests)
        return self._decide(counter, op, limit, now, allowed)

    def allow(self, identity: str, operation: str | Operation, now: datetime | None = None) -> bool:
        return self.check(identity, operation, now).allowed

    def hit(self, identity: str, operation: str | Operation, now: datetime | None = None) -> RateLimitDecision:
        """Atomically count one successful operation if the window allows it."""
        now = now or datetime.now(UTC)
        op = operation.value if isinstance(operation, Operation) else operation
        limit = self.limit_for(op)
        counter = self._store.increment_rate_counter(identity, op, now, limit.window, limit.max_requests)
        if counter is None:
            logger.info(f"Rate limit reached for {op} by {identity}")
            return self.check(identity, op, now)
        return self._decide(counter, op, limit, now, allowed=True)

# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Timestamp freshness validation.

Runs before the nonce ledger so that stale envelopes are rejected without
consuming ledger capacity. Timestamps older than the window are rejected;
timestamps in the future are rejected beyond ``max_future_skew`` so that
forward-dated, pre-signed proofs cannot be queued for later submission.
Passing ``max_future_skew_seconds=None`` restores the legacy past-only
check for deployments whose clients need it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from ..core.exceptions import ValidationException
from .rejections import Rejection, RejectionReason

DEFAULT_WINDOW_SECONDS = 300
DEFAULT_SKEW_WARNING_SECONDS = 60

# Numeric timestamps above this are milliseconds since the epoch
_MILLISECONDS_THRESHOLD = 1e12


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or a Unix timestamp into an aware UTC datetime.

    Numbers above 1e12 are treated as milliseconds, smaller ones as seconds.
    Naive ISO strings are interpreted as UTC.

    Raises:
        ValidationException: If the value cannot be parsed.
    """
    if isinstance(value, bool):
        raise ValidationException("Timestamp must be a string or number", field="timestamp")

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValidationException("Timestamp must be finite", field="timestamp")
        seconds = value / 1000 if value > _MILLISECONDS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise ValidationException(f"Timestamp out of range: {e}", field="timestamp") from e

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationException("Could not parse timestamp", field="timestamp", value=value) from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)

    raise ValidationException("Timestamp must be a string or number", field="timestamp")


@dataclass(frozen=True)
class FreshnessResult:
    """Outcome of a freshness check."""

    valid: bool
    skew_seconds: int = 0
    direction: str = "past"
    warning: str | None = None
    rejection: Rejection | None = None
    issued_at: datetime | None = None


class FreshnessGate:
    """Accepts or rejects claimed timestamps against server time."""

    def __init__(
        self,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        max_future_skew_seconds: int | None = DEFAULT_WINDOW_SECONDS,
        skew_warning_seconds: int = DEFAULT_SKEW_WARNING_SECONDS,
    ) -> None:
        self.window = timedelta(seconds=window_seconds)
        self.max_future_skew = None if max_future_skew_seconds is None else timedelta(seconds=max_future_skew_seconds)
        self.skew_warning = timedelta(seconds=skew_warning_seconds)

    def check(self, timestamp: Any, now: datetime | None = None) -> FreshnessResult:
        """Validate a claimed issuance time.

        Returns:
            FreshnessResult; ``rejection`` is set to ``invalid_timestamp`` for
            unparseable input or ``timestamp_expired`` outside the window.
        """
        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        try:
            issued_at = parse_timestamp(timestamp)
        except ValidationException as e:
            return FreshnessResult(valid=False, rejection=Rejection.of(RejectionReason.INVALID_TIMESTAMP, e.message))

        delta = now - issued_at
        direction = "past" if delta >= timedelta(0) else "future"
        skew = abs(delta)
        skew_seconds = int(skew.total_seconds())

        if direction == "past":
            limit = self.window
        else:
            limit = self.max_future_skew

        if limit is not None and skew > limit:
            limit_seconds = int(limit.total_seconds())
            return FreshnessResult(
                valid=False,
                skew_seconds=skew_seconds,
                direction=direction,
                issued_at=issued_at,
                rejection=Rejection.of(
                    RejectionReason.TIMESTAMP_EXPIRED,
                    f"Timestamp is {skew_seconds}s in the {direction} (max {limit_seconds}s)",
                    skew_seconds=skew_seconds,
                ),
            )

        warning = None
        if skew > self.skew_warning:
            warning = f"Clock skew detected: {skew_seconds}s"

        return FreshnessResult(
            valid=True,
            skew_seconds=skew_seconds,
            direction=direction,
            warning=warning,
            issued_at=issued_at,
        )


def accept(timestamp: Any, now: datetime, window: timedelta | int) -> bool:
    """Return True if ``timestamp`` lies within ``window`` of ``now`` in either direction.

    A naive ``now`` is taken to be UTC.
    """
    window_seconds = int(window.total_seconds()) if isinstance(window, timedelta) else int(window)
    gate = FreshnessGate(window_seconds=window_seconds, max_future_skew_seconds=window_seconds)
    return gate.check(timestamp, now).valid

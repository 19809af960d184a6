# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Message authentication.

Entry point used by the messaging surface. Composes the canonicalizer,
freshness gate, nonce ledger and signature verifier, and applies the
grace-period policy for legacy unsigned traffic.

Check order for a signed envelope:

1. required control fields and nonce format (malformed, no crypto work)
2. freshness (stale envelopes never reach the ledger)
3. nonce recording (consumed even if the signature turns out forged)
4. sender key lookup (unknown or inactive senders fail closed)
5. signature verification
6. per-sender message rate limit (only accepted messages count)

Unknown senders and forged signatures produce the same
``invalid_signature`` rejection so handles cannot be enumerated.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..core.config import DEFAULT_GRACE_PERIOD_END, CoreSettings
from ..core.exceptions import ValidationException
from ..core.logging import auth_logger
from .canonical import canonicalize_message
from .freshness import FreshnessGate
from .models import Operation, normalize_handle
from .nonces import NonceLedger, is_valid_nonce
from .ratelimit import RateLimitDecision, RateLimiter, limits_from_settings
from .rejections import Rejection, RejectionReason
from .signatures import SignatureVerifier
from .store import AuthStore

logger = logging.getLogger(__name__)

UNSIGNED_WARNING = "Unsigned messages are deprecated. Sign messages before the grace period ends."


@dataclass(frozen=True)
class AuthPolicy:
    """Strict vs. grace-period policy.

    ``strict_mode`` forces the mode when set. When it is None, messages must
    be signed from ``grace_period_ends`` onwards (and always, if there is no
    grace period).
    """

    grace_period_ends: datetime | None = DEFAULT_GRACE_PERIOD_END
    strict_mode: bool | None = None

    @classmethod
    def from_settings(cls, settings: CoreSettings) -> AuthPolicy:
        return cls(grace_period_ends=settings.grace_period_ends, strict_mode=settings.strict_mode)

    @classmethod
    def strict(cls) -> AuthPolicy:
        return cls(grace_period_ends=None, strict_mode=True)

    @classmethod
    def grace(cls, until: datetime | None = None) -> AuthPolicy:
        return cls(grace_period_ends=until or DEFAULT_GRACE_PERIOD_END, strict_mode=False)

    def is_strict(self, now: datetime | None = None) -> bool:
        if self.strict_mode is not None:
            return self.strict_mode
        if self.grace_period_ends is None:
            return True
        return (now or datetime.now(UTC)) >= self.grace_period_ends

    def in_grace_period(self, now: datetime | None = None) -> bool:
        return not self.is_strict(now)

    def headers(self, now: datetime | None = None) -> dict[str, str]:
        """Response headers announcing the current mode."""
        headers = {"X-AIRC-Strict-Mode": "enforced" if self.is_strict(now) else "optional"}
        if self.grace_period_ends is not None:
            headers["X-AIRC-Grace-Period-Ends"] = self.grace_period_ends.isoformat()
        return headers


@dataclass(frozen=True)
class MessageVerdict:
    """Outcome of authenticating one message envelope."""

    accepted: bool
    sender: str | None
    signed: bool = False
    strict: bool = True
    rejection: Rejection | None = None
    warnings: list[str] = field(default_factory=list)
    grace_period_ends: datetime | None = None
    rate_limit: RateLimitDecision | None = None

    @property
    def reason(self) -> RejectionReason | None:
        return self.rejection.reason if self.rejection else None


class MessageAuthenticator:
    """Authenticates inbound message envelopes.

    Args:
        store: Shared protocol state (identities, nonces, counters).
        policy: Strict/grace policy. Defaults to strict.
        gate: Freshness gate. Defaults to a 5-minute symmetric window.
        ledger: Nonce ledger. Defaults to one over ``store``.
        verifier: Signature verifier.
        rate_limiter: Optional per-sender message limiter.
        sender_field: Envelope field naming the sender's handle.
    """

    def __init__(
        self,
        store: AuthStore,
        policy: AuthPolicy | None = None,
        gate: FreshnessGate | None = None,
        ledger: NonceLedger | None = None,
        verifier: SignatureVerifier | None = None,
        rate_limiter: RateLimiter | None = None,
        sender_field: str = "from",
    ) -> None:
        self.store = store
        self.policy = policy or AuthPolicy.strict()
        self.gate = gate or FreshnessGate()
        self.ledger = ledger or NonceLedger(store)
        self.verifier = verifier or SignatureVerifier()
        self.rate_limiter = rate_limiter
        self.sender_field = sender_field

    @classmethod
    def from_settings(cls, store: AuthStore, settings: CoreSettings) -> MessageAuthenticator:
        """Build an authenticator wired from configuration."""
        return cls(
            store=store,
            policy=AuthPolicy.from_settings(settings),
            gate=FreshnessGate(
                window_seconds=settings.freshness_window_seconds,
                max_future_skew_seconds=settings.max_future_skew_seconds,
                skew_warning_seconds=settings.skew_warning_seconds,
            ),
            ledger=NonceLedger(store, retention_seconds=settings.nonce_retention_seconds),
            rate_limiter=RateLimiter(store, limits_from_settings(settings)),
        )

    def _reject(
        self,
        sender: str | None,
        strict: bool,
        rejection: Rejection,
        signed: bool = True,
        rate_limit: RateLimitDecision | None = None,
    ) -> MessageVerdict:
        if not strict:
            details = dict(rejection.details)
            details["strict_mode"] = False
            if self.policy.grace_period_ends is not None:
                details["grace_period_ends"] = self.policy.grace_period_ends.isoformat()
            rejection = dataclasses.replace(rejection, details=details)

        auth_logger.log_decision(
            Operation.MESSAGE.value,
            sender or "<unknown>",
            accepted=False,
            reason=rejection.reason.value,
        )
        return MessageVerdict(
            accepted=False,
            sender=sender,
            signed=signed,
            strict=strict,
            rejection=rejection,
            grace_period_ends=None if strict else self.policy.grace_period_ends,
            rate_limit=rate_limit,
        )

    def _count(self, sender: str, now: datetime) -> tuple[RateLimitDecision | None, Rejection | None]:
        if self.rate_limiter is None:
            return None, None
        decision = self.rate_limiter.hit(sender, Operation.MESSAGE, now)
        if decision.allowed:
            return decision, None
        return decision, Rejection.of(
            RejectionReason.RATE_LIMITED,
            f"Too many messages. Try again in {decision.retry_after_seconds}s",
            retry_after=decision.retry_after_seconds,
        )

    def authenticate(self, envelope: Mapping[str, Any], now: datetime | None = None) -> MessageVerdict:
        """Authenticate a message envelope.

        Raises:
            StoreUnavailableError: If the store cannot be reached. No
                rejection is returned in that case; the request is safe to retry.
        """
        now = now or datetime.now(UTC)
        strict = self.policy.is_strict(now)

        raw_sender = envelope.get(self.sender_field)
        if not raw_sender:
            missing = Rejection.of(
                RejectionReason.MISSING_FIELD,
                f"Missing required field: {self.sender_field}",
                field=self.sender_field,
            )
            return self._reject(None, strict, missing, signed=bool(envelope.get("signature")))
        try:
            sender = normalize_handle(raw_sender)
        except ValidationException:
            return self._reject(None, strict, Rejection.of(RejectionReason.INVALID_SIGNATURE))

        signature = envelope.get("signature")
        if not signature:
            if strict:
                return self._reject(sender, strict, Rejection.of(RejectionReason.SIGNATURE_REQUIRED), signed=False)
            decision, limited = self._count(sender, now)
            if limited is not None:
                return self._reject(sender, strict, limited, signed=False, rate_limit=decision)
            logger.debug(f"Accepted unsigned message from @{sender} during grace period")
            auth_logger.log_decision(Operation.MESSAGE.value, sender, accepted=True, context={"signed": False})
            return MessageVerdict(
                accepted=True,
                sender=sender,
                signed=False,
                strict=False,
                warnings=[UNSIGNED_WARNING],
                grace_period_ends=self.policy.grace_period_ends,
                rate_limit=decision,
            )

        for name in ("timestamp", "nonce"):
            if envelope.get(name) in (None, ""):
                return self._reject(
                    sender,
                    strict,
                    Rejection.of(RejectionReason.MISSING_FIELD, f"Missing required field: {name}", field=name),
                )
        if not isinstance(signature, str):
            return self._reject(
                sender,
                strict,
                Rejection.of(RejectionReason.MISSING_FIELD, "Field 'signature' must be a string", field="signature"),
            )
        nonce = envelope["nonce"]
        if not is_valid_nonce(nonce):
            return self._reject(sender, strict, Rejection.of(RejectionReason.INVALID_NONCE))

        try:
            message = canonicalize_message(envelope)
        except ValidationException:
            return self._reject(sender, strict, Rejection.of(RejectionReason.INVALID_SIGNATURE))

        freshness = self.gate.check(envelope["timestamp"], now)
        if not freshness.valid:
            return self._reject(sender, strict, freshness.rejection)

        if not self.ledger.record(sender, nonce, now).first_seen:
            return self._reject(sender, strict, Rejection.of(RejectionReason.REPLAY_ATTACK))

        identity = self.store.get_identity(sender)
        public_key = identity.signing_key if identity is not None and identity.is_active else None
        if not self.verifier.verify(message, signature, public_key):
            return self._reject(sender, strict, Rejection.of(RejectionReason.INVALID_SIGNATURE))

        decision, limited = self._count(sender, now)
        if limited is not None:
            return self._reject(sender, strict, limited, rate_limit=decision)

        warnings = [freshness.warning] if freshness.warning else []
        auth_logger.log_decision(
            Operation.MESSAGE.value,
            sender,
            accepted=True,
            context={"signed": True, "skew_seconds": freshness.skew_seconds},
        )
        return MessageVerdict(
            accepted=True,
            sender=sender,
            signed=True,
            strict=strict,
            warnings=warnings,
            grace_period_ends=None if strict else self.policy.grace_period_ends,
            rate_limit=decision,
        )

# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Protocol components shared by the HTTP endpoints.

Built once from settings and the configured store, and replaceable in
tests via ``set_services``.
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ..core.config import CoreSettings
from ..identity.authenticator import MessageAuthenticator, MessageVerdict
from ..identity.nonces import NonceLedger
from ..identity.ratelimit import RateLimiter, limits_from_settings
from ..identity.rotation import RevocationStateMachine, RotationStateMachine
from ..identity.store import AuthStore, get_store
from .config import get_settings


class MessageSink:
    """Hands accepted messages to the messaging subsystem.

    Delivery and storage live outside this service; the sink assigns the
    message id and keeps a short in-memory tail for inspection.
    """

    def __init__(self, maxlen: int = 1000) -> None:
        self._lock = threading.Lock()
        self._recent: deque[dict[str, Any]] = deque(maxlen=maxlen)

    def deliver(self, envelope: Mapping[str, Any], verdict: MessageVerdict) -> str:
        message_id = f"msg_{uuid.uuid4().hex}"
        record = {
            "id": message_id,
            "from": verdict.sender,
            "to": envelope.get("to"),
            "text": envelope.get("text"),
            "signed": verdict.signed,
            "received_at": datetime.now(UTC).isoformat(),
        }
        with self._lock:
            self._recent.append(record)
        return message_id

    def recent(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._recent)


@dataclass
class IdentityServices:
    """The wired protocol components."""

    store: AuthStore
    authenticator: MessageAuthenticator
    rotation: RotationStateMachine
    revocation: RevocationStateMachine
    rate_limiter: RateLimiter
    ledger: NonceLedger
    messages: MessageSink


def build_services(store: AuthStore, settings: CoreSettings) -> IdentityServices:
    """Wire every component against one store and one settings object."""
    return IdentityServices(
        store=store,
        authenticator=MessageAuthenticator.from_settings(store, settings),
        rotation=RotationStateMachine.from_settings(store, settings),
        revocation=RevocationStateMachine.from_settings(store, settings),
        rate_limiter=RateLimiter(store, limits_from_settings(settings)),
        ledger=NonceLedger(store, retention_seconds=settings.nonce_retention_seconds),
        messages=MessageSink(),
    )


_services: IdentityServices | None = None


def get_services() -> IdentityServices:
    """Get the global services, building them on first use."""
    global _services
    if _services is None:
        _services = build_services(get_store(), get_settings())
    return _services


def set_services(services: IdentityServices | None) -> None:
    global _services
    _services = services


def reset_services() -> None:
    """Reset the global services (for testing)."""
    global _services
    _services = None

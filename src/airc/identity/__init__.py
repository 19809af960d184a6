# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Identity authentication and key rotation protocol.

Key components:
- canonical: Deterministic payload serialization
- keys / signatures: Algorithm-tagged keys and fail-closed verification
- freshness: Timestamp window checks
- nonces: Replay protection ledger
- ratelimit: Per-identity, per-operation limits
- authenticator: Message authentication with grace-period policy
- rotation: Recovery-key authorised rotation and revocation
- store / postgres_store: Shared protocol state
"""

from .authenticator import AuthPolicy, MessageAuthenticator, MessageVerdict
from .canonical import canonicalize
from .freshness import FreshnessGate, FreshnessResult, accept, parse_timestamp
from .keys import KeyPair, PublicKey, generate_keypair, parse_public_key
from .models import AuditEvent, Identity, IdentityStatus, Operation, RotationEvent, normalize_handle
from .nonces import NonceLedger, NonceRecord, generate_nonce, is_valid_nonce
from .proofs import create_message_envelope, create_revocation_proof, create_rotation_proof
from .ratelimit import OperationLimit, RateLimitDecision, RateLimiter
from .rejections import ErrorCategory, Rejection, RejectionReason
from .rotation import (
    RevocationStateMachine,
    RotationOutcome,
    RotationState,
    RotationStateMachine,
)
from .signatures import SignatureVerifier, sign_envelope
from .store import AuthStore, CommitResult, MemoryAuthStore, get_store, reset_store, set_store

__all__ = [
    # Protocol entry points
    "MessageAuthenticator",
    "MessageVerdict",
    "AuthPolicy",
    "RotationStateMachine",
    "RevocationStateMachine",
    "RotationOutcome",
    "RotationState",
    # Building blocks
    "canonicalize",
    "FreshnessGate",
    "FreshnessResult",
    "accept",
    "parse_timestamp",
    "NonceLedger",
    "NonceRecord",
    "generate_nonce",
    "is_valid_nonce",
    "RateLimiter",
    "RateLimitDecision",
    "OperationLimit",
    "SignatureVerifier",
    "sign_envelope",
    # Keys
    "KeyPair",
    "PublicKey",
    "generate_keypair",
    "parse_public_key",
    # Proofs
    "create_message_envelope",
    "create_rotation_proof",
    "create_revocation_proof",
    # Models
    "Identity",
    "IdentityStatus",
    "Operation",
    "RotationEvent",
    "AuditEvent",
    "normalize_handle",
    # Rejections
    "Rejection",
    "RejectionReason",
    "ErrorCategory",
    # Store
    "AuthStore",
    "MemoryAuthStore",
    "CommitResult",
    "get_store",
    "set_store",
    "reset_store",
]

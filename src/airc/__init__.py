# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""airc - Identity authentication and key rotation for pseudonymous agents.

Participants sign what they send with an Ed25519 signing key and keep a
separate recovery key offline. The recovery key is the only thing that can
rotate the signing key or revoke the identity.

Architecture:
  Envelope (payload + timestamp + nonce + signature)
    → Canonical form (sorted-key JSON, signature excluded)
    → Freshness gate → Nonce ledger → Signature verifier
    → Accept, or a typed Rejection

CLI entry point: ``airc``
"""

__version__ = "1.0.0"

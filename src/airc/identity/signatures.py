# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Signature verification.

Verification is deterministic and fails closed: malformed encodings,
wrong-length signatures, unknown algorithms, algorithm mismatches and
missing keys all yield ``False`` rather than an exception, so no caller can
accidentally skip the check by catching an error.

Signatures travel as base64. A signature may optionally carry the same
``<algorithm>:`` tag used by keys; if it does, the tag must match the key.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Mapping
from typing import Any

from ..core.exceptions import ValidationException
from .canonical import canonicalize
from .keys import KEY_SEPARATOR, KeyPair, PublicKey, supported_algorithms

logger = logging.getLogger(__name__)


def _decode_signature(signature: str | bytes) -> tuple[str | None, bytes]:
    """Split an optional algorithm tag and decode the base64 body."""
    if isinstance(signature, bytes):
        return None, signature

    algorithm = None
    body = signature
    head, sep, rest = signature.partition(KEY_SEPARATOR)
    if sep and head.lower() in supported_algorithms():
        algorithm, body = head.lower(), rest
    return algorithm, base64.b64decode(body.encode("ascii"), validate=True)


class SignatureVerifier:
    """Validates detached signatures against canonical bytes and a public key."""

    def verify(
        self,
        canonical_bytes: bytes,
        signature: str | bytes | None,
        public_key: str | PublicKey | None,
    ) -> bool:
        """Return True only if ``signature`` is a valid signature over ``canonical_bytes``.

        Args:
            canonical_bytes: Output of ``canonicalize``.
            signature: Base64 signature (optionally algorithm-tagged) or raw bytes.
            public_key: ``<algorithm>:<base64>`` string or parsed PublicKey.
        """
        if not isinstance(signature, (str, bytes)) or not signature or public_key is None:
            return False

        try:
            key = public_key if isinstance(public_key, PublicKey) else PublicKey.parse(public_key)
            tag, raw_signature = _decode_signature(signature)
        except (ValidationException, binascii.Error, UnicodeEncodeError, ValueError, TypeError):
            logger.debug("Rejecting signature with malformed key or encoding")
            return False

        if tag is not None and tag != key.algorithm:
            logger.debug("Signature algorithm %s does not match key algorithm %s", tag, key.algorithm)
            return False

        return key.scheme.verify(key.raw, raw_signature, canonical_bytes)

    def verify_envelope(
        self,
        envelope: Mapping[str, Any],
        public_key: str | PublicKey | None,
    ) -> bool:
        """Verify a signed envelope's ``signature`` over the rest of its fields."""
        try:
            message = canonicalize(envelope)
        except ValidationException:
            return False
        return self.verify(message, envelope.get("signature"), public_key)


def sign_bytes(data: bytes, keypair: KeyPair) -> str:
    """Sign bytes and return a base64 signature."""
    return base64.b64encode(keypair.sign(data)).decode("ascii")


def sign_envelope(envelope: Mapping[str, Any], keypair: KeyPair) -> dict[str, Any]:
    """Return a copy of ``envelope`` with a ``signature`` over its canonical form."""
    signed = {key: value for key, value in envelope.items() if key != "signature"}
    signed["signature"] = sign_bytes(canonicalize(signed), keypair)
    return signed

# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Algorithm-tagged keys.

Key format: ``<algorithm>:<base64 raw key bytes>``, e.g. ``ed25519:...``.
The tag lets new signature schemes be added without a breaking wire-format
change; existing identities keep verifying under the scheme they name.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from ..core.exceptions import ValidationException

KEY_SEPARATOR = ":"
DEFAULT_ALGORITHM = "ed25519"


# =============================================================================
# SIGNATURE SCHEMES
# =============================================================================


class SignatureScheme(ABC):
    """A deterministic-verification signature algorithm."""

    name: str
    public_key_length: int
    signature_length: int

    @abstractmethod
    def generate_private_key(self) -> bytes:
        """Return fresh private key material."""

    @abstractmethod
    def public_key_for(self, private_key: bytes) -> bytes:
        """Derive raw public key bytes from private key material."""

    @abstractmethod
    def sign(self, private_key: bytes, data: bytes) -> bytes:
        """Sign data."""

    @abstractmethod
    def verify(self, public_key: bytes, signature: bytes, data: bytes) -> bool:
        """Verify a signature. Must not raise for bad input."""


class Ed25519Scheme(SignatureScheme):
    """Ed25519 (RFC 8032) via the cryptography library."""

    name = "ed25519"
    public_key_length = 32
    signature_length = 64

    def generate_private_key(self) -> bytes:
        return Ed25519PrivateKey.generate().private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_key_for(self, private_key: bytes) -> bytes:
        return (
            Ed25519PrivateKey.from_private_bytes(private_key)
            .public_key()
            .public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
        )

    def sign(self, private_key: bytes, data: bytes) -> bytes:
        return Ed25519PrivateKey.from_private_bytes(private_key).sign(data)

    def verify(self, public_key: bytes, signature: bytes, data: bytes) -> bool:
        if len(public_key) != self.public_key_length or len(signature) != self.signature_length:
            return False
        try:
            Ed25519PublicKey.from_public_bytes(public_key).verify(signature, data)
            return True
        except (InvalidSignature, ValueError):
            return False


_SCHEMES: dict[str, SignatureScheme] = {
    Ed25519Scheme.name: Ed25519Scheme(),
}


def get_scheme(algorithm: str) -> SignatureScheme:
    """Look up a registered signature scheme.

    Raises:
        ValidationException: If the algorithm is not supported.
    """
    scheme = _SCHEMES.get(algorithm)
    if scheme is None:
        raise ValidationException(f"Unsupported key algorithm: {algorithm}", field="algorithm", value=algorithm)
    return scheme


def supported_algorithms() -> list[str]:
    return sorted(_SCHEMES)


# =============================================================================
# PUBLIC KEYS
# =============================================================================


def _b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


@dataclass(frozen=True)
class PublicKey:
    """A parsed, algorithm-tagged public key."""

    algorithm: str
    raw: bytes

    @classmethod
    def parse(cls, key_string: str) -> PublicKey:
        """Parse ``<algorithm>:<base64>``.

        Raises:
            ValidationException: On unknown algorithm, bad base64, or wrong length.
        """
        if not isinstance(key_string, str) or KEY_SEPARATOR not in key_string:
            raise ValidationException("Key must be formatted as <algorithm>:<base64>", field="key")

        algorithm, _, encoded = key_string.partition(KEY_SEPARATOR)
        scheme = get_scheme(algorithm.lower())

        try:
            raw = _b64decode(encoded)
        except (binascii.Error, UnicodeEncodeError, ValueError) as e:
            raise ValidationException(f"Key is not valid base64: {e}", field="key") from e

        if len(raw) != scheme.public_key_length:
            raise ValidationException(
                f"{scheme.name} public keys are {scheme.public_key_length} bytes, got {len(raw)}",
                field="key",
            )
        return cls(algorithm=scheme.name, raw=raw)

    @property
    def scheme(self) -> SignatureScheme:
        return get_scheme(self.algorithm)

    @property
    def fingerprint(self) -> str:
        """Short stable identifier (first 16 hex chars of SHA-256 over the formatted key)."""
        return hashlib.sha256(str(self).encode("ascii")).hexdigest()[:16]

    def __str__(self) -> str:
        return f"{self.algorithm}{KEY_SEPARATOR}{base64.b64encode(self.raw).decode('ascii')}"


def parse_public_key(key_string: str) -> PublicKey | None:
    """Parse a key string, returning None instead of raising."""
    try:
        return PublicKey.parse(key_string)
    except ValidationException:
        return None


def same_key(a: str, b: str) -> bool:
    """Compare two key strings by decoded value, ignoring encoding differences."""
    key_a = parse_public_key(a)
    key_b = parse_public_key(b)
    return key_a is not None and key_a == key_b


# =============================================================================
# KEY PAIRS
# =============================================================================


@dataclass
class KeyPair:
    """A private key with its tagged public key."""

    algorithm: str
    private_key_bytes: bytes
    public_key: PublicKey

    @property
    def private_key_hex(self) -> str:
        """Private key as hex string (for secure storage)."""
        return self.private_key_bytes.hex()

    @classmethod
    def from_private_key_hex(cls, hex_string: str, algorithm: str = DEFAULT_ALGORITHM) -> KeyPair:
        """Rebuild a KeyPair from stored private key hex."""
        scheme = get_scheme(algorithm)
        private_bytes = bytes.fromhex(hex_string)
        return cls(
            algorithm=scheme.name,
            private_key_bytes=private_bytes,
            public_key=PublicKey(algorithm=scheme.name, raw=scheme.public_key_for(private_bytes)),
        )

    def sign(self, data: bytes) -> bytes:
        return get_scheme(self.algorithm).sign(self.private_key_bytes, data)


def generate_keypair(algorithm: str = DEFAULT_ALGORITHM) -> KeyPair:
    """Generate a new key pair for the given algorithm."""
    scheme = get_scheme(algorithm)
    private_bytes = scheme.generate_private_key()
    return KeyPair(
        algorithm=scheme.name,
        private_key_bytes=private_bytes,
        public_key=PublicKey(algorithm=scheme.name, raw=scheme.public_key_for(private_bytes)),
    )

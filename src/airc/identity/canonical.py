# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Canonical JSON serialization for signing and verification.

The canonical form is:
- Object keys sorted lexicographically at every depth
- Arrays kept in order
- No insignificant whitespace
- UTF-8 encoding, non-ASCII characters emitted as-is
- NaN and Infinity rejected (they have no portable JSON encoding)

The ``signature`` field of a signed envelope is never part of the signed
data, so it is stripped from the top level before serialization.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any

from ..core.exceptions import ValidationException

SIGNATURE_FIELD = "signature"

# A message signature covers exactly these fields; anything else in the body is unsigned metadata
SIGNED_MESSAGE_FIELDS = ("from", "to", "text", "timestamp", "nonce")


def _check(value: Any, path: str) -> None:
    """Reject values with no stable canonical encoding."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationException(f"Non-string object key at {path or '$'}", field=path or "$", value=key)
            _check(item, f"{path}.{key}" if path else key)
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check(item, f"{path}[{index}]")
        return
    raise ValidationException(f"Unsupported type {type(value).__name__} at {path or '$'}", field=path or "$")


def canonicalize(payload: Mapping[str, Any], exclude: Iterable[str] = (SIGNATURE_FIELD,)) -> bytes:
    """Serialize a payload to its canonical byte form.

    Two payloads that differ only in key insertion order produce identical
    bytes.

    Args:
        payload: The structured payload (a JSON object).
        exclude: Top-level fields left out of the serialization.

    Returns:
        Canonical UTF-8 encoded JSON bytes.

    Raises:
        ValidationException: If the payload contains a value that has no
            stable encoding (non-string keys, NaN, arbitrary objects).
    """
    if not isinstance(payload, Mapping):
        raise ValidationException("Payload must be a JSON object")

    excluded = set(exclude)
    body = {key: value for key, value in payload.items() if key not in excluded}
    _check(body, "")

    try:
        return json.dumps(
            body,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        ).encode("utf-8")
    except ValueError as e:
        raise ValidationException(f"Payload cannot be canonicalized: {e}") from e


def canonicalize_message(envelope: Mapping[str, Any]) -> bytes:
    """Canonical bytes covered by a message signature."""
    return canonicalize({name: envelope[name] for name in SIGNED_MESSAGE_FIELDS if name in envelope})

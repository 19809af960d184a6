# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Custom exception hierarchy for airc.

Authentication outcomes (replay, stale, forged, policy) are not exceptions:
they are returned as typed ``Rejection`` values. Exceptions are reserved for
programming errors, bad configuration, and infrastructure failures.
"""

from __future__ import annotations

from typing import Any


class AircException(Exception):  # noqa: N818
    """Base exception for all airc errors."""

    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationException(AircException):
    """Exception for validation errors.

    Raised when:
    - A handle or key fails format validation
    - Required fields are missing
    - A payload cannot be canonicalized
    """

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


class ConfigException(AircException):
    """Exception for configuration errors."""

    def __init__(self, message: str, missing_vars: list[str] | None = None):
        details = {}
        if missing_vars:
            details["missing_vars"] = missing_vars
        super().__init__(message, details)
        self.missing_vars = missing_vars or []


class NotFoundError(AircException):
    """Exception for resource not found errors."""

    def __init__(self, resource_type: str, resource_id: str):
        message = f"{resource_type} not found: {resource_id}"
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(message, details)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(AircException):
    """Exception for conflict errors.

    Raised when:
    - Registering a handle that already exists
    """

    def __init__(self, message: str, existing_id: str | None = None):
        details = {}
        if existing_id:
            details["existing_id"] = existing_id
        super().__init__(message, details)
        self.existing_id = existing_id


class StoreUnavailableError(AircException):
    """The durable store could not be reached within its latency bound.

    This is the only retryable failure class. It is raised before any state
    was mutated on the failing path, so callers may safely retry.
    """

    retryable = True

    def __init__(self, message: str, backend: str | None = None):
        details = {}
        if backend:
            details["backend"] = backend
        super().__init__(message, details)
        self.backend = backend

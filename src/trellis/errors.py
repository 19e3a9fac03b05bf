"""Trellis Error Hierarchy.

Provides a structured error hierarchy for memory engine operations:
- TrellisError: Base exception for all engine errors
- ValidationError: Bad input rejected before any backend call
- DimensionMismatchError: Vector length differs from the registered facet size
- NotFoundError: Referenced node or edge is absent
- BackendUnavailableError: Transient storage failure (retried with backoff)
- ConflictError: Optimistic version check failed (retried by the mutator)
- PartialWriteError: Per-node write failed mid-sequence
- ConfigurationError: Invalid engine configuration

Each error type includes:
- Descriptive message
- Recoverable flag for retry logic
- Structured context for logging and reporting

Usage:
    from trellis.errors import DimensionMismatchError, NotFoundError

    if len(vector) != expected:
        raise DimensionMismatchError("Bad vector", facet="role", expected=384, actual=len(vector))
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Base Class
# =============================================================================


class TrellisError(Exception):
    """Base exception for all Trellis errors.

    Attributes:
        message: Human-readable error description
        recoverable: Whether the operation can be retried
        context: Additional context for debugging
    """

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to structured dictionary for reporting."""
        return {
            "type": type(self).__name__.lower().replace("error", ""),
            "message": self.message,
            "recoverable": self.recoverable,
            **{k: v for k, v in self.context.items() if v is not None},
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(TrellisError):
    """Input validation failed.

    Raised before any backend call is made.

    Example:
        raise ValidationError("Unknown facet", field="facet", value="skill")
    """

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {})
        if field:
            context["field"] = field
        if constraint:
            context["constraint"] = constraint
        # Don't include sensitive values
        if value is not None and not _is_sensitive(str(value)):
            context["value"] = _truncate(str(value), 100)
        super().__init__(message, recoverable=False, context=context)
        self.field = field
        self.constraint = constraint


class DimensionMismatchError(ValidationError):
    """Vector dimensionality does not match the registered facet size."""

    def __init__(
        self,
        message: str,
        *,
        facet: str | None = None,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        super().__init__(
            message,
            field="facet",
            constraint="dimension",
            context={"facet": facet, "expected": expected, "actual": actual},
        )
        self.facet = facet
        self.expected = expected
        self.actual = actual


# =============================================================================
# Storage Errors
# =============================================================================


class NotFoundError(TrellisError):
    """Referenced node or edge not found."""

    def __init__(
        self,
        message: str,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            recoverable=False,
            context={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class BackendUnavailableError(TrellisError):
    """Transient network or storage failure.

    Retried with exponential backoff up to the configured attempt limit,
    then surfaced.
    """

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        operation: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {})
        if backend:
            context["backend"] = backend
        if operation:
            context["operation"] = operation
        super().__init__(message, recoverable=True, context=context)
        self.backend = backend
        self.operation = operation


class ConflictError(TrellisError):
    """Stored version advanced since it was read."""

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        super().__init__(
            message,
            recoverable=True,
            context={
                "node_id": node_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.node_id = node_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class PartialWriteError(TrellisError):
    """A per-node write failed part way across node, edge and vector layers.

    Attributes:
        rolled_back: True if already-applied sub-writes were undone.
        quarantined: True if rollback failed and the node was quarantined.
    """

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        stage: str | None = None,
        rolled_back: bool = False,
        quarantined: bool = False,
    ) -> None:
        super().__init__(
            message,
            recoverable=False,
            context={
                "node_id": node_id,
                "stage": stage,
                "rolled_back": rolled_back,
                "quarantined": quarantined,
            },
        )
        self.node_id = node_id
        self.stage = stage
        self.rolled_back = rolled_back
        self.quarantined = quarantined


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(TrellisError):
    """Configuration or setup issue."""

    def __init__(
        self,
        message: str,
        *,
        setting: str | None = None,
        expected: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(
            message,
            recoverable=False,
            context={
                "setting": setting,
                "expected": expected,
                "suggestion": suggestion,
            },
        )
        self.setting = setting


# =============================================================================
# Helpers
# =============================================================================


def _is_sensitive(value: str) -> bool:
    """Check if a value appears to contain sensitive data."""
    sensitive_patterns = ["password", "token", "secret", "key", "auth"]
    lower = value.lower()
    return any(p in lower for p in sensitive_patterns)


def _truncate(value: str | None, max_len: int) -> str | None:
    """Truncate a string value for safe logging."""
    if value is None:
        return None
    if len(value) <= max_len:
        return value
    return value[:max_len] + "..."


__all__ = [
    "TrellisError",
    "ValidationError",
    "DimensionMismatchError",
    "NotFoundError",
    "BackendUnavailableError",
    "ConflictError",
    "PartialWriteError",
    "ConfigurationError",
]

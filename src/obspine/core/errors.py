"""
Structured error types for the observation store.

Every failure the store raises carries a category, a retry flag and a
structured context so callers can log it, route it, or show it to an
operator without parsing the message.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure kind the caller must tell apart
    - **Explicit Retry Semantics:** Only storage failures are retryable
    - **Rich Context:** Errors carry procedure / observation / phenomenon ids
    - **Error Chaining:** Driver exceptions are kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        ObsSpineError                             │
        │            (category, retryable, context, cause)                 │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError          UnsupportedFilterError                 │
        │  (VALIDATION)             (FILTER)                               │
        │                                                                  │
        │  NotFoundError            DecimationUnsupportedError             │
        │  (NOT_FOUND)              (DECIMATION)                           │
        │                                                                  │
        │  StorageError             ConfigError                            │
        │  (STORAGE, retryable)     (CONFIG)                               │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> err = ValidationError("observation has no field", constraint="non_empty_fields")
    >>> err.category
    <ErrorCategory.VALIDATION: 'VALIDATION'>
    >>> err.with_context(procedure="urn:ogc:object:sensor:GEOM:2").context.procedure
    'urn:ogc:object:sensor:GEOM:2'

Guardrails:
    ❌ DON'T: Raise bare ``ValueError`` from store operations
    ✅ DO: Raise the ObsSpineError subclass the caller can act on

    ❌ DON'T: Swallow ``SQLAlchemyError``
    ✅ DO: Wrap it in ``StorageError(..., cause=exc)``

Tags:
    error-handling, exception-hierarchy, observation-store
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories for classification and routing."""

    VALIDATION = "VALIDATION"
    FILTER = "FILTER"
    NOT_FOUND = "NOT_FOUND"
    DECIMATION = "DECIMATION"
    STORAGE = "STORAGE"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        operation: Store operation that failed (``write_observation``, ...)
        procedure: Procedure id involved
        observation: Observation identifier involved
        phenomenon: Phenomenon id involved
        metadata: Additional key-value pairs
    """

    operation: str | None = None
    procedure: str | None = None
    observation: str | None = None
    phenomenon: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation", "procedure", "observation", "phenomenon"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ObsSpineError(Exception):
    """
    Base exception for all observation store errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can
    be overridden per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ObsSpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ValidationError("type mismatch").with_context(
                procedure="urn:ogc:object:sensor:GEOM:3",
                field_name="depth",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CALLER ERRORS (never retryable)
# =============================================================================


class ValidationError(ObsSpineError):
    """
    Malformed write: no fields, missing procedure, field type mismatch
    with an existing column, profile written without a sampling instant.
    """

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.constraint = constraint

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        if self.constraint:
            result["constraint"] = self.constraint
        return result


class UnsupportedFilterError(ObsSpineError):
    """A filter node or operand combination with no defined semantics."""

    default_category = ErrorCategory.FILTER

    def __init__(self, message: str, *, operator: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.operator = operator


class NotFoundError(ObsSpineError):
    """An operation that needs an existing entity was given an unknown id."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, entity: str, identifier: str, message: str | None = None, **kwargs: Any):
        super().__init__(message or f"{entity} not found: {identifier}", **kwargs)
        self.entity = entity
        self.identifier = identifier


class DecimationUnsupportedError(ObsSpineError):
    """Decimation was requested on a series with no numeric field to keep."""

    default_category = ErrorCategory.DECIMATION


class ConfigError(ObsSpineError):
    """Invalid or missing configuration."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# INFRASTRUCTURE ERRORS
# =============================================================================


class StorageError(ObsSpineError):
    """
    The persistence backend failed. The transaction was rolled back.

    Retryable: lock contention and transient connection failures are the
    usual causes.
    """

    default_category = ErrorCategory.STORAGE
    default_retryable = True


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ObsSpineError",
    "ValidationError",
    "UnsupportedFilterError",
    "NotFoundError",
    "DecimationUnsupportedError",
    "ConfigError",
    "StorageError",
]

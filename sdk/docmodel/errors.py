"""
Error types for docmodel.

This module defines all exception types raised by the modeling layer:
- DocModelError: Base exception
- OperationError: Operation invoked in an invalid state
- InvalidConfigurationError: Gateway configuration or options are malformed
- ValidationError: Document failed schema validation
- InternalError: Store failure surfaced to the caller

Invariants:
    - All errors inherit from DocModelError
    - Conflicts and not-found results from the store never escape as-is:
      they are retried, mapped to None/False, or wrapped in InternalError
    - InternalError keeps the store error as __cause__
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .schema import ValidationResult


class DocModelError(Exception):
    """Base exception for all docmodel errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCMODEL_ERROR"
        self.details = details or {}


class OperationError(DocModelError):
    """Operation is not possible in the current state.

    Raised when:
    - A collection has no database set (or was closed)
    - An attachment or removal is attempted without id or revision
    - An entity is used without a gateway
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="OPERATION_ERROR", details=details)


class InvalidConfigurationError(DocModelError):
    """Gateway configuration is invalid.

    Raised when:
    - Database or remote options are malformed
    - A declared index or map/reduce query cannot be provisioned
    - create_query() gets no map function
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="INVALID_CONFIGURATION", details=details)


class ValidationError(DocModelError):
    """Document failed schema validation.

    Attributes:
        validation: The ValidationResult that failed
        errors: Validation error messages
    """

    def __init__(self, validation: ValidationResult, message: str = "Invalid document") -> None:
        errors: List[str] = list(validation.errors)
        super().__init__(
            f"{message}: {'; '.join(errors)}" if errors else message,
            code="VALIDATION_ERROR",
            details={"errors": errors},
        )
        self.validation = validation
        self.errors = errors


class InternalError(DocModelError):
    """Store operation failed for a reason the caller cannot fix by retrying.

    Attributes:
        status: HTTP-like status reported by the store, if any
        reason: Store-provided reason
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="INTERNAL_ERROR",
            details={"status": status, "reason": reason},
        )
        self.status = status
        self.reason = reason

    @classmethod
    def from_store_error(cls, error: BaseException, message: Optional[str] = None) -> InternalError:
        """Wrap a store (or transport) error.

        The caller should raise the result with ``from error`` so the
        original failure stays chained.
        """
        status = getattr(error, "status", None)
        reason = getattr(error, "reason", None) or str(error)
        return cls(message or reason, status=status, reason=reason)

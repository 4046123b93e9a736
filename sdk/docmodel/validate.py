"""
Document validation helpers.

This module provides validation utilities on top of schema validators:
- Validation of a document against any schema validator
- Raising variant used before store writes
- Field name suggestions for typos

Invariants:
    - Validation errors are deterministic
    - Error messages include context for fixing
"""

from __future__ import annotations

from difflib import get_close_matches
from typing import Any, Dict, List

from .capabilities import SchemaValidator
from .errors import ValidationError
from .schema import DocumentSchema, ValidationResult


def validate_document(
    schema: SchemaValidator,
    document: Dict[str, Any],
) -> ValidationResult:
    """Validate a document against a schema.

    Args:
        schema: Any object with validate(document) -> ValidationResult
        document: Document to validate

    Returns:
        ValidationResult
    """
    result = schema.validate(document)
    if not isinstance(result, ValidationResult):
        raise TypeError(
            f"{type(schema).__name__}.validate() must return ValidationResult, "
            f"got {type(result).__name__}"
        )
    return result


def validate_or_raise(
    schema: SchemaValidator,
    document: Dict[str, Any],
    message: str = "Invalid document",
) -> ValidationResult:
    """Validate a document and raise if invalid.

    Args:
        schema: Schema validator
        document: Document to validate
        message: Message prefix for the raised error

    Returns:
        The (valid) ValidationResult

    Raises:
        ValidationError: If validation fails
    """
    result = validate_document(schema, document)
    if not result.valid:
        raise ValidationError(result, message)
    return result


def suggest_fields(
    partial: str,
    schema: DocumentSchema,
    limit: int = 5,
) -> List[str]:
    """Suggest field names based on partial input.

    Args:
        partial: Partial field name
        schema: Schema to suggest from
        limit: Maximum suggestions

    Returns:
        List of suggested field names
    """
    known = [name for name in schema.field_names if not name.startswith("_")]
    matches = get_close_matches(partial, known, n=limit)

    # Also include prefix matches
    prefix_matches = [n for n in known if n.lower().startswith(partial.lower())]

    # Combine and deduplicate
    all_matches = list(dict.fromkeys(matches + prefix_matches))
    return all_matches[:limit]

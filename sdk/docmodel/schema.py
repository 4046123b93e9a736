"""
Schema types for docmodel.

This module provides the validators entities are checked against before
any store write:
- FieldDef: Individual field definition
- DocumentSchema: Declarative field-based document schema
- ModelSchema: Adapter that validates document fields with a pydantic model
- BASE_SCHEMA: Fragment for the reserved "_id", "_rev" and "_attachments" keys

Any object with a validate(document) -> ValidationResult method can act
as a schema; these are the validators shipped with the package.

Invariants:
    - Validation never mutates the document
    - Validation results are deterministic for a given document
    - An "_attachments" entry is either None (explicitly absent) or a
      mapping carrying a string "content_type"

Example:
    >>> WIDGET_SCHEMA = BASE_SCHEMA.extend(
    ...     field("foo", "str", required=True),
    ...     field("size", "enum", enum_values=("s", "m", "l")),
    ...     name="Widget",
    ... )
    >>> WIDGET_SCHEMA.validate({"foo": "bar"}).valid
    True
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime
from difflib import get_close_matches
from enum import Enum
from typing import Any

import pydantic


class FieldKind(Enum):
    """Supported field types."""

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"
    JSON = "json"
    OBJECT = "object"
    LIST = "list"
    ENUM = "enum"
    LIST_STRING = "list_str"
    LIST_INT = "list_int"
    BYTES = "bytes"

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string to FieldKind."""
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Invalid field kind: {value}")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a document.

    Attributes:
        valid: Whether the document passed
        errors: Human readable error messages (empty when valid)
    """

    valid: bool
    errors: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return self.valid

    @classmethod
    def from_errors(cls, errors: list[str]) -> ValidationResult:
        return cls(valid=not errors, errors=tuple(errors))

    def merge(self, other: ValidationResult) -> ValidationResult:
        return ValidationResult.from_errors([*self.errors, *other.errors])


@dataclass(frozen=True)
class FieldDef:
    """Field definition within a document schema.

    Attributes:
        name: Field name (key in the document)
        kind: Data type
        required: Whether the field must be present
        default: Value assumed when the field is absent
        enum_values: Valid values for enum type
        nullable: Whether an explicit None is accepted
        description: Documentation
    """

    name: str
    kind: FieldKind
    required: bool = False
    default: Any = None
    enum_values: tuple[str, ...] | None = None
    nullable: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.kind == FieldKind.ENUM and not self.enum_values:
            raise ValueError(f"enum_values required for ENUM field '{self.name}'")

    def validate_value(self, value: Any) -> str | None:
        """Validate a present, non-None value.

        Returns error message if invalid, None if valid.
        """
        name, kind = self.name, self.kind

        if kind == FieldKind.STRING:
            if not isinstance(value, str):
                return f"Field '{name}' must be a string, got {type(value).__name__}"

        elif kind == FieldKind.INTEGER:
            if not isinstance(value, int) or isinstance(value, bool):
                return f"Field '{name}' must be an integer, got {type(value).__name__}"

        elif kind == FieldKind.FLOAT:
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                return f"Field '{name}' must be a number, got {type(value).__name__}"

        elif kind == FieldKind.BOOLEAN:
            if not isinstance(value, bool):
                return f"Field '{name}' must be a boolean, got {type(value).__name__}"

        elif kind == FieldKind.TIMESTAMP:
            if isinstance(value, str):
                try:
                    datetime.fromisoformat(value)
                except ValueError:
                    return f"Field '{name}' must be an ISO-8601 timestamp"
            elif not isinstance(value, int) or isinstance(value, bool) or value < 0:
                return f"Field '{name}' must be a positive integer or ISO-8601 timestamp"

        elif kind == FieldKind.JSON:
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                return f"Field '{name}' must be JSON-serializable"

        elif kind == FieldKind.OBJECT:
            if not isinstance(value, dict):
                return f"Field '{name}' must be an object, got {type(value).__name__}"

        elif kind == FieldKind.LIST:
            if not isinstance(value, list):
                return f"Field '{name}' must be a list, got {type(value).__name__}"

        elif kind == FieldKind.ENUM:
            if not isinstance(value, str):
                return f"Field '{name}' must be a string, got {type(value).__name__}"
            if self.enum_values and value not in self.enum_values:
                return f"Field '{name}' must be one of {self.enum_values}, got '{value}'"

        elif kind == FieldKind.LIST_STRING:
            if not isinstance(value, list):
                return f"Field '{name}' must be a list, got {type(value).__name__}"
            for i, item in enumerate(value):
                if not isinstance(item, str):
                    return f"Field '{name}[{i}]' must be a string"

        elif kind == FieldKind.LIST_INT:
            if not isinstance(value, list):
                return f"Field '{name}' must be a list, got {type(value).__name__}"
            for i, item in enumerate(value):
                if not isinstance(item, int) or isinstance(item, bool):
                    return f"Field '{name}[{i}]' must be an integer"

        elif kind == FieldKind.BYTES:
            if not isinstance(value, (str, bytes)):
                return f"Field '{name}' must be bytes or base64 text, got {type(value).__name__}"

        return None


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = False,
    default: Any = None,
    enum_values: tuple[str, ...] | None = None,
    nullable: bool = False,
    description: str = "",
) -> FieldDef:
    """Convenience function to create a FieldDef.

    Example:
        >>> title = field("title", "str", required=True)
        >>> status = field("status", "enum", enum_values=("todo", "done"))
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(
        name=name,
        kind=kind,
        required=required,
        default=default,
        enum_values=enum_values,
        nullable=nullable,
        description=description,
    )


def _check_attachments(value: dict[str, Any]) -> list[str]:
    errors = []
    for name, entry in value.items():
        if entry is None:
            continue
        if not isinstance(entry, dict):
            errors.append(f"Attachment '{name}' must be an object or None")
        elif not isinstance(entry.get("content_type"), str):
            errors.append(f"Attachment '{name}' must have a string content_type")
    return errors


@dataclass(frozen=True)
class DocumentSchema:
    """Field-based document schema.

    Attributes:
        fields: Field definitions
        additional_fields: Whether undeclared fields are accepted
        name: Schema name used in messages
    """

    fields: tuple[FieldDef, ...] = dataclass_field(default_factory=tuple)
    additional_fields: bool = True
    name: str = ""

    def __post_init__(self) -> None:
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate field names in schema '{self.name}'")

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> FieldDef | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def validate(self, document: dict[str, Any]) -> ValidationResult:
        if not isinstance(document, dict):
            return ValidationResult.from_errors(
                [f"Document must be an object, got {type(document).__name__}"]
            )

        errors: list[str] = []

        if not self.additional_fields:
            known = self.field_names
            for key in sorted(set(document) - set(known)):
                suggestions = get_close_matches(key, known, n=3)
                if suggestions:
                    errors.append(f"Unknown field '{key}'. Did you mean: {suggestions}?")
                else:
                    errors.append(f"Unknown field '{key}'")

        for field_def in self.fields:
            present = field_def.name in document
            value = document.get(field_def.name, field_def.default)

            if value is None:
                if present and field_def.nullable:
                    continue
                if field_def.required:
                    errors.append(f"Field '{field_def.name}' is required")
                elif present:
                    errors.append(f"Field '{field_def.name}' must not be null")
                continue

            error = field_def.validate_value(value)
            if error:
                errors.append(error)
            elif field_def.name == "_attachments":
                errors.extend(_check_attachments(value))

        return ValidationResult.from_errors(errors)

    def extend(self, *fields: FieldDef, **overrides: Any) -> DocumentSchema:
        """Return a new schema with extra (or replacing) fields.

        Args:
            *fields: Fields to add; a field with an existing name replaces it
            **overrides: additional_fields and/or name

        Returns:
            New DocumentSchema
        """
        added = {f.name for f in fields}
        merged = tuple(f for f in self.fields if f.name not in added) + tuple(fields)
        return DocumentSchema(
            fields=merged,
            additional_fields=overrides.get("additional_fields", self.additional_fields),
            name=overrides.get("name", self.name),
        )


BASE_SCHEMA = DocumentSchema(
    fields=(
        field("_id", "str", description="Document id, assigned on create"),
        field("_rev", "str", description="Current revision, assigned by the store"),
        field("_attachments", "object", description="Attachment entries by name"),
    ),
    name="base",
)


class ModelSchema:
    """Validate document fields with a pydantic model.

    Reserved keys ("_id", "_rev", "_attachments") are checked by the base
    schema; every other key is handed to the model.

    Example:
        >>> class Widget(pydantic.BaseModel):
        ...     foo: str
        >>> ModelSchema(Widget).validate({"_id": "w1", "foo": 1}).valid
        False
    """

    def __init__(self, model: type[pydantic.BaseModel], base: DocumentSchema = BASE_SCHEMA) -> None:
        self.model = model
        self.base = base

    @property
    def name(self) -> str:
        return self.model.__name__

    def validate(self, document: dict[str, Any]) -> ValidationResult:
        if not isinstance(document, dict):
            return ValidationResult.from_errors(
                [f"Document must be an object, got {type(document).__name__}"]
            )
        reserved = {key: value for key, value in document.items() if key.startswith("_")}
        body = {key: value for key, value in document.items() if not key.startswith("_")}

        result = self.base.validate(reserved)
        try:
            self.model.model_validate(body)
        except pydantic.ValidationError as e:
            errors = [
                f"Field '{'.'.join(str(part) for part in err['loc'])}' {err['msg'].lower()}"
                for err in e.errors()
            ]
            result = result.merge(ValidationResult.from_errors(errors))
        return result

    def __repr__(self) -> str:
        return f"ModelSchema({self.model.__name__})"

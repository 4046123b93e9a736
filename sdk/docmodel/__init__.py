"""
docmodel - Document models over a revisioned document store.

This package provides an entity layer with optimistic concurrency:
- Schemas (DocumentSchema, ModelSchema, FieldDef)
- PersistentEntity for documents that save, remove and carry attachments
- CollectionGateway for per-collection database, replication and change feeds
- SignedEntity and JwsEnvelope for signed documents

Example:
    >>> from docmodel import BASE_SCHEMA, CollectionGateway, PersistentEntity, field
    >>>
    >>> class Widgets(PersistentEntity):
    ...     schema = BASE_SCHEMA.extend(field("foo", "str", required=True))
    >>>
    >>> widgets = CollectionGateway(Widgets)
    >>> await widgets.set_database("widgets")
    >>> widget = await widgets.post({"foo": "bar"})
    >>> widget.rev.startswith("1-")
    True

Invariants:
    - Writes are compare-and-swap on the document revision
    - Conflicts are retried after re-reading the revision
    - Other store failures surface as InternalError

Version: 1.0.0
"""

__version__ = "1.0.0"

from .capabilities import (
    ChangeObservable,
    Envelope,
    Persistable,
    Replicable,
    SchemaValidator,
)
from .config import Settings, get_settings, setup_logging
from .entity import DesignDocument, PersistentEntity
from .envelope import SIGNED_SCHEMA, JwsEnvelope, SignedEntity
from .errors import (
    DocModelError,
    InternalError,
    InvalidConfigurationError,
    OperationError,
    ValidationError,
)
from .gateway import CollectionGateway, NamedQuery
from .schema import (
    BASE_SCHEMA,
    DocumentSchema,
    FieldDef,
    FieldKind,
    ModelSchema,
    ValidationResult,
    field,
)
from .validate import suggest_fields, validate_document, validate_or_raise

__all__ = [
    # Version
    "__version__",
    # Schema types
    "BASE_SCHEMA",
    "DocumentSchema",
    "FieldDef",
    "FieldKind",
    "ModelSchema",
    "ValidationResult",
    "field",
    "suggest_fields",
    "validate_document",
    "validate_or_raise",
    # Entities
    "PersistentEntity",
    "DesignDocument",
    "SignedEntity",
    "SIGNED_SCHEMA",
    "JwsEnvelope",
    # Gateway
    "CollectionGateway",
    "NamedQuery",
    # Capabilities
    "ChangeObservable",
    "Envelope",
    "Persistable",
    "Replicable",
    "SchemaValidator",
    # Configuration
    "Settings",
    "get_settings",
    "setup_logging",
    # Errors
    "DocModelError",
    "InternalError",
    "InvalidConfigurationError",
    "OperationError",
    "ValidationError",
]

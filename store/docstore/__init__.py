"""
Revisioned document stores with CouchDB semantics.

Backends:
    - MemoryDocumentStore: process-local databases shared by name
    - CouchDocumentStore: a CouchDB database over HTTP

Usage:
    from docstore import open_store

    store = open_store("widgets")                          # memory
    store = open_store("http://localhost:5984/widgets")    # CouchDB
    store = open_store({"name": "http://...", "auth": {"username": "u", "password": "p"}})
"""

from collections.abc import Mapping
from typing import Any

import pydantic

from .base import (
    CONFLICT,
    NOT_FOUND,
    Attachment,
    ConflictError,
    DocumentStore,
    NotFoundError,
    StoreConfigurationError,
    StoreError,
    attachment_digest,
    compare_revisions,
)
from .couch import CouchChangeFeed, CouchDocumentStore
from .handles import ChangeFeed, EventHandle
from .memory import MemoryChangeFeed, MemoryDocumentStore
from .options import StoreAuth, StoreOptions
from .replication import Replication, Sync
from .selectors import SelectorError, matches
from .views import ViewError, collate

DEFAULT_HTTP_TIMEOUT = 30.0


def parse_options(options: Any) -> StoreOptions:
    """Validate store options given as a name, URL, mapping or StoreOptions.

    Raises:
        StoreConfigurationError: If the options are malformed
    """
    if isinstance(options, StoreOptions):
        return options
    if isinstance(options, str):
        options = {"name": options}
    if not isinstance(options, Mapping):
        raise StoreConfigurationError(
            f"Store options must be a name, URL or mapping, got {type(options).__name__}"
        )
    try:
        return StoreOptions.model_validate(dict(options))
    except pydantic.ValidationError as e:
        raise StoreConfigurationError(str(e)) from e


def open_store(options: Any, *, timeout: float | None = None) -> DocumentStore:
    """Open a document store.

    Args:
        options: Database name, http(s) URL, mapping, StoreOptions, or an
            already-open store (returned unchanged)
        timeout: Default HTTP timeout when the options do not set one

    Returns:
        A DocumentStore

    Raises:
        StoreConfigurationError: If the options are malformed
    """
    if isinstance(options, DocumentStore):
        return options

    parsed = parse_options(options)
    if parsed.resolved_adapter == "http":
        auth = (parsed.auth.username, parsed.auth.password) if parsed.auth else None
        return CouchDocumentStore(
            parsed.name,
            auth=auth,
            headers=parsed.headers,
            timeout=parsed.timeout or timeout or DEFAULT_HTTP_TIMEOUT,
            skip_setup=parsed.skip_setup,
        )
    return MemoryDocumentStore(parsed.name)


__all__ = [
    "Attachment",
    "CONFLICT",
    "ChangeFeed",
    "ConflictError",
    "CouchChangeFeed",
    "CouchDocumentStore",
    "DocumentStore",
    "EventHandle",
    "MemoryChangeFeed",
    "MemoryDocumentStore",
    "NOT_FOUND",
    "NotFoundError",
    "Replication",
    "SelectorError",
    "StoreAuth",
    "StoreConfigurationError",
    "StoreError",
    "StoreOptions",
    "Sync",
    "ViewError",
    "attachment_digest",
    "collate",
    "compare_revisions",
    "matches",
    "open_store",
    "parse_options",
]

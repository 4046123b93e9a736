"""
Base protocol and types for the revisioned document store.

This module defines the DocumentStore protocol that every backend must
implement, along with the store error hierarchy, attachment records and
revision helpers shared by all backends.

Invariants:
    - Every successful write returns a new revision ("<generation>-<hash>")
    - A write carrying a stale revision fails with ConflictError (409)
    - A read of a missing or deleted document fails with NotFoundError (404)
    - All other failures are StoreError with an optional HTTP-like status

How to change safely:
    - Protocol changes require updating every backend (memory, couch)
    - Keep error statuses aligned with CouchDB so callers can branch on them
    - Add new options as keyword arguments with defaults
"""

from __future__ import annotations

import base64
import hashlib
from abc import abstractmethod
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from .handles import ChangeFeed, EventHandle


NOT_FOUND = 404
CONFLICT = 409
PRECONDITION_FAILED = 412


class StoreError(Exception):
    """Base exception for document store operations.

    Attributes:
        message: Human readable message
        status: HTTP-like status code (None for transport failures)
        error: Short error name (e.g. "conflict", "not_found")
        reason: Longer reason reported by the backend
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        error: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.error = error
        self.reason = reason or message

    @classmethod
    def from_status(
        cls,
        status: int | None,
        error: str | None = None,
        reason: str | None = None,
    ) -> StoreError:
        """Create the most specific error for a status code."""
        message = reason or error or f"Store request failed with status {status}"
        if status == NOT_FOUND:
            return NotFoundError(message, error=error or "not_found", reason=reason)
        if status == CONFLICT:
            return ConflictError(message, error=error or "conflict", reason=reason)
        return StoreError(message, status=status, error=error, reason=reason)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status!r}, reason={self.reason!r})"


class NotFoundError(StoreError):
    """Document, attachment or database does not exist."""

    def __init__(
        self,
        message: str = "missing",
        error: str | None = "not_found",
        reason: str | None = None,
    ) -> None:
        super().__init__(message, status=NOT_FOUND, error=error, reason=reason)


class ConflictError(StoreError):
    """Write rejected because the supplied revision is stale."""

    def __init__(
        self,
        message: str = "Document update conflict",
        error: str | None = "conflict",
        reason: str | None = None,
    ) -> None:
        super().__init__(message, status=CONFLICT, error=error, reason=reason)


class StoreConfigurationError(ValueError):
    """Options passed to open a store are malformed."""

    pass


@dataclass(frozen=True)
class Attachment:
    """Attachment bytes together with their content type.

    Attributes:
        content_type: MIME type recorded with the attachment
        data: Raw attachment bytes
    """

    content_type: str
    data: bytes

    @property
    def digest(self) -> str:
        """CouchDB-style md5 digest of the data."""
        return attachment_digest(self.data)

    @property
    def length(self) -> int:
        return len(self.data)

    def to_inline(self) -> dict[str, Any]:
        """Transport-safe inline representation (base64 data)."""
        return {
            "content_type": self.content_type,
            "data": base64.b64encode(self.data).decode("ascii"),
        }


def attachment_digest(data: bytes) -> str:
    """Return the "md5-<base64>" digest CouchDB reports for attachments."""
    return "md5-" + base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def decode_attachment_data(data: Any) -> bytes:
    """Decode inline attachment data (base64 string or raw bytes)."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, str):
        return base64.b64decode(data)
    raise StoreError(
        f"Attachment data must be bytes or base64 text, got {type(data).__name__}",
        status=400,
        error="bad_request",
    )


def revision_generation(rev: str | None) -> int:
    """Return the numeric generation prefix of a revision (0 if unset)."""
    if not rev:
        return 0
    prefix, _, _ = rev.partition("-")
    try:
        return int(prefix)
    except ValueError:
        raise StoreError(f"Invalid rev format: {rev!r}", status=400, error="bad_request")


def compare_revisions(left: str | None, right: str | None) -> int:
    """Order two revisions the way CouchDB picks a deterministic winner.

    Returns:
        Negative if left loses, positive if left wins, 0 if equal
    """
    left_key = (revision_generation(left), left or "")
    right_key = (revision_generation(right), right or "")
    return (left_key > right_key) - (left_key < right_key)


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for revisioned document store backends.

    Documents are dictionaries in CouchDB shape: "_id", "_rev",
    "_attachments" plus arbitrary fields.

    Concurrency contract:
        - put/remove/put_attachment/remove_attachment are atomic
          compare-and-swap operations on the document revision
        - A stale revision raises ConflictError

    Example:
        >>> store = open_store("widgets")
        >>> result = await store.put({"_id": "w1", "foo": "bar"})
        >>> doc = await store.get("w1")
        >>> doc["_rev"] == result["rev"]
        True
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Database name."""
        ...

    @abstractmethod
    async def get(self, doc_id: str, **options: Any) -> dict[str, Any]:
        """Fetch a document.

        Raises:
            NotFoundError: If the document is missing or deleted
        """
        ...

    @abstractmethod
    async def put(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Create or update a document carrying "_id" (and "_rev" to update).

        Returns:
            {"ok": True, "id": ..., "rev": ...}

        Raises:
            ConflictError: If "_rev" is stale
        """
        ...

    @abstractmethod
    async def post(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Create a document, generating an id when "_id" is absent."""
        ...

    @abstractmethod
    async def remove(self, doc_id: str, rev: str | None) -> dict[str, Any]:
        """Delete a document at the given revision."""
        ...

    @abstractmethod
    async def get_attachment(self, doc_id: str, name: str, **options: Any) -> Attachment:
        """Fetch attachment bytes."""
        ...

    @abstractmethod
    async def put_attachment(
        self,
        doc_id: str,
        name: str,
        rev: str | None,
        data: bytes,
        content_type: str,
    ) -> dict[str, Any]:
        """Add or replace an attachment, returning the new revision."""
        ...

    @abstractmethod
    async def remove_attachment(self, doc_id: str, name: str, rev: str | None) -> dict[str, Any]:
        """Remove an attachment, returning the new revision."""
        ...

    @abstractmethod
    async def find(self, request: dict[str, Any]) -> dict[str, Any]:
        """Run a Mango query; returns {"docs": [...]}."""
        ...

    @abstractmethod
    async def query(self, view: Any, **options: Any) -> dict[str, Any]:
        """Run a map/reduce view; returns {"rows": [...], ...}."""
        ...

    @abstractmethod
    async def create_index(self, index: dict[str, Any]) -> dict[str, Any]:
        """Create a Mango index."""
        ...

    @abstractmethod
    async def get_indexes(self) -> dict[str, Any]:
        """List indexes; returns {"indexes": [...]}."""
        ...

    @abstractmethod
    def changes(self, **options: Any) -> ChangeFeed:
        """Open a change feed (requires a running event loop)."""
        ...

    @abstractmethod
    def sync(self, remote: DocumentStore, **options: Any) -> EventHandle:
        """Start bidirectional replication with a remote store."""
        ...

    @abstractmethod
    def replicate_to(self, remote: DocumentStore, **options: Any) -> EventHandle:
        """Start replication from this store to a remote store."""
        ...

    @abstractmethod
    def replicate_from(self, remote: DocumentStore, **options: Any) -> EventHandle:
        """Start replication from a remote store into this store."""
        ...

    @abstractmethod
    async def write_replica(self, doc: dict[str, Any]) -> bool:
        """Apply a replicated document keeping its revision.

        Returns:
            True if the document became the current revision
        """
        ...

    @abstractmethod
    async def info(self) -> dict[str, Any]:
        """Database information (name, doc_count, update_seq)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the handle. Data is kept."""
        ...

    @abstractmethod
    async def destroy(self) -> None:
        """Delete the database and all its data."""
        ...

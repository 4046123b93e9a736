"""
Capability protocols.

Entities and gateways gain behavior by delegation to collaborators
rather than by stacking generated subclasses. These protocols name the
capabilities so callers can check for them with isinstance().

    PersistentEntity   -> Persistable
    CollectionGateway  -> Replicable, ChangeObservable
    JwsEnvelope        -> Envelope
    DocumentSchema     -> SchemaValidator
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .schema import ValidationResult


@runtime_checkable
class SchemaValidator(Protocol):
    """Validates a document before it is written."""

    def validate(self, document: dict[str, Any]) -> ValidationResult: ...


@runtime_checkable
class Persistable(Protocol):
    """Saves itself to a store with optimistic concurrency."""

    async def save(self) -> Any: ...

    async def remove(self) -> bool: ...

    async def fetch_attachment(self, name: str, **options: Any) -> Any: ...

    async def put_attachment(self, name: str, attachment: dict[str, Any]) -> Any: ...

    async def remove_attachment(self, name: str) -> Any: ...

    def validate(self) -> ValidationResult: ...


@runtime_checkable
class Replicable(Protocol):
    """Keeps a database replicated with a remote one."""

    def set_sync(self, options: Any, replication_options: dict[str, Any] | None = None) -> Any: ...

    def replicate_to(self, options: Any, replication_options: dict[str, Any] | None = None) -> Any: ...

    def replicate_from(self, options: Any, replication_options: dict[str, Any] | None = None) -> Any: ...


@runtime_checkable
class ChangeObservable(Protocol):
    """Exposes a change feed."""

    def set_changes(self, options: dict[str, Any] | None = None) -> Any: ...


@runtime_checkable
class Envelope(Protocol):
    """Signs payloads and verifies signatures."""

    def sign(self, payload: Any) -> dict[str, Any]: ...

    def verify(self, payload: Any, signature: dict[str, Any]) -> bool: ...

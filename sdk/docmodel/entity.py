"""
Persistent entities with optimistic concurrency.

A PersistentEntity is one document of a collection: its id, revision,
attachments and fields. Saving, removing and attachment mutation go to
the gateway's store as compare-and-swap writes on the revision. When a
write loses a race (conflict), the entity re-reads only the current
revision through the gateway, adopts it and writes again.

Invariants:
    - The revision is only ever assigned from a store response
    - A retry refreshes the revision and nothing else: local fields and
      every attachment entry held locally survive it
    - Validation failures are raised before any store call
    - Conflicts never reach the caller unless the retry bound is passed,
      in which case InternalError carries status 409
    - Any other store failure is raised as InternalError

How to change safely:
    - Keep the re-fetch on the gateway (fetch_revision) so subclasses
      never construct a different entity type during a retry
    - Never send a None attachment marker to the store

Example:
    >>> class Widgets(PersistentEntity):
    ...     schema = BASE_SCHEMA.extend(field("foo", "str", required=True))
    >>> widget = gateway.entity({"_id": "w1", "foo": "bar"})
    >>> await widget.save()
    >>> widget.rev.startswith("1-")
    True
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar, Dict, Optional, TypeVar

from docstore import CONFLICT, NOT_FOUND, Attachment, StoreError
from docstore.base import decode_attachment_data

from .capabilities import SchemaValidator
from .errors import InternalError, OperationError
from .schema import BASE_SCHEMA, ValidationResult, field
from .validate import validate_document, validate_or_raise

if TYPE_CHECKING:
    from docstore import DocumentStore

    from .gateway import CollectionGateway

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESERVED_KEYS = ("_id", "_rev", "_attachments", "_deleted")


class PersistentEntity:
    """Base class for documents persisted through a CollectionGateway.

    Concrete subclasses declare a ``schema``. Intermediate base classes
    opt out with ``class Base(PersistentEntity, abstract=True)``.

    Attributes:
        id: Document id (None until created)
        rev: Current revision (None until created)
        attachments: Attachment entries by name; None marks an attachment
            known to be absent from the store
        fields: Every other document key
    """

    schema: ClassVar[Optional[SchemaValidator]] = None
    _abstract: ClassVar[bool] = True

    def __init_subclass__(cls, abstract: bool = False, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls._abstract = abstract
        if not abstract and cls.schema is None:
            raise TypeError(f"{cls.__name__} must declare a schema (or pass abstract=True)")

    def __init__(
        self,
        data: Optional[Dict[str, Any]] = None,
        *,
        gateway: Optional[CollectionGateway[Any]] = None,
    ) -> None:
        if type(self)._abstract:
            raise TypeError(f"{type(self).__name__} is abstract and cannot be instantiated")
        data = copy.deepcopy(dict(data or {}))
        self.id: Optional[str] = data.pop("_id", None)
        self.rev: Optional[str] = data.pop("_rev", None)
        attachments = data.pop("_attachments", None)
        self.attachments: Dict[str, Optional[Dict[str, Any]]] = dict(attachments or {})
        data.pop("_deleted", None)
        self.fields: Dict[str, Any] = data
        self._gateway = gateway

    # Field access

    def __getattr__(self, name: str) -> Any:
        fields = self.__dict__.get("fields")
        if fields is not None and name in fields:
            return fields[name]
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if key in RESERVED_KEYS:
            raise KeyError(f"{key} is managed by the entity; use id, rev or attachments")
        self.fields[key] = value

    def __delitem__(self, key: str) -> None:
        del self.fields[key]

    def __contains__(self, key: object) -> bool:
        return key in self.fields

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, rev={self.rev!r})"

    # Collaborators

    @property
    def gateway(self) -> CollectionGateway[Any]:
        if self._gateway is None:
            raise OperationError(f"{type(self).__name__} is not bound to a collection gateway")
        return self._gateway

    @property
    def store(self) -> DocumentStore:
        return self.gateway.database

    # Documents

    def to_document(self) -> Dict[str, Any]:
        """Build the store document (reserved keys only when set)."""
        doc = copy.deepcopy(self.fields)
        if self.id is not None:
            doc["_id"] = self.id
        if self.rev is not None:
            doc["_rev"] = self.rev
        attachments = {
            name: dict(entry) for name, entry in self.attachments.items() if entry is not None
        }
        if attachments:
            doc["_attachments"] = attachments
        return doc

    def validate(self) -> ValidationResult:
        return validate_document(type(self).schema, self.to_document())

    async def _with_conflict_retry(self, operation: str, attempt: Callable[[], Awaitable[T]]) -> T:
        """Run a store write, re-fetching the revision after each conflict."""
        limit = self.gateway.settings.max_conflict_retries
        conflicts = 0
        while True:
            try:
                return await attempt()
            except StoreError as e:
                if e.status != CONFLICT:
                    raise InternalError.from_store_error(e) from e
                conflicts += 1
                if limit is not None and conflicts > limit:
                    raise InternalError(
                        f"{operation} of {self.id} still conflicting after {conflicts} attempts",
                        status=CONFLICT,
                        reason=e.reason,
                    ) from e
                logger.debug(
                    "Conflict, re-fetching revision",
                    extra={
                        "operation": operation,
                        "doc_id": self.id,
                        "stale_rev": self.rev,
                        "conflicts": conflicts,
                    },
                )
            self.rev = await self.gateway.fetch_revision(self.id)

    async def save(self) -> PersistentEntity:
        """Validate and write the entity.

        Returns:
            self, carrying the new revision (and the generated id for a
            document saved without one)

        Raises:
            ValidationError: If the document is invalid (no store call)
            InternalError: If the store fails
        """
        validate_or_raise(type(self).schema, self.to_document())

        async def attempt() -> None:
            doc = self.to_document()
            if self.id is None:
                result = await self.store.post(doc)
            else:
                result = await self.store.put(doc)
            self.id = result["id"]
            self.rev = result["rev"]

        await self._with_conflict_retry("save", attempt)
        logger.debug("Saved", extra={"doc_id": self.id, "rev": self.rev})
        return self

    async def remove(self) -> bool:
        """Delete the document at its current revision.

        Returns:
            True if the store acknowledged the deletion
        """
        if self.id is None or self.rev is None:
            raise OperationError(f"Cannot remove {type(self).__name__} without id and revision")

        async def attempt() -> bool:
            result = await self.store.remove(self.id, self.rev)
            self.rev = result.get("rev", self.rev)
            return bool(result.get("ok"))

        removed = await self._with_conflict_retry("remove", attempt)
        logger.debug("Removed", extra={"doc_id": self.id, "rev": self.rev})
        return removed

    # Attachments

    async def fetch_attachment(self, name: str, **options: Any) -> PersistentEntity:
        """Load attachment bytes into ``attachments[name]``.

        A missing attachment is recorded as None rather than raised.
        """
        if self.id is None:
            raise OperationError(f"Cannot fetch attachment of {type(self).__name__} without id")
        try:
            attachment = await self.store.get_attachment(self.id, name, **options)
        except StoreError as e:
            if e.status == NOT_FOUND:
                self.attachments[name] = None
                return self
            raise InternalError.from_store_error(e) from e
        self.attachments[name] = attachment.to_inline()
        return self

    async def put_attachment(self, name: str, attachment: Dict[str, Any]) -> PersistentEntity:
        """Add or replace an attachment.

        Args:
            name: Attachment name
            attachment: {"content_type": str, "data": bytes or base64 text}
        """
        if self.id is None:
            raise OperationError(f"Cannot put attachment on {type(self).__name__} without id")
        content_type = attachment.get("content_type")
        if not isinstance(content_type, str) or "data" not in attachment:
            raise OperationError("Attachments need a content_type and data")
        try:
            data = decode_attachment_data(attachment["data"])
        except (StoreError, ValueError) as e:
            raise OperationError(f"Attachment {name} data is not bytes or base64 text") from e

        async def attempt() -> None:
            result = await self.store.put_attachment(self.id, name, self.rev, data, content_type)
            self.rev = result["rev"]

        await self._with_conflict_retry("put_attachment", attempt)
        self.attachments[name] = Attachment(content_type, data).to_inline()
        return self

    async def remove_attachment(self, name: str) -> PersistentEntity:
        """Remove an attachment and drop its local entry."""
        if self.id is None or self.rev is None:
            raise OperationError(
                f"Cannot remove attachment of {type(self).__name__} without id and revision"
            )

        async def attempt() -> None:
            result = await self.store.remove_attachment(self.id, name, self.rev)
            self.rev = result["rev"]

        await self._with_conflict_retry("remove_attachment", attempt)
        self.attachments.pop(name, None)
        return self


DESIGN_SCHEMA = BASE_SCHEMA.extend(
    field("_id", "str", required=True),
    field("views", "object", required=True),
    field("language", "str"),
    name="design",
)


class DesignDocument(PersistentEntity):
    """Design document holding a collection's map/reduce views."""

    schema = DESIGN_SCHEMA

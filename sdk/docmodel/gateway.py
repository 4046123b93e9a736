"""
Collection gateway: one per entity type, owned by the application.

The gateway holds the connection to the collection's database, the
replications and change feeds attached to it, and the declared indexes
and map/reduce queries provisioned whenever a database is set. Every
data operation of the collection goes through it.

State machine:
    unset --set_database--> connected --set_database--> connected (previous closed)
    connected --close--> closed (data operations raise OperationError)

Invariants:
    - Not-found on get() is None, on delete() is False
    - Every other store failure surfaces as InternalError
    - Replication errors are logged and routed to on_error, never dropped
    - Handles are mutated by setup code only; no locking is done here

How to change safely:
    - Keep provisioning failures as InvalidConfigurationError and leave
      the connection open so callers can inspect it
    - New data operations must wrap StoreError with InternalError
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Type, TypeVar, Union

from docstore import (
    NOT_FOUND,
    DocumentStore,
    EventHandle,
    StoreConfigurationError,
    StoreError,
    open_store,
)

from .config import Settings, get_settings
from .entity import DesignDocument, PersistentEntity
from .errors import InternalError, InvalidConfigurationError, OperationError, ValidationError
from .schema import ValidationResult

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=PersistentEntity)

ErrorHandler = Callable[[InternalError], Any]


@dataclass(frozen=True)
class NamedQuery:
    """Map/reduce query provisioned with the database.

    Attributes:
        name: Query (and design document) name
        query: Map callable, map source, or {"map": ..., "reduce": ...}
    """

    name: str
    query: Any


def _named_query(value: Union[NamedQuery, Mapping[str, Any]]) -> NamedQuery:
    if isinstance(value, NamedQuery):
        return value
    if isinstance(value, Mapping) and "name" in value and "query" in value:
        return NamedQuery(value["name"], value["query"])
    raise InvalidConfigurationError(f"Invalid query declaration: {value!r}")


class CollectionGateway(Generic[E]):
    """Database access for one entity type.

    Example:
        >>> widgets = CollectionGateway(Widgets, indexes=[{"index": {"fields": ["foo"]}}])
        >>> await widgets.set_database("widgets")
        >>> widget = await widgets.post({"foo": "bar"})
        >>> (await widgets.get(widget.id))["foo"]
        'bar'
        >>> await widgets.close()
    """

    def __init__(
        self,
        entity_type: Type[E],
        *,
        indexes: Sequence[Dict[str, Any]] = (),
        queries: Sequence[Union[NamedQuery, Mapping[str, Any]]] = (),
        settings: Optional[Settings] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        if not (isinstance(entity_type, type) and issubclass(entity_type, PersistentEntity)):
            raise InvalidConfigurationError(f"{entity_type!r} is not a PersistentEntity subclass")
        if entity_type._abstract:
            raise InvalidConfigurationError(f"{entity_type.__name__} is abstract")
        self.entity_type = entity_type
        self.indexes: List[Dict[str, Any]] = list(indexes)
        self.queries: List[NamedQuery] = [_named_query(q) for q in queries]
        self.settings = settings or get_settings()
        self.on_error = on_error

        self.replications: List[EventHandle] = []
        self.changes: List[EventHandle] = []
        self._database: Optional[DocumentStore] = None
        self._remotes: List[DocumentStore] = []

    @property
    def name(self) -> str:
        return self.entity_type.__name__

    @property
    def database(self) -> DocumentStore:
        if self._database is None:
            raise OperationError(f"Collection {self.name} has no database set")
        return self._database

    @property
    def connected(self) -> bool:
        return self._database is not None

    def entity(self, data: Optional[Dict[str, Any]] = None) -> E:
        """Build an entity bound to this gateway."""
        return self.entity_type(data, gateway=self)

    # Setup

    async def set_database(self, options: Any) -> List[Any]:
        """Connect to a database and provision indexes and queries.

        Args:
            options: Database name, http(s) URL, option mapping,
                StoreOptions, or an already-open store

        Returns:
            Index results followed by query results

        Raises:
            InvalidConfigurationError: If options are malformed or any
                index or query cannot be provisioned
        """
        if self._database is not None:
            previous, self._database = self._database, None
            await previous.close()

        try:
            store = open_store(options, timeout=self.settings.http_timeout)
        except StoreConfigurationError as e:
            raise InvalidConfigurationError(
                f"Collection {self.name} database options invalid",
                details={"error": str(e)},
            ) from e
        self._database = store
        logger.info("Database set", extra={"collection": self.name, "db_name": store.name})

        results = await asyncio.gather(
            *(store.create_index(index) for index in self.indexes),
            *(self.create_query(query.name, query.query) for query in self.queries),
            return_exceptions=True,
        )
        index_results = results[: len(self.indexes)]
        query_results = results[len(self.indexes) :]

        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
        for result in index_results:
            if isinstance(result, Exception):
                raise InvalidConfigurationError(
                    f"Collection {self.name} index configuration invalid",
                    details={"error": str(result)},
                ) from result
        for result in query_results:
            if isinstance(result, Exception):
                raise InvalidConfigurationError(
                    f"Collection {self.name} map-reduce query configuration invalid",
                    details={"error": str(result)},
                ) from result

        return list(index_results) + list(query_results)

    def _open_remote(self, options: Any, kind: str) -> DocumentStore:
        try:
            remote = open_store(options, timeout=self.settings.http_timeout)
        except StoreConfigurationError as e:
            raise InvalidConfigurationError(
                f"Collection {self.name} remote database options invalid for {kind}",
                details={"error": str(e)},
            ) from e
        if remote is not options:
            self._remotes.append(remote)
        return remote

    def _replicate(
        self,
        kind: str,
        options: Any,
        replication_options: Optional[Dict[str, Any]],
        start: Callable[..., EventHandle],
    ) -> EventHandle:
        remote = self._open_remote(options, kind)
        merged = {**self.settings.replication_defaults, **(replication_options or {})}
        try:
            handle = start(remote, **merged)
        except TypeError as e:
            raise InvalidConfigurationError(
                f"Collection {self.name} replication options invalid for {kind}",
                details={"error": str(e)},
            ) from e

        async def surface(error: BaseException) -> None:
            await self._surface_error(kind, error)

        handle.on("error", surface)
        self.replications.append(handle)
        logger.info(
            "Replication started",
            extra={"collection": self.name, "kind": kind, "remote": remote.name},
        )
        return handle

    async def _surface_error(self, kind: str, error: BaseException) -> None:
        internal = InternalError.from_store_error(error, f"Collection {self.name} {kind} failed: {error}")
        internal.__cause__ = error
        logger.error(
            "Replication failed",
            extra={"collection": self.name, "kind": kind, "error": repr(error)},
        )
        if self.on_error is not None:
            outcome = self.on_error(internal)
            if inspect.isawaitable(outcome):
                await outcome

    def set_sync(self, options: Any, replication_options: Optional[Dict[str, Any]] = None) -> EventHandle:
        """Start bidirectional replication with a remote database."""
        return self._replicate("sync", options, replication_options, self.database.sync)

    def replicate_to(self, options: Any, replication_options: Optional[Dict[str, Any]] = None) -> EventHandle:
        """Start replication from this database to a remote one."""
        return self._replicate("replicate", options, replication_options, self.database.replicate_to)

    def replicate_from(self, options: Any, replication_options: Optional[Dict[str, Any]] = None) -> EventHandle:
        """Start replication from a remote database into this one."""
        return self._replicate("replicate", options, replication_options, self.database.replicate_from)

    def set_changes(self, options: Optional[Dict[str, Any]] = None) -> EventHandle:
        """Open a change feed (live, with documents, from now by default)."""
        merged = {
            "live": True,
            "include_docs": True,
            "since": self.settings.changes_since,
            **(options or {}),
        }
        try:
            feed = self.database.changes(**merged)
        except TypeError as e:
            raise InvalidConfigurationError(
                f"Collection {self.name} change feed options invalid",
                details={"error": str(e)},
            ) from e
        self.changes.append(feed)
        return feed

    # Data operations

    async def get(self, doc_id: str, **options: Any) -> Optional[E]:
        """Fetch an entity by id, or None if it does not exist."""
        store = self.database
        try:
            doc = await store.get(doc_id, **options)
        except StoreError as e:
            if e.status == NOT_FOUND:
                return None
            raise InternalError.from_store_error(e) from e
        return self.entity(doc)

    async def find(self, options: Optional[Dict[str, Any]] = None) -> List[E]:
        """Run a Mango query; the selector defaults to match-all."""
        request = dict(options or {})
        request["selector"] = request.get("selector") or {}
        store = self.database
        try:
            result = await store.find(request)
        except StoreError as e:
            raise InternalError.from_store_error(e) from e
        return [self.entity(doc) for doc in result["docs"]]

    async def query(self, name: str, **options: Any) -> List[E]:
        """Run a map/reduce query and build entities from row documents."""
        merged = {"include_docs": True, "reduce": False, **options}
        store = self.database
        try:
            result = await store.query(name, **merged)
        except StoreError as e:
            raise InternalError.from_store_error(e) from e
        return [self.entity(row["doc"]) for row in result["rows"] if row.get("doc")]

    async def post(self, data: Dict[str, Any]) -> E:
        """Validate and create a document; the store assigns a missing id."""
        entity = self.entity(data)
        validation = entity.validate()
        if not validation.valid:
            raise ValidationError(validation)
        store = self.database
        try:
            result = await store.post(entity.to_document())
        except StoreError as e:
            raise InternalError.from_store_error(e) from e
        entity.id = result["id"]
        entity.rev = result["rev"]
        logger.debug("Posted", extra={"collection": self.name, "doc_id": entity.id})
        return entity

    async def put(self, data: Dict[str, Any]) -> E:
        """Create or update a document with an id (conflicts are retried)."""
        if not data.get("_id"):
            raise ValidationError(ValidationResult.from_errors(["Field '_id' is required"]))
        entity = self.entity(data)
        await entity.save()
        return entity

    async def delete(self, data: Union[str, Mapping[str, Any], PersistentEntity]) -> bool:
        """Delete by id, by document, or by entity.

        Without a revision the current document is fetched first.

        Returns:
            False if the document does not exist, else the store's ok flag
        """
        if isinstance(data, PersistentEntity):
            doc_id, rev = data.id, data.rev
        elif isinstance(data, str):
            doc_id, rev = data, None
        elif isinstance(data, Mapping):
            doc_id, rev = data.get("_id"), data.get("_rev")
        else:
            raise OperationError(f"Cannot delete {type(data).__name__}; pass an id or a document")
        if not doc_id:
            raise OperationError("Cannot delete a document without id")

        if rev is None:
            entity = await self.get(doc_id)
            if entity is None:
                return False
        elif isinstance(data, PersistentEntity):
            entity = data
        else:
            entity = self.entity(dict(data))
        return await entity.remove()

    async def create_index(self, index: Dict[str, Any]) -> Dict[str, Any]:
        store = self.database
        try:
            return await store.create_index(index)
        except StoreError as e:
            raise InternalError.from_store_error(e) from e

    async def get_indexes(self) -> List[Dict[str, Any]]:
        store = self.database
        try:
            result = await store.get_indexes()
        except StoreError as e:
            raise InternalError.from_store_error(e) from e
        return result["indexes"]

    async def create_query(self, name: str, map_or_spec: Any) -> Dict[str, str]:
        """Save a map/reduce query as the design document "_design/<name>".

        Args:
            name: Query name (the view is stored under the same name)
            map_or_spec: Map callable or source, or {"map": ..., "reduce": ...}

        Returns:
            {"result": "created"} or {"result": "updated"}
        """
        if callable(map_or_spec) or isinstance(map_or_spec, str):
            spec: Dict[str, Any] = {"map": map_or_spec}
        elif isinstance(map_or_spec, Mapping) and "map" in map_or_spec:
            spec = dict(map_or_spec)
        else:
            raise InvalidConfigurationError("create_query requires at least a map function")

        design = DesignDocument({"_id": f"_design/{name}", "views": {name: spec}}, gateway=self)
        await design.save()
        result = "created" if design.rev.startswith("1-") else "updated"
        logger.debug("Query %s", result, extra={"collection": self.name, "query": name})
        return {"result": result}

    async def fetch_revision(self, doc_id: str) -> str:
        """Current revision of a document.

        Raises:
            InternalError: If the document is gone or the store fails
        """
        store = self.database
        try:
            doc = await store.get(doc_id)
        except StoreError as e:
            if e.status == NOT_FOUND:
                raise InternalError(
                    f"Document {doc_id} was deleted concurrently",
                    status=NOT_FOUND,
                    reason=e.reason,
                ) from e
            raise InternalError.from_store_error(e) from e
        return doc["_rev"]

    # Teardown

    async def close(self) -> None:
        """Cancel change feeds and replications, then close the database.

        Raises:
            InternalError: For the first cancellation or close that failed
        """
        handles = [*self.changes, *self.replications]
        cancelled = await asyncio.gather(*(h.cancel() for h in handles), return_exceptions=True)

        stores = [*self._remotes]
        if self._database is not None:
            stores.append(self._database)
        closed = await asyncio.gather(*(s.close() for s in stores), return_exceptions=True)

        self.changes = []
        self.replications = []
        self._remotes = []
        self._database = None
        logger.info("Collection closed", extra={"collection": self.name})

        for outcome in [*cancelled, *closed]:
            if isinstance(outcome, Exception):
                raise InternalError.from_store_error(
                    outcome, f"Collection {self.name} failed to close: {outcome}"
                ) from outcome

    async def __aenter__(self) -> CollectionGateway[E]:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

"""
In-memory revisioned document store.

This module provides a CouchDB-compatible document store that keeps
all data in process memory. It backs:
- Unit and integration tests
- Local development without a CouchDB server
- Any "name only" database passed to open_store()

Databases are shared process-wide by name: two handles opened with the
same name see the same documents, exactly like two PouchDB handles on
the same local database. Data lives until destroy() is called.

Invariants:
    - Revisions are "<generation>-<md5>" and the first one starts with "1-"
    - Every write is a compare-and-swap on "_rev" under the database lock
    - Deleted documents leave a tombstone; re-creating over a tombstone
      does not need a revision
    - The change log holds only the latest change for each document

How to change safely:
    - Never await while holding a database lock
    - Keep the returned shapes identical to CouchDB's HTTP API
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from .base import (
    PRECONDITION_FAILED,
    Attachment,
    ConflictError,
    NotFoundError,
    StoreConfigurationError,
    StoreError,
    attachment_digest,
    compare_revisions,
    decode_attachment_data,
    revision_generation,
)
from .handles import ChangeFeed
from .replication import Replication, Sync
from .selectors import matches, resolve_path
from .views import ViewError, collation_key, normalize_view, run_view

logger = logging.getLogger(__name__)

DESIGN_PREFIX = "_design/"
LOCAL_PREFIX = "_local/"


@dataclass
class _StoredAttachment:
    content_type: str
    data: bytes
    digest: str
    revpos: int

    def stub(self) -> dict[str, Any]:
        return {
            "stub": True,
            "content_type": self.content_type,
            "digest": self.digest,
            "length": len(self.data),
            "revpos": self.revpos,
        }

    def inline(self) -> dict[str, Any]:
        entry = Attachment(self.content_type, self.data).to_inline()
        entry["digest"] = self.digest
        entry["revpos"] = self.revpos
        return entry


@dataclass
class _Record:
    doc_id: str
    rev: str
    body: dict[str, Any]
    attachments: dict[str, _StoredAttachment] = field(default_factory=dict)
    deleted: bool = False
    seq: int = 0


class _Database:
    """Shared state behind every handle opened on the same name."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.records: dict[str, _Record] = {}
        self.seq_index: dict[int, str] = {}
        self.update_seq = 0
        self.indexes: dict[str, dict[str, Any]] = {}
        self.feeds: set[MemoryChangeFeed] = set()
        self.lock = threading.Lock()
        self.destroyed = False

    def commit(self, record: _Record) -> None:
        """Store a record and append it to the change log (lock held)."""
        if record.seq:
            self.seq_index.pop(record.seq, None)
        self.update_seq += 1
        record.seq = self.update_seq
        self.seq_index[record.seq] = record.doc_id
        self.records[record.doc_id] = record

    def notify(self) -> None:
        for feed in list(self.feeds):
            feed._notify()


# Global database registry
_databases: dict[str, _Database] = {}
_databases_lock = threading.Lock()


def _open_database(name: str) -> _Database:
    with _databases_lock:
        database = _databases.get(name)
        if database is None:
            database = _Database(name)
            _databases[name] = database
            logger.debug("Created in-memory database", extra={"db_name": name})
        return database


def _new_revision(
    previous: str | None,
    body: dict[str, Any],
    attachments: dict[str, _StoredAttachment],
    deleted: bool,
) -> str:
    generation = revision_generation(previous) + 1
    material = json.dumps(
        {
            "previous": previous,
            "body": body,
            "attachments": {name: att.digest for name, att in attachments.items()},
            "deleted": deleted,
        },
        sort_keys=True,
        default=repr,
    )
    return f"{generation}-{hashlib.md5(material.encode('utf-8')).hexdigest()}"


def _validate_doc_id(doc_id: Any) -> str:
    if not isinstance(doc_id, str) or not doc_id:
        raise StoreError(
            "Document is missing an _id",
            status=PRECONDITION_FAILED,
            error="missing_id",
        )
    if doc_id.startswith("_") and not doc_id.startswith((DESIGN_PREFIX, LOCAL_PREFIX)):
        raise StoreError(
            "Only reserved document ids may start with underscore.",
            status=400,
            error="bad_request",
        )
    return doc_id


def _body_of(doc: dict[str, Any]) -> dict[str, Any]:
    return {key: copy.deepcopy(value) for key, value in doc.items() if not key.startswith("_")}


class MemoryDocumentStore:
    """Revisioned document store kept in process memory.

    Thread safety:
        Each database has a threading lock around its state. No lock is
        held across an await, so coroutines never block each other.

    Example:
        >>> store = MemoryDocumentStore("widgets")
        >>> created = await store.put({"_id": "w1", "foo": "bar"})
        >>> created["rev"].startswith("1-")
        True
        >>> await store.put({"_id": "w1", "foo": "baz"})
        Traceback (most recent call last):
        ConflictError: Document update conflict
    """

    adapter = "memory"

    def __init__(self, name: str) -> None:
        if not isinstance(name, str) or not name:
            raise StoreConfigurationError("Memory database name must be a non-empty string")
        self._name = name
        self._db = _open_database(name)
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    @classmethod
    def list_databases(cls) -> list[str]:
        """Names of every in-memory database in this process."""
        with _databases_lock:
            return sorted(_databases)

    def _database(self) -> _Database:
        if self._closed:
            raise StoreError(f"Database {self._name} is closed", error="database_closed")
        if self._db.destroyed:
            raise StoreError(f"Database {self._name} was destroyed", error="database_destroyed")
        return self._db

    # Rendering

    def _render(self, record: _Record, attachments: bool = False) -> dict[str, Any]:
        if record.deleted:
            return {"_id": record.doc_id, "_rev": record.rev, "_deleted": True}
        doc = copy.deepcopy(record.body)
        doc["_id"] = record.doc_id
        doc["_rev"] = record.rev
        if record.attachments:
            doc["_attachments"] = {
                name: (att.inline() if attachments else att.stub())
                for name, att in record.attachments.items()
            }
        return doc

    def _live_records(self, db: _Database, include_design: bool = False) -> list[_Record]:
        return [
            record
            for record in db.records.values()
            if not record.deleted
            and not record.doc_id.startswith(LOCAL_PREFIX)
            and (include_design or not record.doc_id.startswith(DESIGN_PREFIX))
        ]

    def _live_record(self, db: _Database, doc_id: str) -> _Record:
        record = db.records.get(doc_id)
        if record is None:
            raise NotFoundError("missing")
        if record.deleted:
            raise NotFoundError("deleted", reason="deleted")
        return record

    # Documents

    async def get(self, doc_id: str, **options: Any) -> dict[str, Any]:
        db = self._database()
        with db.lock:
            record = self._live_record(db, doc_id)
            rev = options.get("rev")
            if rev is not None and rev != record.rev:
                raise NotFoundError("missing", reason=f"Revision {rev} is not available")
            return self._render(record, attachments=bool(options.get("attachments")))

    async def put(self, doc: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(doc, dict):
            raise StoreError("Document must be a JSON object", status=400, error="bad_request")
        doc_id = _validate_doc_id(doc.get("_id"))
        rev = doc.get("_rev")
        deleted = bool(doc.get("_deleted", False))

        db = self._database()
        with db.lock:
            record = db.records.get(doc_id)
            if record is not None and not record.deleted:
                if rev != record.rev:
                    raise ConflictError()
            elif record is not None:
                if rev is not None and rev != record.rev:
                    raise ConflictError()
            elif rev is not None:
                raise ConflictError()

            previous = record.rev if record is not None else None
            generation = revision_generation(previous) + 1
            attachments = (
                {}
                if deleted
                else self._merge_attachments(doc_id, record, doc.get("_attachments"), generation)
            )
            body = {} if deleted else _body_of(doc)
            new_rev = _new_revision(previous, body, attachments, deleted)
            updated = _Record(
                doc_id=doc_id,
                rev=new_rev,
                body=body,
                attachments=attachments,
                deleted=deleted,
                seq=record.seq if record is not None else 0,
            )
            db.commit(updated)
        db.notify()

        logger.debug("Document written", extra={"db_name": self._name, "doc_id": doc_id, "rev": new_rev})
        return {"ok": True, "id": doc_id, "rev": new_rev}

    def _merge_attachments(
        self,
        doc_id: str,
        record: _Record | None,
        incoming: Any,
        generation: int,
    ) -> dict[str, _StoredAttachment]:
        if not incoming:
            return {}
        if not isinstance(incoming, dict):
            raise StoreError("_attachments must be an object", status=400, error="bad_request")

        existing = record.attachments if record is not None and not record.deleted else {}
        merged: dict[str, _StoredAttachment] = {}
        for name, entry in incoming.items():
            if entry is None:
                continue
            if not isinstance(entry, dict):
                raise StoreError(
                    f"Attachment {name} must be an object",
                    status=400,
                    error="bad_request",
                )
            if entry.get("stub"):
                current = existing.get(name)
                if current is None:
                    raise StoreError(
                        f"Invalid attachment stub in {doc_id} for {name}",
                        status=PRECONDITION_FAILED,
                        error="missing_stub",
                    )
                merged[name] = current
                continue
            if "data" not in entry:
                raise StoreError(
                    f"Attachment {name} has neither data nor stub",
                    status=400,
                    error="bad_request",
                )
            data = decode_attachment_data(entry["data"])
            merged[name] = _StoredAttachment(
                content_type=entry.get("content_type") or "application/octet-stream",
                data=data,
                digest=attachment_digest(data),
                revpos=generation,
            )
        return merged

    async def post(self, doc: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(doc, dict):
            raise StoreError("Document must be a JSON object", status=400, error="bad_request")
        doc = dict(doc)
        if not doc.get("_id"):
            doc["_id"] = uuid.uuid4().hex
        return await self.put(doc)

    async def remove(self, doc_id: str, rev: str | None) -> dict[str, Any]:
        db = self._database()
        with db.lock:
            record = self._live_record(db, doc_id)
            if rev != record.rev:
                raise ConflictError()
            new_rev = _new_revision(record.rev, {}, {}, True)
            db.commit(
                _Record(doc_id=doc_id, rev=new_rev, body={}, deleted=True, seq=record.seq)
            )
        db.notify()

        logger.debug("Document removed", extra={"db_name": self._name, "doc_id": doc_id, "rev": new_rev})
        return {"ok": True, "id": doc_id, "rev": new_rev}

    # Attachments

    async def get_attachment(self, doc_id: str, name: str, **options: Any) -> Attachment:
        db = self._database()
        with db.lock:
            record = self._live_record(db, doc_id)
            rev = options.get("rev")
            if rev is not None and rev != record.rev:
                raise NotFoundError("missing", reason=f"Revision {rev} is not available")
            stored = record.attachments.get(name)
            if stored is None:
                raise NotFoundError("missing", reason="Document is missing attachment")
            return Attachment(stored.content_type, stored.data)

    async def put_attachment(
        self,
        doc_id: str,
        name: str,
        rev: str | None,
        data: bytes,
        content_type: str,
    ) -> dict[str, Any]:
        _validate_doc_id(doc_id)
        if not name:
            raise StoreError("Attachment name is required", status=400, error="bad_request")
        payload = decode_attachment_data(data)

        db = self._database()
        with db.lock:
            record = db.records.get(doc_id)
            if record is None or record.deleted:
                if rev is not None and (record is None or rev != record.rev):
                    raise ConflictError()
                body: dict[str, Any] = {}
                attachments: dict[str, _StoredAttachment] = {}
            else:
                if rev != record.rev:
                    raise ConflictError()
                body = record.body
                attachments = dict(record.attachments)

            previous = record.rev if record is not None else None
            attachments[name] = _StoredAttachment(
                content_type=content_type or "application/octet-stream",
                data=payload,
                digest=attachment_digest(payload),
                revpos=revision_generation(previous) + 1,
            )
            new_rev = _new_revision(previous, body, attachments, False)
            db.commit(
                _Record(
                    doc_id=doc_id,
                    rev=new_rev,
                    body=body,
                    attachments=attachments,
                    seq=record.seq if record is not None else 0,
                )
            )
        db.notify()
        return {"ok": True, "id": doc_id, "rev": new_rev}

    async def remove_attachment(self, doc_id: str, name: str, rev: str | None) -> dict[str, Any]:
        db = self._database()
        with db.lock:
            record = self._live_record(db, doc_id)
            if rev != record.rev:
                raise ConflictError()
            if name not in record.attachments:
                raise NotFoundError("missing", reason="Document is missing attachment")
            attachments = {key: att for key, att in record.attachments.items() if key != name}
            new_rev = _new_revision(record.rev, record.body, attachments, False)
            db.commit(
                _Record(
                    doc_id=doc_id,
                    rev=new_rev,
                    body=record.body,
                    attachments=attachments,
                    seq=record.seq,
                )
            )
        db.notify()
        return {"ok": True, "id": doc_id, "rev": new_rev}

    # Mango

    async def find(self, request: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(request, dict):
            raise StoreError("Find request must be an object", status=400, error="bad_request")
        selector = request.get("selector", {})

        db = self._database()
        with db.lock:
            docs = [self._render(record) for record in self._live_records(db)]

        found = [doc for doc in docs if matches(doc, selector)]
        found.sort(key=lambda doc: collation_key(doc["_id"]))
        for field_name, direction in reversed(_normalize_sort(request.get("sort"))):
            found.sort(
                key=lambda doc: collation_key(_sortable(resolve_path(doc, field_name))),
                reverse=direction == "desc",
            )

        skip = int(request.get("skip", 0))
        limit = request.get("limit")
        found = found[skip:]
        if limit is not None:
            found = found[: int(limit)]

        fields = request.get("fields")
        if fields:
            found = [{key: doc[key] for key in fields if key in doc} for doc in found]

        return {"docs": found}

    async def create_index(self, index: dict[str, Any]) -> dict[str, Any]:
        definition = index.get("index") if isinstance(index, dict) else None
        fields = definition.get("fields") if isinstance(definition, dict) else None
        if not isinstance(fields, list) or not fields:
            raise StoreError(
                "Index requires a non-empty list of fields",
                status=400,
                error="bad_request",
            )
        normalized = [
            {entry: "asc"} if isinstance(entry, str) else dict(entry) for entry in fields
        ]
        digest = hashlib.md5(json.dumps(normalized, sort_keys=True).encode("utf-8")).hexdigest()
        name = index.get("name") or f"idx-{digest}"
        ddoc = index.get("ddoc") or f"idx-{digest}"
        if not ddoc.startswith(DESIGN_PREFIX):
            ddoc = DESIGN_PREFIX + ddoc

        db = self._database()
        with db.lock:
            if name in db.indexes:
                result = "exists"
            else:
                db.indexes[name] = {
                    "ddoc": ddoc,
                    "name": name,
                    "type": index.get("type", "json"),
                    "def": {"fields": normalized},
                }
                result = "created"

        logger.debug("Index %s", result, extra={"db_name": self._name, "index": name})
        return {"result": result, "id": ddoc, "name": name}

    async def get_indexes(self) -> dict[str, Any]:
        db = self._database()
        with db.lock:
            indexes = [copy.deepcopy(ix) for ix in db.indexes.values()]
        special = {
            "ddoc": None,
            "name": "_all_docs",
            "type": "special",
            "def": {"fields": [{"_id": "asc"}]},
        }
        return {"total_rows": len(indexes) + 1, "indexes": [special, *indexes]}

    # Map/reduce

    async def query(self, view: Any, **options: Any) -> dict[str, Any]:
        db = self._database()
        with db.lock:
            definition = view if not isinstance(view, str) else self._named_view(db, view)
            rendered = {
                record.doc_id: self._render(record) for record in self._live_records(db)
            }

        try:
            return run_view(
                list(rendered.values()),
                normalize_view(definition),
                options,
                load_doc=rendered.get,
            )
        except (TypeError, ValueError) as e:
            raise ViewError(f"Invalid view result: {e}") from e

    def _named_view(self, db: _Database, view: str) -> Any:
        ddoc_name, _, view_name = view.partition("/")
        view_name = view_name or ddoc_name
        record = db.records.get(DESIGN_PREFIX + ddoc_name)
        if record is None or record.deleted:
            raise NotFoundError("missing", reason=f"Design document {ddoc_name} not found")
        views = record.body.get("views") or {}
        if view_name not in views:
            raise NotFoundError("missing_named_view", error="not_found", reason=f"View {view_name} not found")
        return views[view_name]

    # Changes and replication

    def changes(self, **options: Any) -> MemoryChangeFeed:
        self._database()
        return MemoryChangeFeed(self, **options)

    def _collect_changes(self, since: int, feed: MemoryChangeFeed) -> tuple[list[dict[str, Any]], int]:
        db = self._database()
        with db.lock:
            changes = []
            for seq in sorted(s for s in db.seq_index if s > since):
                record = db.records[db.seq_index[seq]]
                if record.doc_id.startswith(LOCAL_PREFIX):
                    continue
                if feed.doc_ids is not None and record.doc_id not in feed.doc_ids:
                    continue
                doc = self._render(record, attachments=feed.attachments)
                if feed.selector is not None and (record.deleted or not matches(doc, feed.selector)):
                    continue
                change: dict[str, Any] = {
                    "id": record.doc_id,
                    "seq": seq,
                    "changes": [{"rev": record.rev}],
                }
                if record.deleted:
                    change["deleted"] = True
                if feed.include_docs:
                    change["doc"] = doc
                changes.append(change)
            return changes, db.update_seq

    def sync(self, remote: Any, **options: Any) -> Sync:
        return Sync(self, remote, **options)

    def replicate_to(self, remote: Any, **options: Any) -> Replication:
        return Replication(self, remote, **options)

    def replicate_from(self, remote: Any, **options: Any) -> Replication:
        return Replication(remote, self, **options)

    async def write_replica(self, doc: dict[str, Any]) -> bool:
        doc_id = _validate_doc_id(doc.get("_id"))
        rev = doc.get("_rev")
        if not rev:
            raise StoreError("Replicated documents need a _rev", status=400, error="bad_request")
        deleted = bool(doc.get("_deleted", False))

        db = self._database()
        with db.lock:
            record = db.records.get(doc_id)
            if record is not None and compare_revisions(rev, record.rev) <= 0:
                return False

            attachments: dict[str, _StoredAttachment] = {}
            if not deleted:
                existing = record.attachments if record is not None else {}
                for name, entry in (doc.get("_attachments") or {}).items():
                    if entry is None:
                        continue
                    if entry.get("stub"):
                        current = existing.get(name)
                        if current is not None and current.digest == entry.get("digest"):
                            attachments[name] = current
                        continue
                    data = decode_attachment_data(entry.get("data"))
                    attachments[name] = _StoredAttachment(
                        content_type=entry.get("content_type") or "application/octet-stream",
                        data=data,
                        digest=attachment_digest(data),
                        revpos=entry.get("revpos") or revision_generation(rev),
                    )

            db.commit(
                _Record(
                    doc_id=doc_id,
                    rev=rev,
                    body={} if deleted else _body_of(doc),
                    attachments=attachments,
                    deleted=deleted,
                    seq=record.seq if record is not None else 0,
                )
            )
        db.notify()
        return True

    # Lifecycle

    async def info(self) -> dict[str, Any]:
        db = self._database()
        with db.lock:
            return {
                "db_name": self._name,
                "doc_count": len(self._live_records(db, include_design=True)),
                "update_seq": db.update_seq,
                "adapter": self.adapter,
            }

    async def close(self) -> None:
        self._closed = True
        logger.debug("Memory database handle closed", extra={"db_name": self._name})

    async def destroy(self) -> None:
        with _databases_lock:
            if _databases.get(self._name) is self._db:
                del _databases[self._name]
        with self._db.lock:
            self._db.destroyed = True
            self._db.records.clear()
            self._db.seq_index.clear()
            self._db.indexes.clear()
        self._closed = True
        logger.debug("Memory database destroyed", extra={"db_name": self._name})

    def __repr__(self) -> str:
        return f"MemoryDocumentStore(name={self._name!r})"


def _normalize_sort(sort: Any) -> list[tuple[str, str]]:
    if not sort:
        return []
    if not isinstance(sort, list):
        raise StoreError("sort must be an array", status=400, error="bad_request")
    normalized = []
    for entry in sort:
        if isinstance(entry, str):
            normalized.append((entry, "asc"))
        elif isinstance(entry, dict) and len(entry) == 1:
            ((field_name, direction),) = entry.items()
            normalized.append((field_name, str(direction).lower()))
        else:
            raise StoreError(f"Invalid sort entry: {entry!r}", status=400, error="bad_request")
    return normalized


def _sortable(value: Any) -> Any:
    # Missing fields sort first, like null
    return None if not isinstance(value, (type(None), bool, int, float, str, list, dict)) else value


class MemoryChangeFeed(ChangeFeed):
    """Change feed over an in-memory database.

    Writes on the database wake the feed through an asyncio.Event owned
    by the feed, so it only ever touches the loop it runs on.
    """

    def __init__(self, store: MemoryDocumentStore, **options: Any) -> None:
        super().__init__(**options)
        self._store = store
        self._wakeup: asyncio.Event | None = None
        # "now" is the moment the feed was opened, not when its task first runs
        if self.since == "now":
            self.since = self.last_seq = store._database().update_seq
        self._start()

    def _notify(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _resolve_since(self, db: _Database) -> int:
        if self.since == "now":
            return db.update_seq
        try:
            return int(self.since)
        except (TypeError, ValueError):
            raise StoreError(f"Invalid since value: {self.since!r}", status=400, error="bad_request")

    async def _run(self) -> dict[str, Any]:
        db = self._store._database()
        self._wakeup = asyncio.Event()
        since = self._resolve_since(db)
        self.last_seq = since
        results: list[dict[str, Any]] = []
        emitted = 0

        db.feeds.add(self)
        try:
            while True:
                self._wakeup.clear()
                batch, update_seq = self._store._collect_changes(since, self)
                for change in batch:
                    await self.emit("change", change)
                    emitted += 1
                    self.last_seq = change["seq"]
                    if not self.live:
                        results.append(change)
                    if self.limit is not None and emitted >= self.limit:
                        return {"results": results, "last_seq": self.last_seq}
                since = max(since, update_seq)
                self.last_seq = since

                if not self.live:
                    return {"results": results, "last_seq": since}
                await self._wakeup.wait()
        finally:
            db.feeds.discard(self)

"""
Integration tests for CollectionGateway over in-memory stores.

Tests cover:
- Gateway construction and database lifecycle
- Index and map/reduce query provisioning
- post/put/get/find/query/delete
- Error surfacing (validation, internal, replication on_error)
- close() cancelling feeds and replications
"""

import asyncio

import pytest

from docmodel import (
    BASE_SCHEMA,
    ChangeObservable,
    CollectionGateway,
    Envelope,
    InternalError,
    InvalidConfigurationError,
    JwsEnvelope,
    NamedQuery,
    OperationError,
    Persistable,
    PersistentEntity,
    Replicable,
    SchemaValidator,
    Settings,
    ValidationError,
    field,
)
from docstore import MemoryDocumentStore, StoreError


class Widgets(PersistentEntity):
    schema = BASE_SCHEMA.extend(
        field("foo", "str", required=True),
        field("size", "int"),
        name="widget",
    )


def by_foo(doc):
    if "foo" in doc:
        yield doc["foo"], doc.get("size")


def make_gateway(**kwargs):
    kwargs.setdefault("settings", Settings())
    return CollectionGateway(Widgets, **kwargs)


class TestConstruction:
    """Tests for gateway construction."""

    def test_rejects_non_entities(self):
        """Only PersistentEntity subclasses can be managed."""
        with pytest.raises(InvalidConfigurationError):
            CollectionGateway(dict)

    def test_rejects_abstract_entities(self):
        """Abstract entity classes are rejected."""
        class Base(PersistentEntity, abstract=True):
            pass

        with pytest.raises(InvalidConfigurationError):
            CollectionGateway(Base)

    def test_rejects_bad_query_declarations(self):
        """Queries must be NamedQuery or {"name", "query"} mappings."""
        with pytest.raises(InvalidConfigurationError):
            make_gateway(queries=[("by_foo", by_foo)])

    def test_name(self):
        """The gateway is named after its entity class."""
        assert make_gateway().name == "Widgets"


class TestDatabaseLifecycle:
    """Tests for set_database() and close()."""

    @pytest.mark.asyncio
    async def test_operations_need_database(self):
        """Every operation fails before a database is set."""
        gateway = make_gateway()
        assert not gateway.connected
        with pytest.raises(OperationError):
            await gateway.get("w1")
        with pytest.raises(OperationError):
            gateway.set_changes()

    @pytest.mark.asyncio
    async def test_set_database_by_name(self, db_name):
        """A bare name opens an in-memory database."""
        gateway = make_gateway()
        assert await gateway.set_database(db_name) == []
        assert gateway.connected
        assert gateway.database.name == db_name
        await gateway.close()

    @pytest.mark.asyncio
    async def test_invalid_options(self):
        """Unknown option keys raise before anything is opened."""
        gateway = make_gateway()
        with pytest.raises(InvalidConfigurationError):
            await gateway.set_database({"name": "widgets", "bogus": True})
        assert not gateway.connected

    @pytest.mark.asyncio
    async def test_replacing_database_closes_previous(self, spy, remote_name):
        """Setting a new database closes the old handle."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        await gateway.set_database(remote_name)
        assert spy.calls["close"] == 1
        assert spy.closed
        assert gateway.database.name == remote_name
        await gateway.close()

    @pytest.mark.asyncio
    async def test_closed_gateway(self, spy):
        """A closed gateway refuses further operations."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        await gateway.close()
        assert not gateway.connected
        with pytest.raises(OperationError):
            await gateway.post({"foo": "bar"})

    @pytest.mark.asyncio
    async def test_close_failure(self, spy):
        """A failing store close surfaces as InternalError."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        spy.failures["close"] = StoreError("socket closed", status=500)
        with pytest.raises(InternalError) as exc_info:
            await gateway.close()
        assert exc_info.value.status == 500
        assert not gateway.connected

    @pytest.mark.asyncio
    async def test_async_context_manager(self, spy):
        """Leaving the context closes the database."""
        async with make_gateway() as gateway:
            await gateway.set_database(spy)
            await gateway.post({"foo": "bar"})
        assert spy.calls["close"] == 1


class TestProvisioning:
    """Tests for indexes and queries provisioned with the database."""

    @pytest.mark.asyncio
    async def test_indexes_and_queries(self, spy):
        """Declared indexes and queries are provisioned on connect."""
        gateway = make_gateway(
            indexes=[{"index": {"fields": ["foo"]}}],
            queries=[NamedQuery("by_foo", by_foo), {"name": "sizes", "query": {"map": by_foo, "reduce": "_sum"}}],
        )
        results = await gateway.set_database(spy)

        assert results[0]["result"] == "created"
        assert results[1:] == [{"result": "created"}, {"result": "created"}]
        names = [index["name"] for index in await gateway.get_indexes()]
        assert "_all_docs" in names
        assert len(names) == 2

    @pytest.mark.asyncio
    async def test_reprovisioning_updates_queries(self, db_name):
        """Reconnecting updates existing design documents."""
        first = make_gateway(queries=[NamedQuery("by_foo", by_foo)])
        await first.set_database(db_name)
        await first.close()

        second = make_gateway(
            indexes=[{"index": {"fields": ["foo"]}}],
            queries=[NamedQuery("by_foo", by_foo)],
        )
        index_result, query_result = await second.set_database(db_name)
        assert index_result["result"] == "created"
        assert query_result == {"result": "updated"}

        # Declared indexes are idempotent
        assert (await second.create_index({"index": {"fields": ["foo"]}}))["result"] == "exists"
        await second.close()

    @pytest.mark.asyncio
    async def test_index_failure(self, spy):
        """A bad index declaration raises and keeps the connection."""
        gateway = make_gateway(indexes=[{"index": {}}])
        with pytest.raises(InvalidConfigurationError) as exc_info:
            await gateway.set_database(spy)
        assert "index configuration invalid" in str(exc_info.value)
        # The connection stays open for inspection
        assert gateway.connected

    @pytest.mark.asyncio
    async def test_query_failure(self, spy):
        """A bad query declaration raises and keeps the connection."""
        gateway = make_gateway(queries=[{"name": "broken", "query": 42}])
        with pytest.raises(InvalidConfigurationError) as exc_info:
            await gateway.set_database(spy)
        assert "map-reduce query configuration invalid" in str(exc_info.value)
        assert gateway.connected


class TestDataOperations:
    """Tests for document operations."""

    @pytest.mark.asyncio
    async def test_post(self, spy):
        """Post assigns an id and a first revision."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        widget = await gateway.post({"foo": "bar"})
        assert isinstance(widget, Widgets)
        assert len(widget.id) == 32
        assert widget.rev.startswith("1-")
        assert (await spy.get(widget.id))["foo"] == "bar"

    @pytest.mark.asyncio
    async def test_post_invalid(self, spy):
        """Invalid data never reaches the store."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        with pytest.raises(ValidationError) as exc_info:
            await gateway.post({})
        assert exc_info.value.errors == ["Field 'foo' is required"]
        assert spy.calls["post"] == 0

    @pytest.mark.asyncio
    async def test_get(self, spy):
        """Get returns an entity, or None for a missing id."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        created = await gateway.post({"foo": "bar"})
        loaded = await gateway.get(created.id)
        assert loaded.rev == created.rev
        assert loaded.foo == "bar"
        assert await gateway.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_failure(self, spy):
        """Store failures other than not-found are wrapped."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        spy.failures["get"] = StoreError("timeout", error="transport_error")
        with pytest.raises(InternalError) as exc_info:
            await gateway.get("w1")
        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_put_requires_id(self, spy):
        """Put without an id is a validation error."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        with pytest.raises(ValidationError):
            await gateway.put({"foo": "bar"})
        assert spy.calls["put"] == 0

    @pytest.mark.asyncio
    async def test_put_overwrites_without_revision(self, spy):
        """Put of an existing id without a revision overwrites it."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        await gateway.put({"_id": "w1", "foo": "bar"})
        updated = await gateway.put({"_id": "w1", "foo": "baz"})
        assert updated.rev.startswith("2-")
        assert (await gateway.get("w1")).foo == "baz"

    @pytest.mark.asyncio
    async def test_find(self, spy):
        """Find honours selectors and sort, defaulting to match-all."""
        gateway = make_gateway(indexes=[{"index": {"fields": ["size"]}}])
        await gateway.set_database(spy)
        for size in (3, 1, 2):
            await gateway.post({"foo": "bar", "size": size})
        await gateway.post({"foo": "other", "size": 9})

        found = await gateway.find({"selector": {"foo": "bar"}, "sort": ["size"]})
        assert [widget.size for widget in found] == [1, 2, 3]
        assert len(await gateway.find()) == 4

    @pytest.mark.asyncio
    async def test_find_null_selector(self, spy):
        """An explicit None selector matches everything."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        await gateway.post({"foo": "a"})
        await gateway.post({"foo": "b"})

        found = await gateway.find({"selector": None, "sort": ["foo"]})
        assert [widget.foo for widget in found] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_find_malformed_selector(self, spy):
        """Unknown operators surface as a 400 InternalError."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        with pytest.raises(InternalError) as exc_info:
            await gateway.find({"selector": {"foo": {"$near": 1}}})
        assert exc_info.value.status == 400


class TestDelete:
    """Tests for delete()."""

    @pytest.mark.asyncio
    async def test_delete_by_id_fetches_revision(self, spy):
        """Deleting by id fetches the revision first."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        widget = await gateway.post({"foo": "bar"})
        spy.calls.clear()

        assert await gateway.delete(widget.id) is True
        assert spy.calls["get"] == 1
        assert spy.calls["remove"] == 1
        assert await gateway.get(widget.id) is None

    @pytest.mark.asyncio
    async def test_delete_by_document(self, spy):
        """Deleting with a revision skips the fetch."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        widget = await gateway.post({"foo": "bar"})
        spy.calls.clear()

        assert await gateway.delete({"_id": widget.id, "_rev": widget.rev})
        assert spy.calls["get"] == 0

    @pytest.mark.asyncio
    async def test_delete_entity(self, spy):
        """Entities can be deleted directly."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        widget = await gateway.post({"foo": "bar"})
        assert await gateway.delete(widget)

    @pytest.mark.asyncio
    async def test_delete_missing(self, spy):
        """Deleting a missing id returns False."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        assert await gateway.delete("missing") is False
        assert spy.calls["remove"] == 0

    @pytest.mark.asyncio
    async def test_delete_stale_revision_retries(self, spy):
        """A stale revision is refreshed and the delete retried."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        widget = await gateway.post({"foo": "bar"})
        stale = widget.rev
        widget["foo"] = "baz"
        await widget.save()

        assert await gateway.delete({"_id": widget.id, "_rev": stale})
        assert await gateway.get(widget.id) is None

    @pytest.mark.asyncio
    async def test_delete_needs_id(self, spy):
        """Data without an id cannot be deleted."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        with pytest.raises(OperationError):
            await gateway.delete({"foo": "bar"})
        with pytest.raises(OperationError):
            await gateway.delete(42)


class TestQueries:
    """Tests for create_query() and query()."""

    @pytest.mark.asyncio
    async def test_create_then_update(self, spy):
        """create_query reports created, then updated."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        assert await gateway.create_query("by_foo", by_foo) == {"result": "created"}
        assert await gateway.create_query("by_foo", {"map": by_foo, "reduce": "_count"}) == {"result": "updated"}

        design = await spy.get("_design/by_foo")
        assert design["views"]["by_foo"]["reduce"] == "_count"

    @pytest.mark.asyncio
    async def test_create_query_needs_map(self, spy):
        """A query definition must have a map function."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        with pytest.raises(InvalidConfigurationError):
            await gateway.create_query("broken", {"reduce": "_count"})

    @pytest.mark.asyncio
    async def test_query_returns_entities(self, spy):
        """Query rows become entities of the collection."""
        gateway = make_gateway(queries=[NamedQuery("by_foo", by_foo)])
        await gateway.set_database(spy)
        await gateway.post({"_id": "a", "foo": "red"})
        await gateway.post({"_id": "b", "foo": "blue"})
        await gateway.post({"_id": "c", "foo": "red"})

        widgets = await gateway.query("by_foo", key="red")
        assert [widget.id for widget in widgets] == ["a", "c"]
        assert all(isinstance(widget, Widgets) for widget in widgets)

        everything = await gateway.query("by_foo")
        assert [widget.foo for widget in everything] == ["blue", "red", "red"]

    @pytest.mark.asyncio
    async def test_design_documents_hidden_from_find(self, spy):
        """Design documents are not returned by find."""
        gateway = make_gateway(queries=[NamedQuery("by_foo", by_foo)])
        await gateway.set_database(spy)
        await gateway.post({"foo": "bar"})
        assert len(await gateway.find()) == 1

    @pytest.mark.asyncio
    async def test_unknown_query(self, spy):
        """Querying an unknown view is a 404."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        with pytest.raises(InternalError) as exc_info:
            await gateway.query("nope")
        assert exc_info.value.status == 404


class TestHandles:
    """Tests for error routing and cancellation of feeds and replications."""

    @pytest.mark.asyncio
    async def test_replication_error_reaches_on_error(self, spy, flaky_remote):
        """Replication failures reach the on_error handler."""
        errors = []
        gateway = make_gateway(on_error=errors.append)
        await gateway.set_database(spy)
        await gateway.post({"foo": "bar"})

        replication = gateway.replicate_to(flaky_remote, {"live": False, "retry": False})
        with pytest.raises(StoreError):
            await replication.wait()

        assert len(errors) == 1
        assert isinstance(errors[0], InternalError)
        assert errors[0].status == 503
        await gateway.close()

    @pytest.mark.asyncio
    async def test_async_error_handler(self, spy, flaky_remote):
        """Async on_error handlers are awaited."""
        received = asyncio.Event()

        async def on_error(error):
            received.set()

        gateway = make_gateway(on_error=on_error)
        await gateway.set_database(spy)
        await gateway.post({"foo": "bar"})
        gateway.replicate_to(flaky_remote, {"live": False, "retry": False})

        await asyncio.wait_for(received.wait(), timeout=2)
        await gateway.close()

    @pytest.mark.asyncio
    async def test_bad_replication_options(self, spy, remote_name):
        """Invalid replication options raise immediately."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        with pytest.raises(InvalidConfigurationError):
            gateway.replicate_to(remote_name, {"continuous": True})
        with pytest.raises(InvalidConfigurationError):
            gateway.set_sync({"name": remote_name, "timeout": -1})
        await gateway.close()

    @pytest.mark.asyncio
    async def test_close_cancels_handles(self, spy, remote_name):
        """Close cancels feeds and replications and closes opened remotes."""
        gateway = make_gateway()
        await gateway.set_database(spy)
        feed = gateway.set_changes()
        sync = gateway.set_sync(remote_name)
        remote = gateway._remotes[0]

        await gateway.close()

        assert feed.cancelled and feed.done
        assert sync.cancelled and sync.done
        assert gateway.changes == []
        assert gateway.replications == []
        assert remote.closed
        assert spy.closed

    @pytest.mark.asyncio
    async def test_remote_store_instances_left_open(self, spy, remote_name):
        """Store instances passed in by the caller stay open."""
        remote = MemoryDocumentStore(remote_name)
        gateway = make_gateway()
        await gateway.set_database(spy)
        gateway.replicate_to(remote, {"live": False})
        await gateway.close()
        assert not remote.closed


class TestCapabilities:
    """Gateways, entities, schemas and envelopes satisfy their protocols."""

    def test_protocols(self):
        """Capability protocols are satisfied structurally."""
        gateway = make_gateway()
        assert isinstance(gateway, Replicable)
        assert isinstance(gateway, ChangeObservable)
        assert isinstance(gateway.entity({"foo": "bar"}), Persistable)
        assert isinstance(Widgets.schema, SchemaValidator)
        assert isinstance(JwsEnvelope("a-shared-secret-of-at-least-32-bytes!"), Envelope)
        assert not isinstance(gateway, Persistable)

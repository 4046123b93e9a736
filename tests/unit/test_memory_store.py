"""
Unit tests for the in-memory revisioned document store.

Tests cover:
- Revision assignment and compare-and-swap conflicts
- Tombstones and re-creation
- Attachments, digests and stubs
- Mango find, sort and projection
- Indexes and design-document views
- Replica writes
- Lifecycle (shared databases, close, destroy)
"""

import pytest

from docstore import (
    ConflictError,
    DocumentStore,
    MemoryDocumentStore,
    NotFoundError,
    StoreError,
    attachment_digest,
)
from docstore.views import ViewError


class TestDocuments:
    """Tests for get/put/post/remove."""

    def test_implements_protocol(self, store):
        assert isinstance(store, DocumentStore)

    @pytest.mark.asyncio
    async def test_put_assigns_first_revision(self, store):
        """First write gets a 1- revision."""
        result = await store.put({"_id": "w1", "foo": "bar"})
        assert result["ok"] is True
        assert result["id"] == "w1"
        assert result["rev"].startswith("1-")

    @pytest.mark.asyncio
    async def test_get_returns_document(self, store):
        created = await store.put({"_id": "w1", "foo": "bar"})
        doc = await store.get("w1")
        assert doc == {"_id": "w1", "_rev": created["rev"], "foo": "bar"}

    @pytest.mark.asyncio
    async def test_update_requires_current_revision(self, store):
        """Stale or missing revisions conflict."""
        first = await store.put({"_id": "w1", "foo": "bar"})
        second = await store.put({"_id": "w1", "_rev": first["rev"], "foo": "baz"})
        assert second["rev"].startswith("2-")

        with pytest.raises(ConflictError) as exc_info:
            await store.put({"_id": "w1", "_rev": first["rev"], "foo": "qux"})
        assert exc_info.value.status == 409

        with pytest.raises(ConflictError):
            await store.put({"_id": "w1", "foo": "qux"})

    @pytest.mark.asyncio
    async def test_rev_for_missing_doc_conflicts(self, store):
        with pytest.raises(ConflictError):
            await store.put({"_id": "new", "_rev": "1-abc", "foo": "bar"})

    @pytest.mark.asyncio
    async def test_revisions_differ_per_content(self, store):
        a = await store.put({"_id": "a", "foo": "bar"})
        b = await store.put({"_id": "b", "foo": "baz"})
        assert a["rev"] != b["rev"]

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            await store.get("nope")
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, store):
        """Mutating a fetched document does not touch the store."""
        await store.put({"_id": "w1", "tags": ["a"]})
        doc = await store.get("w1")
        doc["tags"].append("b")
        assert (await store.get("w1"))["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_post_generates_id(self, store):
        result = await store.post({"foo": "bar"})
        assert len(result["id"]) == 32
        assert (await store.get(result["id"]))["foo"] == "bar"

    @pytest.mark.asyncio
    async def test_missing_id(self, store):
        with pytest.raises(StoreError) as exc_info:
            await store.put({"foo": "bar"})
        assert exc_info.value.status == 412

    @pytest.mark.asyncio
    async def test_reserved_id_prefix(self, store):
        with pytest.raises(StoreError) as exc_info:
            await store.put({"_id": "_secret"})
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_remove_leaves_tombstone(self, store):
        """Removed documents read as deleted; re-creating needs no rev."""
        created = await store.put({"_id": "w1", "foo": "bar"})
        removed = await store.remove("w1", created["rev"])
        assert removed["ok"]
        assert removed["rev"].startswith("2-")

        with pytest.raises(NotFoundError) as exc_info:
            await store.get("w1")
        assert exc_info.value.reason == "deleted"

        recreated = await store.put({"_id": "w1", "foo": "again"})
        assert recreated["rev"].startswith("3-")

    @pytest.mark.asyncio
    async def test_remove_stale_rev(self, store):
        created = await store.put({"_id": "w1"})
        await store.put({"_id": "w1", "_rev": created["rev"], "v": 2})
        with pytest.raises(ConflictError):
            await store.remove("w1", created["rev"])

    @pytest.mark.asyncio
    async def test_remove_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.remove("nope", "1-abc")

    @pytest.mark.asyncio
    async def test_put_deleted_flag(self, store):
        """_deleted: true through put acts like remove."""
        created = await store.put({"_id": "w1", "foo": "bar"})
        await store.put({"_id": "w1", "_rev": created["rev"], "_deleted": True})
        with pytest.raises(NotFoundError):
            await store.get("w1")


class TestAttachments:
    """Tests for attachment operations."""

    @pytest.mark.asyncio
    async def test_put_and_get_attachment(self, store):
        created = await store.put({"_id": "w1"})
        result = await store.put_attachment("w1", "a.txt", created["rev"], b"hello", "text/plain")
        assert result["rev"].startswith("2-")

        attachment = await store.get_attachment("w1", "a.txt")
        assert attachment.content_type == "text/plain"
        assert attachment.data == b"hello"
        assert attachment.digest == attachment_digest(b"hello")

    @pytest.mark.asyncio
    async def test_put_attachment_creates_document(self, store):
        """A None revision creates the document."""
        result = await store.put_attachment("new", "a.bin", None, b"\x00\x01", "application/octet-stream")
        assert result["rev"].startswith("1-")
        doc = await store.get("new")
        assert doc["_attachments"]["a.bin"]["stub"] is True
        assert doc["_attachments"]["a.bin"]["length"] == 2

    @pytest.mark.asyncio
    async def test_put_attachment_stale_rev(self, store):
        created = await store.put({"_id": "w1"})
        await store.put({"_id": "w1", "_rev": created["rev"], "v": 2})
        with pytest.raises(ConflictError):
            await store.put_attachment("w1", "a.txt", created["rev"], b"x", "text/plain")

    @pytest.mark.asyncio
    async def test_inline_attachments_and_stubs(self, store):
        """Stubs keep stored data across updates."""
        created = await store.put(
            {
                "_id": "w1",
                "_attachments": {"a.txt": {"content_type": "text/plain", "data": "aGVsbG8="}},
            }
        )
        doc = await store.get("w1")
        stub = doc["_attachments"]["a.txt"]
        assert stub["stub"] is True
        assert stub["revpos"] == 1
        assert stub["digest"] == attachment_digest(b"hello")

        doc["foo"] = "bar"
        await store.put(doc)
        assert (await store.get_attachment("w1", "a.txt")).data == b"hello"
        assert created["rev"] != (await store.get("w1"))["_rev"]

    @pytest.mark.asyncio
    async def test_get_with_inline_attachments(self, store):
        await store.put({"_id": "w1", "_attachments": {"a": {"content_type": "text/plain", "data": b"hi"}}})
        doc = await store.get("w1", attachments=True)
        assert doc["_attachments"]["a"]["data"] == "aGk="

    @pytest.mark.asyncio
    async def test_missing_stub(self, store):
        with pytest.raises(StoreError) as exc_info:
            await store.put({"_id": "w1", "_attachments": {"a": {"stub": True, "content_type": "text/plain"}}})
        assert exc_info.value.status == 412

    @pytest.mark.asyncio
    async def test_put_without_attachments_drops_them(self, store):
        created = await store.put_attachment("w1", "a", None, b"x", "text/plain")
        await store.put({"_id": "w1", "_rev": created["rev"], "foo": "bar"})
        with pytest.raises(NotFoundError):
            await store.get_attachment("w1", "a")

    @pytest.mark.asyncio
    async def test_remove_attachment(self, store):
        created = await store.put_attachment("w1", "a", None, b"x", "text/plain")
        result = await store.remove_attachment("w1", "a", created["rev"])
        assert result["rev"].startswith("2-")
        assert "_attachments" not in await store.get("w1")

    @pytest.mark.asyncio
    async def test_remove_missing_attachment(self, store):
        created = await store.put({"_id": "w1"})
        with pytest.raises(NotFoundError):
            await store.remove_attachment("w1", "a", created["rev"])

    @pytest.mark.asyncio
    async def test_get_missing_attachment(self, store):
        await store.put({"_id": "w1"})
        with pytest.raises(NotFoundError):
            await store.get_attachment("w1", "nope")

    @pytest.mark.asyncio
    async def test_bad_attachment_data(self, store):
        with pytest.raises(StoreError) as exc_info:
            await store.put_attachment("w1", "a", None, 12, "text/plain")
        assert exc_info.value.status == 400


class TestFind:
    """Tests for Mango find."""

    @pytest.mark.asyncio
    async def test_find_selector(self, store):
        await store.put({"_id": "a", "color": "red"})
        await store.put({"_id": "b", "color": "blue"})
        result = await store.find({"selector": {"color": "red"}})
        assert [d["_id"] for d in result["docs"]] == ["a"]

    @pytest.mark.asyncio
    async def test_find_excludes_design_and_deleted(self, store):
        await store.put({"_id": "_design/q", "views": {}})
        created = await store.put({"_id": "gone"})
        await store.remove("gone", created["rev"])
        await store.put({"_id": "kept"})
        result = await store.find({"selector": {}})
        assert [d["_id"] for d in result["docs"]] == ["kept"]

    @pytest.mark.asyncio
    async def test_find_sort_skip_limit_fields(self, store):
        for i, color in enumerate(["red", "blue", "red", "green"]):
            await store.put({"_id": f"w{i}", "color": color, "size": i})
        result = await store.find(
            {
                "selector": {"size": {"$gte": 0}},
                "sort": [{"size": "desc"}],
                "skip": 1,
                "limit": 2,
                "fields": ["_id", "size"],
            }
        )
        assert result["docs"] == [{"_id": "w2", "size": 2}, {"_id": "w1", "size": 1}]

    @pytest.mark.asyncio
    async def test_find_multi_sort(self, store):
        for i, color in enumerate(["red", "blue", "red", "green"]):
            await store.put({"_id": f"w{i}", "color": color, "size": i})
        result = await store.find({"selector": {}, "sort": ["color", {"size": "desc"}]})
        assert [d["_id"] for d in result["docs"]] == ["w1", "w3", "w2", "w0"]

    @pytest.mark.asyncio
    async def test_find_bad_sort(self, store):
        with pytest.raises(StoreError):
            await store.find({"selector": {}, "sort": "color"})


class TestIndexes:
    """Tests for index bookkeeping."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, store):
        created = await store.create_index({"index": {"fields": ["color"]}, "name": "by-color"})
        assert created["result"] == "created"
        assert created["name"] == "by-color"
        assert created["id"].startswith("_design/")

        again = await store.create_index({"index": {"fields": ["color"]}, "name": "by-color"})
        assert again["result"] == "exists"

        indexes = await store.get_indexes()
        assert indexes["total_rows"] == 2
        assert indexes["indexes"][0]["name"] == "_all_docs"
        assert indexes["indexes"][1]["def"] == {"fields": [{"color": "asc"}]}

    @pytest.mark.asyncio
    async def test_generated_name(self, store):
        created = await store.create_index({"index": {"fields": ["a", "b"]}})
        assert created["name"].startswith("idx-")

    @pytest.mark.asyncio
    async def test_invalid_index(self, store):
        with pytest.raises(StoreError) as exc_info:
            await store.create_index({"index": {}})
        assert exc_info.value.status == 400


def by_color(doc):
    if "color" in doc:
        yield doc["color"], 1


class TestQuery:
    """Tests for design-document views."""

    @pytest.mark.asyncio
    async def test_named_view(self, store):
        await store.put({"_id": "_design/colors", "views": {"colors": {"map": by_color, "reduce": "_count"}}})
        await store.put({"_id": "a", "color": "red"})
        await store.put({"_id": "b", "color": "blue"})

        reduced = await store.query("colors", group=True)
        assert reduced["rows"] == [{"key": "blue", "value": 1}, {"key": "red", "value": 1}]

        mapped = await store.query("colors/colors", reduce=False, include_docs=True)
        assert [row["doc"]["_id"] for row in mapped["rows"]] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_temporary_view(self, store):
        await store.put({"_id": "a", "color": "red"})
        result = await store.query(by_color)
        assert result["rows"] == [{"id": "a", "key": "red", "value": 1}]

    @pytest.mark.asyncio
    async def test_missing_design_doc(self, store):
        with pytest.raises(NotFoundError):
            await store.query("nope")

    @pytest.mark.asyncio
    async def test_missing_view(self, store):
        await store.put({"_id": "_design/colors", "views": {}})
        with pytest.raises(NotFoundError):
            await store.query("colors/other")

    @pytest.mark.asyncio
    async def test_bad_emit(self, store):
        def broken(doc):
            return [("only-key",)]

        await store.put({"_id": "a"})
        with pytest.raises(ViewError):
            await store.query(broken)


class TestReplicaWrites:
    """Tests for write_replica."""

    @pytest.mark.asyncio
    async def test_keeps_incoming_revision(self, store):
        assert await store.write_replica({"_id": "w1", "_rev": "3-abc", "foo": "bar"})
        assert (await store.get("w1"))["_rev"] == "3-abc"

    @pytest.mark.asyncio
    async def test_higher_revision_wins(self, store):
        await store.write_replica({"_id": "w1", "_rev": "2-bbb", "v": 2})
        assert not await store.write_replica({"_id": "w1", "_rev": "1-zzz", "v": 1})
        assert not await store.write_replica({"_id": "w1", "_rev": "2-aaa", "v": 1})
        assert await store.write_replica({"_id": "w1", "_rev": "2-ccc", "v": 3})
        assert (await store.get("w1"))["v"] == 3

    @pytest.mark.asyncio
    async def test_replicated_deletion(self, store):
        await store.write_replica({"_id": "w1", "_rev": "1-a", "v": 1})
        await store.write_replica({"_id": "w1", "_rev": "2-b", "_deleted": True})
        with pytest.raises(NotFoundError):
            await store.get("w1")

    @pytest.mark.asyncio
    async def test_requires_revision(self, store):
        with pytest.raises(StoreError):
            await store.write_replica({"_id": "w1"})


class TestLifecycle:
    """Tests for shared databases, close and destroy."""

    @pytest.mark.asyncio
    async def test_handles_share_database(self, db_name):
        first = MemoryDocumentStore(db_name)
        second = MemoryDocumentStore(db_name)
        await first.put({"_id": "w1"})
        assert (await second.get("w1"))["_id"] == "w1"
        assert db_name in MemoryDocumentStore.list_databases()

    @pytest.mark.asyncio
    async def test_info(self, store, db_name):
        await store.put({"_id": "w1"})
        await store.put({"_id": "w2"})
        info = await store.info()
        assert info == {"db_name": db_name, "doc_count": 2, "update_seq": 2, "adapter": "memory"}

    @pytest.mark.asyncio
    async def test_closed_handle(self, store):
        await store.close()
        assert store.closed
        with pytest.raises(StoreError, match="closed"):
            await store.get("w1")

    @pytest.mark.asyncio
    async def test_destroy(self, db_name):
        store = MemoryDocumentStore(db_name)
        other = MemoryDocumentStore(db_name)
        await store.put({"_id": "w1"})
        await store.destroy()

        assert db_name not in MemoryDocumentStore.list_databases()
        with pytest.raises(StoreError):
            await other.get("w1")
        with pytest.raises(NotFoundError):
            await MemoryDocumentStore(db_name).get("w1")

    def test_name_required(self):
        with pytest.raises(ValueError):
            MemoryDocumentStore("")

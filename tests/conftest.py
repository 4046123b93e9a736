"""
Shared fixtures for docmodel and docstore tests.

SpyStore wraps the in-memory store so tests can count store calls and
inject conflicts, failures or racing writes in front of any operation.
FlakyStore fails replicated writes to exercise retry and error routing.
"""

import uuid
from collections import Counter

import pytest

from docstore import ConflictError, MemoryDocumentStore, StoreError
from docstore import memory as memory_module


class SpyStore(MemoryDocumentStore):
    """In-memory store that records calls and injects faults.

    Attributes:
        calls: Number of calls per method name
        conflicts: Forced conflicts still to raise per method name
        failures: Exception to raise per method name
        before: Async hooks run before a method (e.g. a racing writer)
    """

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.calls: Counter = Counter()
        self.conflicts: Counter = Counter()
        self.failures: dict = {}
        self.before: dict = {}

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        hook = self.before.pop(method, None)
        if hook is not None:
            await hook()
        if method in self.failures:
            raise self.failures[method]
        if self.conflicts[method] > 0:
            self.conflicts[method] -= 1
            raise ConflictError()

    async def get(self, doc_id, **options):
        await self._enter("get")
        return await super().get(doc_id, **options)

    async def put(self, doc):
        await self._enter("put")
        return await super().put(doc)

    async def post(self, doc):
        await self._enter("post")
        # Bypass put() so post is counted once
        doc = dict(doc)
        doc.setdefault("_id", uuid.uuid4().hex)
        return await MemoryDocumentStore.put(self, doc)

    async def remove(self, doc_id, rev):
        await self._enter("remove")
        return await super().remove(doc_id, rev)

    async def get_attachment(self, doc_id, name, **options):
        await self._enter("get_attachment")
        return await super().get_attachment(doc_id, name, **options)

    async def put_attachment(self, doc_id, name, rev, data, content_type):
        await self._enter("put_attachment")
        return await super().put_attachment(doc_id, name, rev, data, content_type)

    async def remove_attachment(self, doc_id, name, rev):
        await self._enter("remove_attachment")
        return await super().remove_attachment(doc_id, name, rev)

    async def find(self, request):
        await self._enter("find")
        return await super().find(request)

    async def query(self, view, **options):
        await self._enter("query")
        return await super().query(view, **options)

    async def create_index(self, index):
        await self._enter("create_index")
        return await super().create_index(index)

    async def get_indexes(self):
        await self._enter("get_indexes")
        return await super().get_indexes()

    async def close(self):
        await self._enter("close")
        await super().close()


class FlakyStore(MemoryDocumentStore):
    """In-memory replication target whose first writes fail."""

    def __init__(self, name: str, failures: int = 1) -> None:
        super().__init__(name)
        self.failures = failures

    async def write_replica(self, doc):
        if self.failures > 0:
            self.failures -= 1
            raise StoreError("Service unavailable", status=503, error="unavailable")
        return await super().write_replica(doc)


@pytest.fixture
def db_name():
    """Unique in-memory database name, dropped after the test."""
    name = f"test-{uuid.uuid4().hex}"
    yield name
    with memory_module._databases_lock:
        memory_module._databases.pop(name, None)


@pytest.fixture
def remote_name():
    """Second unique database name for replication tests."""
    name = f"remote-{uuid.uuid4().hex}"
    yield name
    with memory_module._databases_lock:
        memory_module._databases.pop(name, None)


@pytest.fixture
def store(db_name):
    """Plain in-memory store."""
    return MemoryDocumentStore(db_name)


@pytest.fixture
def spy(db_name):
    """Spy store on the test database."""
    return SpyStore(db_name)


@pytest.fixture
def flaky_remote(remote_name):
    """Replication target on the remote database failing its first write."""
    return FlakyStore(remote_name)

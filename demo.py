#!/usr/bin/env python3
"""
docmodel Demo - Shows saves, conflict retries, queries and sync.

This demo runs entirely on in-memory databases, so no CouchDB server
is needed.
"""

import asyncio
import json

from docmodel import (
    BASE_SCHEMA,
    CollectionGateway,
    NamedQuery,
    PersistentEntity,
    Settings,
    ValidationError,
    field,
    setup_logging,
)
from docstore import MemoryDocumentStore


class Tasks(PersistentEntity):
    schema = BASE_SCHEMA.extend(
        field("title", "str", required=True),
        field("status", "enum", required=True, enum_values=("todo", "in_progress", "done")),
        field("priority", "int"),
        name="task",
    )


def by_status(doc):
    if "status" in doc:
        yield doc["status"], doc.get("priority")


async def main():
    settings = Settings(log_level="WARNING", replication_live=False)
    setup_logging(settings)

    print("=" * 60)
    print("docmodel Demo - Saves, Conflicts, Queries and Sync")
    print("=" * 60)
    print()

    # 1. Connect a collection
    print("[Step 1] Connecting the Tasks collection...")

    tasks = CollectionGateway(
        Tasks,
        indexes=[{"index": {"fields": ["priority"]}}],
        queries=[NamedQuery("by_status", by_status)],
        settings=settings,
    )
    results = await tasks.set_database("demo-tasks")
    print(f"  - Provisioned {len(results)} index/query definitions")

    # 2. Create tasks
    print("\n[Step 2] Creating tasks...")

    tasks_data = [
        {"_id": "task_1", "title": "Implement login", "status": "done", "priority": 1},
        {"_id": "task_2", "title": "Fix replication bug", "status": "in_progress", "priority": 2},
        {"_id": "task_3", "title": "Write documentation", "status": "todo", "priority": 3},
    ]
    for task_data in tasks_data:
        task = await tasks.put(task_data)
        print(f"  - Created: {task.title} [{task.status}] rev={task.rev[:10]}...")

    # 3. Validation happens before the store is touched
    print("\n[Step 3] Saving an invalid task...")

    try:
        await tasks.post({"title": "No status"})
    except ValidationError as e:
        print(f"  - Rejected: {e.errors}")

    # 4. Concurrent edits
    print("\n[Step 4] Two writers editing task_2...")
    print("-" * 50)

    first = await tasks.get("task_2")
    second = await tasks.get("task_2")

    first["status"] = "done"
    await first.save()
    print(f"  Writer 1 saved status=done, rev={first.rev[:10]}...")

    second["priority"] = 1
    await second.save()
    print(f"  Writer 2 saved priority=1 after a conflict, rev={second.rev[:10]}...")

    current = await tasks.get("task_2")
    print(f"  Stored document: {json.dumps(current.to_document(), indent=2)}")
    print()

    # 5. Queries
    print("[Step 5] Querying...")
    print("-" * 50)

    done = await tasks.query("by_status", key="done")
    print(f"  by_status=done: {[task.id for task in done]}")

    urgent = await tasks.find({"selector": {"priority": {"$lte": 1}}, "sort": ["priority"]})
    print(f"  priority <= 1:  {[task.id for task in urgent]}")
    print()

    # 6. Attachments
    print("[Step 6] Attaching notes to task_3...")
    print("-" * 50)

    task = await tasks.get("task_3")
    await task.put_attachment("notes.txt", {"content_type": "text/plain", "data": b"Outline first"})
    print(f"  Attachment stored, rev={task.rev[:10]}...")
    print()

    # 7. Sync with a second database
    print("[Step 7] Syncing with a replica...")
    print("-" * 50)

    replica = MemoryDocumentStore("demo-tasks-replica")
    await replica.put({"_id": "task_4", "title": "Plan release", "status": "todo"})

    summary = await tasks.set_sync(replica).wait()
    print(f"  Pushed {summary['push']['docs_written']} docs, pulled {summary['pull']['docs_written']} docs")

    info = await replica.info()
    print(f"  Replica now holds {info['doc_count']} documents")
    pulled = await tasks.get("task_4")
    print(f"  Pulled task_4: {pulled.title}")
    print()

    # 8. Delete
    print("[Step 8] Deleting task_1...")
    print("-" * 50)

    deleted = await tasks.delete("task_1")
    print(f"  Deleted: {deleted}; lookup now returns {await tasks.get('task_1')}")
    print()

    # Cleanup
    await tasks.close()
    await replica.destroy()
    await MemoryDocumentStore("demo-tasks").destroy()

    print("=" * 60)
    print("Demo Complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())

"""
Cancellable background handles for change feeds and replications.

An EventHandle owns one asyncio task and a set of observers. Observers
are registered per event name ("change", "complete", "error", "paused",
"active") and may be plain callables or coroutine functions; coroutine
listeners are awaited in order, so a slow listener applies backpressure
to the feed that drives it.

Invariants:
    - The task starts on construction; a running event loop is required
    - An exception raised by the task (or by a listener) ends the handle,
      is emitted as "error" and is re-raised by wait()
    - cancel() stops the task and never hides a failure other than the
      cancellation itself
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import abstractmethod
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventHandle:
    """Base class for long-running, cancellable store processes.

    Subclasses implement _run(); its return value becomes the handle's
    result and is emitted as "complete".

    Example:
        >>> feed = store.changes(live=True, since="now")
        >>> feed.on("change", lambda change: print(change["id"]))
        >>> ...
        >>> await feed.cancel()
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._result: Any = None
        self._error: BaseException | None = None
        self._cancelled = False
        self._task: asyncio.Task[Any] | None = None

    def _start(self) -> None:
        """Schedule the handle's task on the running loop."""
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._drive(), name=f"{type(self).__name__}")

    @abstractmethod
    async def _run(self) -> Any:
        """Body of the handle; returns the completion result."""
        ...

    async def _drive(self) -> Any:
        try:
            result = await self._run()
        except asyncio.CancelledError:
            logger.debug("%s cancelled", type(self).__name__)
            raise
        except Exception as e:
            self._error = e
            logger.debug(
                "%s failed",
                type(self).__name__,
                extra={"error": repr(e)},
            )
            await self._emit_error(e)
            return None

        self._result = result
        await self.emit("complete", result)
        return result

    async def _emit_error(self, error: BaseException) -> None:
        if not self._listeners["error"]:
            logger.error("Unobserved %s error: %s", type(self).__name__, error)
            return
        try:
            await self.emit("error", error)
        except Exception:
            logger.exception("Error listener of %s raised", type(self).__name__)

    def on(self, event: str, listener: Listener) -> EventHandle:
        """Register a listener for an event. Returns self for chaining."""
        self._listeners[event].append(listener)
        return self

    def off(self, event: str, listener: Listener) -> EventHandle:
        """Remove a previously registered listener."""
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
        return self

    async def emit(self, event: str, *args: Any) -> None:
        """Call every listener of an event, awaiting coroutine listeners."""
        for listener in list(self._listeners.get(event, ())):
            outcome = listener(*args)
            if inspect.isawaitable(outcome):
                await outcome

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        """Whether the task has finished (completed, failed or cancelled)."""
        return self._task is None or self._task.done()

    @property
    def error(self) -> BaseException | None:
        return self._error

    async def cancel(self) -> None:
        """Stop the handle and wait for its task to unwind."""
        self._cancelled = True
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait(self) -> Any:
        """Wait for completion.

        Returns:
            The completion result

        Raises:
            The error that ended the handle, if any
            asyncio.CancelledError: If the handle was cancelled
        """
        if self._task is not None:
            await asyncio.shield(self._task)
        if self._error is not None:
            raise self._error
        return self._result


class ChangeFeed(EventHandle):
    """Stream of document changes for a database.

    Emits "change" with CouchDB-shaped change dictionaries:
        {"id": ..., "seq": ..., "changes": [{"rev": ...}],
         "deleted": True (only for deletions), "doc": {...} (include_docs)}

    Non-live feeds emit "complete" with {"results": [...], "last_seq": ...}.
    Live feeds keep running until cancelled or failed.
    """

    def __init__(
        self,
        *,
        live: bool = False,
        since: int | str = 0,
        include_docs: bool = False,
        attachments: bool = False,
        doc_ids: list[str] | None = None,
        selector: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> None:
        super().__init__()
        self.live = live
        self.since = since
        self.include_docs = include_docs
        self.attachments = attachments
        self.doc_ids = set(doc_ids) if doc_ids else None
        self.selector = selector
        self.limit = limit
        self.last_seq: Any = since

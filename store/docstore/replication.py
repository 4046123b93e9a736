"""
One-way replication and bidirectional sync between document stores.

A Replication reads the source's change feed with documents and inline
attachments, and applies each document to the target with
write_replica(), which keeps the source revision. The higher revision
wins on both sides, so two replications in opposite directions (a Sync)
converge.

Events:
    change   {"direction", "docs_read", "docs_written", "last_seq", "docs"}
    paused   error that interrupted a retrying replication
    active   replication (re)started reading the source
    complete {"ok", "status", "docs_read", "docs_written", "last_seq"}
    error    error that ended the replication

Invariants:
    - last_seq is checkpointed after each applied change, so a retry
      resumes where the failed attempt stopped
    - Retry delay doubles from backoff_initial up to backoff_max and is
      reset by the first successful change
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .handles import EventHandle

logger = logging.getLogger(__name__)


class Replication(EventHandle):
    """Copy changes from a source store into a target store.

    Example:
        >>> replication = Replication(local, remote)
        >>> summary = await replication.wait()
        >>> summary["docs_written"]
        3
    """

    def __init__(
        self,
        source: Any,
        target: Any,
        *,
        live: bool = False,
        retry: bool = False,
        since: int | str = 0,
        doc_ids: list[str] | None = None,
        selector: dict[str, Any] | None = None,
        backoff_initial: float = 0.5,
        backoff_max: float = 60.0,
        direction: str | None = None,
    ) -> None:
        super().__init__()
        self.source = source
        self.target = target
        self.live = live
        self.retry = retry
        self.doc_ids = doc_ids
        self.selector = selector
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.direction = direction
        self.last_seq: Any = since
        self.docs_read = 0
        self.docs_written = 0
        self._attempt = 0
        self._start()

    def _summary(self, status: str) -> dict[str, Any]:
        return {
            "ok": True,
            "status": status,
            "docs_read": self.docs_read,
            "docs_written": self.docs_written,
            "last_seq": self.last_seq,
        }

    def _next_delay(self) -> float:
        delay = min(self.backoff_initial * (2**self._attempt), self.backoff_max)
        self._attempt += 1
        return delay

    async def _run(self) -> dict[str, Any]:
        while True:
            feed = None
            try:
                feed = self.source.changes(
                    since=self.last_seq,
                    live=self.live,
                    include_docs=True,
                    attachments=True,
                    doc_ids=self.doc_ids,
                    selector=self.selector,
                )
                feed.on("change", self._apply_change)
                feed.on("error", self._log_feed_error)
                await self.emit("active")
                result = await feed.wait()
            except Exception as e:
                if not self.retry:
                    raise
                delay = self._next_delay()
                logger.warning(
                    "Replication interrupted, retrying in %.2fs",
                    delay,
                    extra={
                        "source": getattr(self.source, "name", None),
                        "target": getattr(self.target, "name", None),
                        "error": repr(e),
                    },
                )
                await self.emit("paused", e)
                await asyncio.sleep(delay)
                continue
            finally:
                if feed is not None:
                    await feed.cancel()

            self.last_seq = result["last_seq"]
            logger.info(
                "Replication complete",
                extra={
                    "source": getattr(self.source, "name", None),
                    "target": getattr(self.target, "name", None),
                    "docs_written": self.docs_written,
                },
            )
            return self._summary("complete")

    async def _apply_change(self, change: dict[str, Any]) -> None:
        doc = change.get("doc")
        self.docs_read += 1
        if doc is not None and await self.target.write_replica(doc):
            self.docs_written += 1
        self.last_seq = change["seq"]
        self._attempt = 0
        await self.emit(
            "change",
            {
                "direction": self.direction,
                "docs_read": self.docs_read,
                "docs_written": self.docs_written,
                "last_seq": self.last_seq,
                "docs": [doc] if doc is not None else [],
            },
        )

    def _log_feed_error(self, error: BaseException) -> None:
        logger.debug("Source change feed failed", extra={"error": repr(error)})


class Sync(EventHandle):
    """Push and pull replications running together.

    Change and paused events of both directions are re-emitted with a
    "direction" of "push" or "pull". The sync completes when both
    directions complete and fails as soon as either one fails.
    """

    def __init__(self, local: Any, remote: Any, **options: Any) -> None:
        super().__init__()
        self.push = Replication(local, remote, direction="push", **options)
        self.pull = Replication(remote, local, direction="pull", **options)
        for direction, replication in (("push", self.push), ("pull", self.pull)):
            replication.on("change", self._forward("change", direction))
            replication.on("paused", self._forward("paused", direction))
            replication.on("error", self._log_direction_error)
        self._start()

    def _forward(self, event: str, direction: str) -> Any:
        async def forward(payload: Any = None) -> None:
            await self.emit(event, {"direction": direction, "change": payload})

        return forward

    def _log_direction_error(self, error: BaseException) -> None:
        logger.debug("Sync direction failed", extra={"error": repr(error)})

    async def _run(self) -> dict[str, Any]:
        try:
            push, pull = await asyncio.gather(self.push.wait(), self.pull.wait())
        finally:
            await asyncio.gather(self.push.cancel(), self.pull.cancel())
        return {"push": push, "pull": pull}

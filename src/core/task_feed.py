"""Merged task feed — one live list from several independent task sources.

A member's task list combines their personal tasks with the tasks of every
group they belong to. Each source is an async iterator of snapshots running
in its own asyncio task; the feed yields the de-duplicated union of the
latest snapshot from every live source. Sources can be cancelled one at a
time, and closing the stream cancels all of them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Mapping

from src.data.models import TaskInstance

logger = logging.getLogger(__name__)

Snapshot = list[TaskInstance]

_FINISHED = object()   # source exhausted, keep its last snapshot
_DROPPED = object()    # source failed or was cancelled


async def poll_source(
    fetch: Callable[[], Snapshot],
    interval: float,
    max_polls: int | None = None,
) -> AsyncIterator[Snapshot]:
    """Turn a store query into a source: yields whenever the result changes."""
    last: Snapshot | None = None
    polls = 0
    while max_polls is None or polls < max_polls:
        snapshot = fetch()
        if snapshot != last:
            last = snapshot
            yield snapshot
        polls += 1
        if max_polls is None or polls < max_polls:
            await asyncio.sleep(interval)


def union(snapshots: Mapping[str, Snapshot]) -> Snapshot:
    """Tasks from every snapshot, one per id, ordered by date."""
    by_id: dict[str, TaskInstance] = {}
    for key in sorted(snapshots):
        for task in snapshots[key]:
            by_id.setdefault(task.id, task)
    return sorted(by_id.values(), key=lambda t: (t.scheduled_date, t.title, t.id))


class TaskFeed:
    """Merges a fixed set of named sources into a single stream."""

    def __init__(self, sources: Mapping[str, AsyncIterator[Snapshot]]) -> None:
        self._sources = dict(sources)
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def keys(self) -> list[str]:
        return sorted(self._sources)

    def cancel(self, key: str) -> None:
        """Stop one source; its tasks drop out of the merged list."""
        task = self._tasks.get(key)
        if task is not None:
            task.cancel()

    async def _pump(self, key: str, source: AsyncIterator[Snapshot], queue: asyncio.Queue) -> None:
        outcome = _DROPPED
        try:
            async for snapshot in source:
                await queue.put((key, snapshot))
            outcome = _FINISHED
        except asyncio.CancelledError:
            logger.debug("Task source %s cancelled", key)
            raise
        except Exception as exc:
            logger.error("Task source %s failed: %s", key, exc)
        finally:
            queue.put_nowait((key, outcome))

    async def stream(self) -> AsyncIterator[Snapshot]:
        queue: asyncio.Queue = asyncio.Queue()
        latest: dict[str, Snapshot] = {}
        self._tasks = {
            key: asyncio.create_task(self._pump(key, source, queue))
            for key, source in self._sources.items()
        }
        active = set(self._tasks)
        try:
            while active:
                key, snapshot = await queue.get()
                if snapshot is _FINISHED:
                    active.discard(key)
                    continue
                if snapshot is _DROPPED:
                    active.discard(key)
                    if latest.pop(key, None) is not None:
                        yield union(latest)
                    continue
                latest[key] = snapshot
                yield union(latest)
        finally:
            for task in self._tasks.values():
                task.cancel()
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

"""
Bidirectional byte relay and per-listener connection tracking.

Provides:
- splice: Copy bytes both ways until either side closes
- ConnectionTracker: Owns the relay tasks of one listener and drains them
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

log = logging.getLogger(__name__)

CHUNK_SIZE = 65536
DEFAULT_DRAIN_TIMEOUT = 3.0


def _close_writer(writer: Any) -> None:
    try:
        writer.close()
    except Exception as e:
        log.debug("Ignoring error while closing %r: %s", writer, e)


async def _pipe(reader: Any, writer: Any) -> int:
    transferred = 0
    while True:
        data = await reader.read(CHUNK_SIZE)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        transferred += len(data)
    return transferred


async def splice(
    left_reader: Any,
    left_writer: Any,
    right_reader: Any,
    right_writer: Any,
) -> tuple[int, int]:
    """
    Relay bytes between two stream pairs.

    Works with asyncio streams and asyncssh channel streams alike. When
    either direction ends, on EOF or error, both sides are closed.

    Returns:
        (bytes left->right, bytes right->left)
    """
    forward = asyncio.ensure_future(_pipe(left_reader, right_writer))
    backward = asyncio.ensure_future(_pipe(right_reader, left_writer))
    try:
        await asyncio.wait({forward, backward}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        _close_writer(left_writer)
        _close_writer(right_writer)
        for task in (forward, backward):
            if not task.done():
                task.cancel()

    await asyncio.gather(forward, backward, return_exceptions=True)

    counts = []
    for task in (forward, backward):
        if task.cancelled() or task.exception() is not None:
            if not task.cancelled():
                log.debug("Relay direction ended with error: %s", task.exception())
            counts.append(0)
        else:
            counts.append(task.result())
    return counts[0], counts[1]


class ConnectionTracker:
    """
    Tracks the in-flight connection tasks of one listener.

    drain() gives live connections a grace period to finish on their own,
    then cancels whatever is left. It never raises.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    async def run(self, coro: Coroutine[Any, Any, Any]) -> None:
        """Run coro inline as a tracked connection."""
        task = asyncio.current_task()
        assert task is not None
        self._tasks.add(task)
        try:
            await coro
        finally:
            self._tasks.discard(task)

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("%s: connection handler failed: %s", self._name, exc)

    async def drain(self, timeout: float = DEFAULT_DRAIN_TIMEOUT) -> int:
        """
        Wait up to timeout seconds for connections to finish, then cancel.

        Returns:
            Number of connections that had to be cancelled
        """
        current = asyncio.current_task()
        tasks = {t for t in self._tasks if t is not current}
        if not tasks:
            return 0

        log.debug("%s: draining %d connection(s)", self._name, len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=max(timeout, 0))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            log.info("%s: cancelled %d connection(s) after drain", self._name, len(pending))
        return len(pending)

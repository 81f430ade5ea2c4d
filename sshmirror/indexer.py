"""Breadth-first crawl of a connection's remote tree into the directory cache."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable, Optional

from sshmirror.connection import TransportError
from sshmirror.remote_cache import nodes_from_entries
from sshmirror.utils.path_helpers import normalize_remote_path

if TYPE_CHECKING:
    from sshmirror.connection import LazySession
    from sshmirror.context import ConnectionContext
    from sshmirror.remote_cache import CacheShard

logger = logging.getLogger(__name__)

INDEX_GRACE_SECONDS = 2.0

PathCallback = Optional[Callable[[str], None]]
ErrorCallback = Optional[Callable[[str, BaseException], None]]


class IndexState(Enum):
    """Lifecycle of a connection's index run."""

    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()


@dataclass
class IndexReport:
    """Summary of one crawl."""

    generation: int
    directories: int = 0
    entries: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)
    abandoned: bool = False


def _notify(callback: Optional[Callable[..., None]], *args: object) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Exception in index callback")


class RemoteIndexer:
    """Owns the single index run of one connection.

    Starting a run is a compare-and-swap on :attr:`state`: only an IDLE or
    FAILED indexer starts a crawl, a RUNNING one hands out the in-flight task,
    and a COMPLETED one does nothing until :meth:`rebuild` or :meth:`reset`.
    """

    def __init__(
        self,
        ctx: ConnectionContext,
        shard: CacheShard,
        sessions: LazySession,
        grace_seconds: float = INDEX_GRACE_SECONDS,
    ) -> None:
        self._ctx = ctx
        self._shard = shard
        self._sessions = sessions
        self._grace = grace_seconds
        self._state = IndexState.IDLE
        self._task: asyncio.Task[IndexReport] | None = None
        self._generation = 0

    @property
    def state(self) -> IndexState:
        return self._state

    @property
    def is_indexed(self) -> bool:
        return self._state is IndexState.COMPLETED

    @property
    def generation(self) -> int:
        return self._generation

    def reset(self) -> None:
        """Forget a completed index so the next :meth:`ensure_indexed` crawls."""
        if self._state is not IndexState.RUNNING:
            self._state = IndexState.IDLE

    async def ensure_indexed(
        self,
        on_progress: PathCallback = None,
        on_empty: PathCallback = None,
        on_error: ErrorCallback = None,
    ) -> IndexReport | None:
        """Crawl unless already indexed; join an in-flight run.

        Returns None when the connection was already indexed.
        """
        if self._state is IndexState.COMPLETED:
            return None
        if self._state is IndexState.RUNNING and self._task is not None:
            logger.debug("Joining in-flight index of %s", self._ctx.id)
            return await asyncio.shield(self._task)
        return await asyncio.shield(self._start(on_progress, on_empty, on_error))

    async def rebuild(
        self,
        on_progress: PathCallback = None,
        on_empty: PathCallback = None,
        on_error: ErrorCallback = None,
    ) -> IndexReport:
        """Clear the connection's cache and crawl from scratch.

        An in-flight run gets the grace period to finish.  After that it is
        abandoned (not cancelled); its later writes are discarded.
        """
        previous = self._task
        if previous is not None and not previous.done():
            logger.info("Waiting on existing index of %s", self._ctx.id)
            try:
                await asyncio.wait_for(asyncio.shield(previous), self._grace)
            except asyncio.TimeoutError:
                logger.info(
                    "Existing index of %s still running after %.1fs; forcing rebuild",
                    self._ctx.id,
                    self._grace,
                )
            except Exception as exc:
                logger.debug("Previous index of %s failed: %s", self._ctx.id, exc)

        self._shard.invalidate()
        self._state = IndexState.IDLE
        return await asyncio.shield(self._start(on_progress, on_empty, on_error))

    # ------------------------------------------------------------------
    # Crawl
    # ------------------------------------------------------------------

    def _start(
        self,
        on_progress: PathCallback,
        on_empty: PathCallback,
        on_error: ErrorCallback,
    ) -> asyncio.Task[IndexReport]:
        self._generation += 1
        self._state = IndexState.RUNNING
        self._task = asyncio.get_running_loop().create_task(
            self._crawl(self._generation, on_progress, on_empty, on_error),
            name=f"index-{self._ctx.id}-{self._generation}",
        )
        self._task.add_done_callback(self._log_outcome)
        return self._task

    def _log_outcome(self, task: asyncio.Task[IndexReport]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Index of %s failed: %s", self._ctx.id, task.exception())

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def _crawl(
        self,
        generation: int,
        on_progress: PathCallback,
        on_empty: PathCallback,
        on_error: ErrorCallback,
    ) -> IndexReport:
        root = normalize_remote_path(self._ctx.remote_root)
        report = IndexReport(generation=generation)
        logger.info("Indexing %s:%s", self._ctx.id, root)

        try:
            session = await self._sessions.acquire()
        except Exception:
            self._finish(generation, IndexState.FAILED)
            raise

        pending: deque[str] = deque([root])
        while pending:
            current = pending.popleft()
            _notify(on_progress, current)
            try:
                entries = await session.readdir(current)
            except TransportError:
                await self._sessions.discard()
                self._finish(generation, IndexState.FAILED)
                raise
            except Exception as exc:
                logger.warning("Could not index %s: %s", current, exc)
                report.errors.append((current, str(exc)))
                _notify(on_error, current, exc)
                continue

            if not self._is_current(generation):
                report.abandoned = True
                logger.info("Discarding stale index run %d of %s", generation, self._ctx.id)
                return report

            nodes = nodes_from_entries(current, entries)
            self._shard.put(current, nodes)
            report.directories += 1
            logger.debug("Listed %s (%d)", current, len(nodes))
            if not nodes:
                _notify(on_empty, current)
            for node in nodes:
                report.entries += 1
                _notify(on_progress, node.path)
                if node.is_directory:
                    pending.append(node.path)

        self._finish(generation, IndexState.COMPLETED)
        logger.info(
            "Indexed %s: %d directories, %d entries, %d error(s)",
            self._ctx.id,
            report.directories,
            report.entries,
            len(report.errors),
        )
        return report

    def _finish(self, generation: int, state: IndexState) -> None:
        if self._is_current(generation):
            self._state = state

"""Engine facade: per-connection sync sessions behind one object.

``SyncEngine`` is what the surrounding application talks to.  Each connection
gets a ``SyncSession`` on first use that owns everything scoped to that
connection (cache shard, indexer, transfer queue, status tracker, watcher,
mirror and remote sessions).  Sessions live until :meth:`SyncEngine.close_connection`
or :meth:`SyncEngine.close`.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

from watchdog.observers import Observer

from sshmirror.config import DEFAULT_CONFIG
from sshmirror.connection import LazySession, TransportError, open_session
from sshmirror.context import SyncMode
from sshmirror.indexer import IndexReport, IndexState, RemoteIndexer
from sshmirror.mirror import RemoteMirror
from sshmirror.remote_cache import RemoteDirectoryCache, RemoteNode, nodes_from_entries
from sshmirror.status import QueueStatus, StatusTracker
from sshmirror.transfer import TransferQueue
from sshmirror.utils.path_helpers import normalize_remote_path, validate_remote_path
from sshmirror.verifier import Verifier
from sshmirror.watcher import ChangeWatcher, IgnorePatterns, scan_local_files

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from sshmirror.connection import SessionFactory
    from sshmirror.context import ConnectionContext

logger = logging.getLogger(__name__)


class SyncSession:
    """All engine state for one connection."""

    def __init__(
        self,
        ctx: ConnectionContext,
        cache: RemoteDirectoryCache,
        config: dict[str, Any],
        session_factory: SessionFactory,
    ) -> None:
        self.ctx = ctx
        self.shard = cache.shard(ctx)
        self.tracker = StatusTracker(ctx.id, recent_limit=int(config["recent_limit"]))
        self.ignore = IgnorePatterns(ctx.ignore_patterns or config["ignore_patterns"])
        self._settle = float(config["settle_ms"]) / 1000.0

        # Browsing and indexing share one channel; the queue and the poller
        # each get their own so a long upload never blocks a listing.
        self.browse_sessions = LazySession(ctx, session_factory)
        self.transfer_sessions = LazySession(ctx, session_factory)
        self.poll_sessions = LazySession(ctx, session_factory)

        self.indexer = RemoteIndexer(
            ctx,
            self.shard,
            self.browse_sessions,
            grace_seconds=float(config["index_grace_seconds"]),
        )
        self.mirror = RemoteMirror(
            ctx,
            self.poll_sessions,
            tracker=self.tracker,
            ignore=self.ignore,
            is_pending=self._is_pending,
            suppress_ttl=float(config["suppress_ttl_seconds"]),
            local_change_ttl=float(config["local_change_ttl_seconds"]),
            mtime_skew=float(config["mtime_skew_seconds"]),
        )
        self.queue = TransferQueue(
            ctx,
            self.transfer_sessions,
            self.tracker,
            verifier=Verifier(ctx.verify_mode),
            pull=self.mirror.pull_file,
            progress_interval=float(config["progress_interval_ms"]) / 1000.0,
            mtime_skew=float(config["mtime_skew_seconds"]),
        )
        self.watcher: ChangeWatcher | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Local change routing
    # ------------------------------------------------------------------

    def _is_pending(self, local_path: str) -> bool:
        return self.queue.has_pending(local_path)

    def handle_local_upload(self, local_path: str) -> None:
        self.mirror.note_local_change(local_path)
        self.queue.enqueue_upload(local_path)

    def handle_local_delete(self, local_path: str) -> None:
        self.mirror.note_local_change(local_path)
        self.queue.enqueue_delete(local_path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Run *coro* in the background, logging (not raising) its failure."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Background %s failed: %s", task.get_name(), task.exception())

    def start_watch(self, observer_factory: Callable[[], BaseObserver]) -> None:
        if self.watcher is None:
            watcher = ChangeWatcher(
                self.ctx.local_root,
                on_upload=self.handle_local_upload,
                on_delete=self.handle_local_delete,
                ignore=self.ignore,
                settle_seconds=self._settle,
                is_suppressed=self.mirror.is_suppressed,
                observer_factory=observer_factory,
            )
            watcher.start()
            self.watcher = watcher
            self.tracker.update(watching=True)
        if self.ctx.sync_mode is SyncMode.LIVE:
            self.mirror.start_polling()

    async def stop_watch(self) -> None:
        """Stop event delivery and polling, drop pending items, finish the active one."""
        watcher, self.watcher = self.watcher, None
        if watcher is not None:
            await watcher.stop()
        await self.mirror.stop_polling()
        await self.queue.stop()
        self.tracker.update(watching=False, pending=0, active=0)

    async def close(self) -> None:
        await self.stop_watch()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for sessions in (self.browse_sessions, self.transfer_sessions, self.poll_sessions):
            await sessions.close()


class SyncEngine:
    """Entry point for browsing, indexing, watching and mirroring."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        session_factory: Optional[SessionFactory] = None,
        cache: RemoteDirectoryCache | None = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        """Create an engine.

        Args:
            config: Settings as returned by ``ConfigManager.get_all()``;
                missing keys use ``DEFAULT_CONFIG``.
            session_factory: Coroutine opening a remote session for a context.
            cache: Shared directory cache (a new one sized from *config* if None).
            observer_factory: watchdog observer class used by watchers.
        """
        self._config = {**DEFAULT_CONFIG, **(config or {})}
        self._session_factory = session_factory or open_session
        self._cache = cache or RemoteDirectoryCache(
            max_entries=int(self._config["cache_max_entries"])
        )
        self._observer_factory = observer_factory
        self._sessions: dict[str, SyncSession] = {}

    @property
    def cache(self) -> RemoteDirectoryCache:
        return self._cache

    def session(self, ctx: ConnectionContext) -> SyncSession:
        """Return the connection's session, creating it on first use."""
        sync = self._sessions.get(ctx.id)
        if sync is None:
            sync = SyncSession(ctx, self._cache, self._config, self._session_factory)
            self._sessions[ctx.id] = sync
            logger.debug("Created sync session for %s", ctx.id)
        elif sync.ctx != ctx:
            # Pin settings apply immediately; the rest on the next session
            self._cache.shard(ctx)
        return sync

    # ------------------------------------------------------------------
    # Browsing / indexing
    # ------------------------------------------------------------------

    async def list_remote_dir(
        self, ctx: ConnectionContext, path: str | None = None, force: bool = False
    ) -> list[RemoteNode]:
        """List a remote directory, serving from the cache unless *force*.

        A forced refresh diff-merges into the cached listing so unchanged
        nodes keep their identity.
        """
        sync = self.session(ctx)
        target = normalize_remote_path(path or ctx.remote_root)
        if not validate_remote_path(target):
            raise ValueError(f"Invalid remote path: {target!r}")

        if not force:
            cached = sync.shard.get(target)
            if cached is not None:
                self._maybe_index(sync)
                return cached
        else:
            sync.shard.record_access(target)

        try:
            session = await sync.browse_sessions.acquire()
            entries = await session.readdir(target)
        except TransportError:
            await sync.browse_sessions.discard()
            raise

        nodes = nodes_from_entries(target, entries)
        if force:
            nodes = sync.shard.merge_diff(target, nodes)
        else:
            sync.shard.put(target, nodes)
        self._maybe_index(sync)
        return nodes

    def _maybe_index(self, sync: SyncSession) -> None:
        if sync.ctx.index_on_connect and sync.indexer.state in (IndexState.IDLE, IndexState.FAILED):
            sync.spawn(sync.indexer.ensure_indexed(), name=f"index-on-connect-{sync.ctx.id}")

    async def rebuild_remote_index(
        self,
        ctx: ConnectionContext,
        on_progress: Optional[Callable[[str], None]] = None,
        on_empty: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str, BaseException], None]] = None,
    ) -> IndexReport:
        """Drop the connection's cached listings and re-crawl the remote tree."""
        return await self.session(ctx).indexer.rebuild(on_progress, on_empty, on_error)

    def invalidate_remote_cache(self, ctx: ConnectionContext) -> None:
        """Forget every cached listing, counter and pin of the connection."""
        sync = self.session(ctx)
        sync.shard.invalidate()
        sync.indexer.reset()

    # ------------------------------------------------------------------
    # Watching / queue
    # ------------------------------------------------------------------

    async def start_watch(self, ctx: ConnectionContext) -> QueueStatus:
        sync = self.session(ctx)
        sync.start_watch(self._observer_factory)
        return sync.tracker.snapshot()

    async def stop_watch(self, ctx: ConnectionContext) -> QueueStatus | None:
        sync = self._sessions.get(ctx.id)
        if sync is None:
            return None
        await sync.stop_watch()
        return sync.tracker.snapshot()

    def get_queue_status(self, ctx: ConnectionContext) -> QueueStatus | None:
        sync = self._sessions.get(ctx.id)
        return sync.tracker.snapshot() if sync is not None else None

    def clear_queue_history(self, ctx: ConnectionContext) -> None:
        sync = self._sessions.get(ctx.id)
        if sync is not None:
            sync.tracker.clear_history()

    async def force_upload_all(self, ctx: ConnectionContext) -> QueueStatus:
        """Enqueue every non-ignored local file, skipping the remote-newer check."""
        sync = self.session(ctx)
        files = await asyncio.to_thread(scan_local_files, ctx.local_root, sync.ignore)
        for local_path in files:
            sync.queue.enqueue_upload(local_path, force=True)
        logger.info("Force-uploading %d file(s) for %s", len(files), ctx.id)
        return sync.tracker.snapshot()

    def subscribe(self, ctx: ConnectionContext, maxsize: int = 0) -> asyncio.Queue[QueueStatus]:
        """Receive a snapshot after every status change of the connection."""
        return self.session(ctx).tracker.channel.subscribe(maxsize)

    def unsubscribe(self, ctx: ConnectionContext, queue: asyncio.Queue[QueueStatus]) -> None:
        sync = self._sessions.get(ctx.id)
        if sync is not None:
            sync.tracker.channel.unsubscribe(queue)

    # ------------------------------------------------------------------
    # Remote → local
    # ------------------------------------------------------------------

    async def download_remote_file(self, ctx: ConnectionContext, remote_path: str) -> Path | None:
        return await self.session(ctx).mirror.download_remote_file(remote_path)

    async def sync_remote_to_local(self, ctx: ConnectionContext) -> int:
        """Mirror the entire remote root into the local root."""
        return await self.session(ctx).mirror.pull_all()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close_connection(self, ctx: ConnectionContext) -> None:
        sync = self._sessions.pop(ctx.id, None)
        if sync is None:
            return
        await sync.close()
        self._cache.drop_shard(ctx.id)
        logger.info("Closed sync session for %s", ctx.id)

    async def close(self) -> None:
        for connection_id in list(self._sessions):
            sync = self._sessions.pop(connection_id)
            await sync.close()
            self._cache.drop_shard(connection_id)

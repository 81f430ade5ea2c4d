"""Serialised upload/delete queue for one connection.

Handles local change events via SFTP with:
- Strict FIFO, one item at a time (a single asyncio worker task)
- Atomic publish (nonce-suffixed temp file + rename onto the target)
- Throttled per-item progress
- Post-upload verification
- Last-write-wins by modification time (a newer remote copy is pulled instead)
- Superseded-save annotation when a path is saved again mid-flight
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import posixpath
import stat as _stat
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from sshmirror.connection import TransportError
from sshmirror.utils.path_helpers import remote_path_from_local, validate_remote_path

if TYPE_CHECKING:
    from sshmirror.connection import LazySession, RemoteSession
    from sshmirror.context import ConnectionContext
    from sshmirror.status import StatusTracker
    from sshmirror.verifier import Verifier

logger = logging.getLogger(__name__)

TEMP_MARKER = ".sshmirror_tmp_"
PROGRESS_INTERVAL = 0.2          # seconds between progress emissions
MTIME_SKEW = 1.5                 # seconds of clock slack before remote "wins"
SUPERSEDED_NOTE = "Superseded by a newer save."

PullCallback = Callable[["RemoteSession", str, float], Awaitable[None]]

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class QueueAction(Enum):
    """What a queue item does to the remote tree."""

    UPLOAD = "upload"
    DELETE = "delete"


class QueuePhase(Enum):
    """Lifecycle phase of a QueueItem.

    Uploads go QUEUED → TRANSFERRING → VERIFYING → COMPLETE | FAILED;
    deletes go QUEUED → DELETING → COMPLETE | FAILED.
    """

    QUEUED = "queued"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"
    DELETING = "deleting"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({QueuePhase.COMPLETE, QueuePhase.FAILED})
IN_FLIGHT_PHASES = frozenset({QueuePhase.TRANSFERRING, QueuePhase.VERIFYING})

# ---------------------------------------------------------------------------
# QueueItem
# ---------------------------------------------------------------------------

_item_ids = itertools.count(1)


@dataclass
class QueueItem:
    """One accepted filesystem event, mutated in place as it advances."""

    path: str
    action: QueueAction
    id: int = field(default_factory=lambda: next(_item_ids))
    phase: QueuePhase = QueuePhase.QUEUED
    error: str | None = None
    note: str | None = None
    bytes_sent: int = 0
    bytes_total: int | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    superseded: bool = False
    force: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def progress_fraction(self) -> float:
        """Fraction of the file transferred (0.0 – 1.0)."""
        if not self.bytes_total or self.bytes_total <= 0:
            return 1.0 if self.is_terminal else 0.0
        return min(1.0, self.bytes_sent / self.bytes_total)

    def touch(self) -> None:
        self.updated_at = time.time()

    def annotate(self, note: str) -> None:
        self.note = f"{self.note} {note}" if self.note else note


# ---------------------------------------------------------------------------
# Progress throttling
# ---------------------------------------------------------------------------


class ProgressThrottle:
    """Forwards byte offsets at most once per *interval*.

    The final offset (``sent >= total``) is always forwarded, as is anything
    passed to :meth:`flush`.
    """

    def __init__(
        self,
        total: int,
        callback: Callable[[int], None],
        interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._total = total
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._last_emit: float | None = None
        self._last_value: int | None = None

    def __call__(self, sent: int) -> None:
        now = self._clock()
        if (
            sent < self._total
            and self._last_emit is not None
            and now - self._last_emit < self._interval
        ):
            return
        self._emit(min(sent, self._total) if self._total > 0 else sent, now)

    def flush(self, sent: int) -> None:
        value = min(sent, self._total) if self._total > 0 else sent
        if value != self._last_value:
            self._emit(value, self._clock())

    def _emit(self, value: int, now: float) -> None:
        self._last_emit = now
        self._last_value = value
        try:
            self._callback(value)
        except Exception:
            logger.exception("Exception in progress callback")


# ---------------------------------------------------------------------------
# Remote tree helpers
# ---------------------------------------------------------------------------


async def ensure_remote_dir(session: RemoteSession, remote_dir: str) -> None:
    """Create *remote_dir* and any missing ancestors.

    An ``mkdir`` failure is tolerated when the path turns out to be an
    existing directory (it may have been created concurrently).
    """
    normalized = remote_dir.replace("\\", "/")
    current = "/" if normalized.startswith("/") else ""
    for part in (p for p in normalized.split("/") if p):
        if current == "/":
            current = f"/{part}"
        elif current:
            current = f"{current}/{part}"
        else:
            current = part
        try:
            await session.mkdir(current)
        except OSError:
            existing = await session.stat(current)
            if existing is None or not existing.is_directory:
                raise


async def remove_remote_path(session: RemoteSession, remote_path: str) -> None:
    """Remove a remote file or directory tree; a missing path is a no-op.

    Directory trees are walked with an explicit stack: files are unlinked as
    they are found, then directories are removed deepest-first.
    """
    stat = await session.stat(remote_path)
    if stat is None:
        return
    if not stat.is_directory:
        await session.unlink(remote_path)
        return

    stack = [remote_path]
    directories: list[str] = []
    while stack:
        current = stack.pop()
        directories.append(current)
        for entry in await session.readdir(current):
            child = posixpath.join(current, entry.name)
            if entry.is_directory:
                stack.append(child)
            else:
                await session.unlink(child)
    # Every directory is discovered after its parent
    for directory in reversed(directories):
        await session.rmdir(directory)


async def upload_atomic(
    session: RemoteSession,
    local_path: str,
    remote_path: str,
    on_progress: Optional[Callable[[int], None]] = None,
    mtime: Optional[float] = None,
) -> int:
    """Publish *local_path* at *remote_path* via a temp name and rename.

    The final path is only ever touched by the rename.  On any failure the
    temp artifact is removed (best effort) and the error propagates.  When
    *mtime* is given the published file is stamped with it, so later
    last-write-wins checks compare against the source's time rather than
    the moment the transfer finished.
    """
    await ensure_remote_dir(session, posixpath.dirname(remote_path))
    temp_path = f"{remote_path}{TEMP_MARKER}{uuid.uuid4().hex[:12]}"
    try:
        sent = await session.write_stream(local_path, temp_path, on_progress)
        await session.rename(temp_path, remote_path)
    except Exception:
        try:
            await session.unlink(temp_path)
        except Exception as cleanup_exc:
            logger.debug("Could not remove temp file %s: %s", temp_path, cleanup_exc)
        raise
    if mtime is not None:
        await session.utime(remote_path, mtime)
    return sent


# ---------------------------------------------------------------------------
# TransferQueue
# ---------------------------------------------------------------------------


class TransferQueue:
    """Sequential upload/delete queue with phase tracking.

    A single worker task processes items one at a time in enqueue order.  A
    failing item is recorded and the queue moves on.
    """

    def __init__(
        self,
        ctx: ConnectionContext,
        sessions: LazySession,
        tracker: StatusTracker,
        verifier: Verifier | None = None,
        pull: PullCallback | None = None,
        progress_interval: float = PROGRESS_INTERVAL,
        mtime_skew: float = MTIME_SKEW,
    ) -> None:
        """Initialise the queue; the worker starts on the first enqueue.

        Args:
            ctx: Connection whose local root is mirrored.
            sessions: Source of the remote session for this queue.
            tracker: Receives every item and counter change.
            verifier: Post-upload verifier; ``None`` skips verification.
            pull: Called with ``(session, remote_path, remote_mtime)`` when the
                remote copy is newer than the local change; ``None`` disables
                the last-write-wins check.
            progress_interval: Minimum seconds between progress emissions.
            mtime_skew: Clock slack before the remote copy counts as newer.
        """
        self._ctx = ctx
        self._sessions = sessions
        self._tracker = tracker
        self._verifier = verifier
        self._pull = pull
        self._progress_interval = progress_interval
        self._mtime_skew = mtime_skew

        self._queue: asyncio.Queue[QueueItem | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._current: QueueItem | None = None
        self._paths: Counter[str] = Counter()
        # remote path -> mtime this queue last stamped on it
        self._published: dict[str, float] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def active_count(self) -> int:
        return 1 if self._current is not None else 0

    @property
    def current_item(self) -> QueueItem | None:
        return self._current

    def has_pending(self, local_path: str) -> bool:
        """True if *local_path* is queued or in flight."""
        return self._paths[str(local_path)] > 0

    def enqueue_upload(self, local_path: str | os.PathLike[str], force: bool = False) -> QueueItem:
        """Queue an upload of *local_path*.

        If an earlier upload of the same path is mid-flight it is flagged as
        superseded; it still runs to completion and this item follows it.
        """
        path = str(local_path)
        current = self._current
        if (
            current is not None
            and current.path == path
            and current.action is QueueAction.UPLOAD
            and current.phase in IN_FLIGHT_PHASES
        ):
            current.superseded = True
            logger.info("Upload #%d of %s superseded by a newer save", current.id, path)
        return self._enqueue(QueueItem(path=path, action=QueueAction.UPLOAD, force=force))

    def enqueue_delete(self, local_path: str | os.PathLike[str]) -> QueueItem:
        """Queue removal of the remote counterpart of *local_path*."""
        return self._enqueue(QueueItem(path=str(local_path), action=QueueAction.DELETE))

    async def join(self) -> None:
        """Wait until every queued item has reached a terminal phase."""
        await self._queue.join()

    async def stop(self) -> list[QueueItem]:
        """Drop pending items and wait for the in-flight one to finish.

        Returns the items that were dropped.
        """
        dropped: list[QueueItem] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            if item is not None:
                self._release(item.path)
                dropped.append(item)
        if dropped:
            self._tracker.status.recent = [
                existing for existing in self._tracker.status.recent
                if all(existing.id != item.id for item in dropped)
            ]
            logger.info("Dropped %d pending item(s) for %s", len(dropped), self._ctx.id)

        worker = self._worker
        if worker is not None and not worker.done():
            self._queue.put_nowait(None)
            await worker
        self._worker = None
        self._refresh_counts()
        return dropped

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _enqueue(self, item: QueueItem) -> QueueItem:
        self._paths[item.path] += 1
        self._tracker.record_item(item)
        self._queue.put_nowait(item)
        self._ensure_worker()
        self._refresh_counts()
        logger.info("Queued %s: %s", item.action.value, item.path)
        return item

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._worker_loop(), name=f"transfer-{self._ctx.id}"
            )

    async def _worker_loop(self) -> None:
        """Process items sequentially until the stop sentinel arrives."""
        logger.debug("Transfer worker started for %s", self._ctx.id)
        while True:
            item = await self._queue.get()
            if item is None:
                self._queue.task_done()
                break
            self._current = item
            self._refresh_counts()
            try:
                await self._process_item(item)
            finally:
                self._current = None
                self._release(item.path)
                self._queue.task_done()
                self._refresh_counts()
        logger.debug("Transfer worker exiting for %s", self._ctx.id)

    async def _process_item(self, item: QueueItem) -> None:
        """Route the item to its handler; record any failure."""
        try:
            if item.action is QueueAction.UPLOAD:
                await self._upload(item)
            else:
                await self._delete(item)
        except TransportError as exc:
            await self._sessions.discard()
            self._fail(item, exc)
        except Exception as exc:
            self._fail(item, exc)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def _upload(self, item: QueueItem) -> None:
        self._set_phase(item, QueuePhase.TRANSFERRING)

        try:
            local_stat = await asyncio.to_thread(os.stat, item.path)
        except FileNotFoundError:
            self._skip(item, "Skipped: file no longer exists.")
            return
        if not _stat.S_ISREG(local_stat.st_mode):
            self._skip(item, "Skipped: not a regular file.")
            return

        item.bytes_total = local_stat.st_size
        item.bytes_sent = 0
        self._record(item)

        remote_path = remote_path_from_local(self._ctx, item.path)
        if remote_path is None:
            self._skip(item, "Skipped: outside the workspace.")
            return
        if not validate_remote_path(remote_path):
            raise ValueError(f"Invalid remote destination path: {remote_path!r}")

        session = await self._sessions.acquire()

        if not item.force and self._pull is not None:
            remote_stat = await session.stat(remote_path)
            if (
                remote_stat is not None
                and not remote_stat.is_directory
                and remote_stat.mtime > local_stat.st_mtime + self._mtime_skew
                and not self._is_own_publish(remote_path, remote_stat.mtime)
            ):
                await self._pull(session, remote_path, remote_stat.mtime)
                item.annotate("Remote won: remote newer; pulled instead.")
                self._complete(item)
                return

        def _on_progress(sent: int) -> None:
            item.bytes_sent = sent
            self._record(item)

        throttle = ProgressThrottle(local_stat.st_size, _on_progress, self._progress_interval)
        sent = await upload_atomic(
            session, item.path, remote_path, throttle, mtime=local_stat.st_mtime
        )
        self._published[remote_path] = local_stat.st_mtime
        throttle.flush(sent)
        logger.info("Upload complete: %s → %s", item.path, remote_path)

        self._set_phase(item, QueuePhase.VERIFYING)
        if self._verifier is not None:
            await self._verifier.verify_upload(session, item.path, remote_path)
        self._complete(item)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def _delete(self, item: QueueItem) -> None:
        self._set_phase(item, QueuePhase.DELETING)

        remote_path = remote_path_from_local(self._ctx, item.path)
        if remote_path is None:
            self._skip(item, "Skipped: outside the workspace.")
            return
        if not validate_remote_path(remote_path):
            raise ValueError(f"Invalid remote path: {remote_path!r}")

        session = await self._sessions.acquire()

        if self._pull is not None:
            remote_stat = await session.stat(remote_path)
            if (
                remote_stat is not None
                and not remote_stat.is_directory
                and remote_stat.mtime > item.created_at + self._mtime_skew
                and not self._is_own_publish(remote_path, remote_stat.mtime)
            ):
                await self._pull(session, remote_path, remote_stat.mtime)
                item.annotate("Remote won: remote newer; restored instead of delete.")
                self._complete(item)
                return

        await remove_remote_path(session, remote_path)
        self._published.pop(remote_path, None)
        logger.info("Remote delete complete: %s", remote_path)
        self._complete(item)

    # ------------------------------------------------------------------
    # Phase bookkeeping
    # ------------------------------------------------------------------

    def _is_own_publish(self, remote_path: str, remote_mtime: float) -> bool:
        """True if the remote file still carries the mtime this queue stamped.

        SFTP keeps whole seconds, so anything within one second matches.
        """
        published = self._published.get(remote_path)
        return published is not None and abs(remote_mtime - published) < 1.0

    def _record(self, item: QueueItem) -> None:
        item.touch()
        self._tracker.record_item(item)

    def _set_phase(self, item: QueueItem, phase: QueuePhase) -> None:
        item.phase = phase
        self._record(item)
        if phase is QueuePhase.VERIFYING:
            self._tracker.update(last_phase=phase.value)
        else:
            self._tracker.update(last_path=item.path, last_phase=phase.value, last_error=None)

    def _skip(self, item: QueueItem, note: str) -> None:
        item.phase = QueuePhase.COMPLETE
        item.annotate(note)
        self._record(item)
        self._tracker.update(last_phase=QueuePhase.COMPLETE.value)
        logger.debug("%s (%s)", note, item.path)

    def _complete(self, item: QueueItem) -> None:
        item.phase = QueuePhase.COMPLETE
        if item.superseded:
            item.annotate(SUPERSEDED_NOTE)
        self._record(item)
        status = self._tracker.status
        self._tracker.update(
            processed=status.processed + 1,
            last_path=item.path,
            last_error=None,
            last_phase=QueuePhase.COMPLETE.value,
        )

    def _fail(self, item: QueueItem, exc: BaseException) -> None:
        item.phase = QueuePhase.FAILED
        item.error = str(exc) or type(exc).__name__
        if item.superseded:
            item.annotate(SUPERSEDED_NOTE)
        self._record(item)
        status = self._tracker.status
        self._tracker.update(
            failed=status.failed + 1,
            last_path=item.path,
            last_error=item.error,
            last_phase=QueuePhase.FAILED.value,
        )
        logger.error("%s failed for %r: %s", item.action.value.capitalize(), item.path, item.error)

    def _release(self, path: str) -> None:
        self._paths[path] -= 1
        if self._paths[path] <= 0:
            del self._paths[path]

    def _refresh_counts(self) -> None:
        self._tracker.update(pending=self.pending_count, active=self.active_count)

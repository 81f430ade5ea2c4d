"""Remote-to-local mirroring: single downloads, full pulls and live polling.

Every file written locally by this module is marked *suppressed* for a short
window so the change watcher does not echo it back to the remote.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from sshmirror.connection import TransportError
from sshmirror.transfer import TEMP_MARKER
from sshmirror.utils.path_helpers import (
    local_path_from_remote,
    normalize_remote_path,
    validate_remote_path,
)

if TYPE_CHECKING:
    from sshmirror.connection import LazySession, RemoteSession
    from sshmirror.context import ConnectionContext
    from sshmirror.status import StatusTracker
    from sshmirror.watcher import IgnorePatterns

logger = logging.getLogger(__name__)

SUPPRESS_TTL = 2.0        # seconds a downloaded path ignores local events
LOCAL_CHANGE_TTL = 20.0   # seconds a local edit protects a path from remote deletes
MTIME_SKEW = 1.5


@dataclass(frozen=True)
class RemoteFileInfo:
    size: int
    mtime: float


@dataclass
class PollResult:
    """What a single poll changed locally."""

    downloaded: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)


def _key(local_path: str | os.PathLike[str]) -> str:
    return os.path.abspath(os.fspath(local_path))


class RemoteMirror:
    """Pulls remote state into a connection's local root."""

    def __init__(
        self,
        ctx: ConnectionContext,
        sessions: LazySession,
        tracker: StatusTracker | None = None,
        ignore: IgnorePatterns | None = None,
        is_pending: Optional[Callable[[str], bool]] = None,
        suppress_ttl: float = SUPPRESS_TTL,
        local_change_ttl: float = LOCAL_CHANGE_TTL,
        mtime_skew: float = MTIME_SKEW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ctx = ctx
        self._sessions = sessions
        self._tracker = tracker
        self._ignore = ignore
        self._is_pending = is_pending
        self._suppress_ttl = suppress_ttl
        self._local_change_ttl = local_change_ttl
        self._mtime_skew = mtime_skew
        self._clock = clock

        self._suppressed: dict[str, float] = {}
        self._local_changes: dict[str, float] = {}
        self._remote_index: dict[str, RemoteFileInfo] = {}
        self._poll_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Echo suppression / local change tracking
    # ------------------------------------------------------------------

    def mark_suppressed(self, local_path: str | os.PathLike[str]) -> None:
        self._suppressed[_key(local_path)] = self._clock()

    def is_suppressed(self, local_path: str | os.PathLike[str]) -> bool:
        key = _key(local_path)
        since = self._suppressed.get(key)
        if since is None:
            return False
        if self._clock() - since > self._suppress_ttl:
            del self._suppressed[key]
            return False
        return True

    def note_local_change(self, local_path: str | os.PathLike[str]) -> None:
        self._local_changes[_key(local_path)] = self._clock()

    def has_recent_local_change(self, local_path: str | os.PathLike[str]) -> bool:
        key = _key(local_path)
        since = self._local_changes.get(key)
        if since is None:
            return False
        if self._clock() - since > self._local_change_ttl:
            del self._local_changes[key]
            return False
        return True

    @property
    def remote_index(self) -> dict[str, RemoteFileInfo]:
        return dict(self._remote_index)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def fetch(
        self, session: RemoteSession, remote_path: str, remote_mtime: float | None = None
    ) -> Path | None:
        """Download *remote_path* to its local counterpart using *session*.

        Returns the local path, or None when *remote_path* lies outside the
        remote root.
        """
        local_path = local_path_from_remote(self._ctx, remote_path)
        if local_path is None:
            return None
        self.mark_suppressed(local_path)
        await session.download(remote_path, str(local_path))
        if remote_mtime:
            await asyncio.to_thread(os.utime, local_path, (remote_mtime, remote_mtime))
        # The watcher settles after the last write, so restart the window here
        self.mark_suppressed(local_path)
        self._local_changes.pop(_key(local_path), None)
        logger.info("Downloaded %s → %s", remote_path, local_path)
        return local_path

    async def pull_file(self, session: RemoteSession, remote_path: str, remote_mtime: float) -> None:
        """Last-write-wins hook for the transfer queue."""
        await self.fetch(session, remote_path, remote_mtime)

    async def download_remote_file(self, remote_path: str) -> Path | None:
        """Fetch one remote file inside the remote root, preserving its mtime."""
        remote_path = normalize_remote_path(remote_path)
        if not validate_remote_path(remote_path):
            raise ValueError(f"Invalid remote path: {remote_path!r}")
        if local_path_from_remote(self._ctx, remote_path) is None:
            logger.warning("Refusing to download %s: outside %s", remote_path, self._ctx.remote_root)
            return None
        try:
            session = await self._sessions.acquire()
            stat = await session.stat(remote_path)
            if stat is None:
                raise FileNotFoundError(f"Remote file not found: {remote_path}")
            if stat.is_directory:
                raise IsADirectoryError(f"Remote path is a directory: {remote_path}")
            return await self.fetch(session, remote_path, stat.mtime)
        except TransportError:
            await self._sessions.discard()
            raise

    async def list_remote_files(self, session: RemoteSession) -> dict[str, RemoteFileInfo]:
        """Every non-ignored remote file under the root, with size and mtime."""
        root = normalize_remote_path(self._ctx.remote_root)
        files: dict[str, RemoteFileInfo] = {}
        stack = [root]
        while stack:
            current = stack.pop()
            for entry in await session.readdir(current):
                remote_path = posixpath.join(current, entry.name)
                if self._is_ignored(remote_path) or TEMP_MARKER in entry.name:
                    continue
                if entry.is_directory:
                    stack.append(remote_path)
                else:
                    files[remote_path] = RemoteFileInfo(size=entry.size, mtime=entry.mtime)
        return files

    async def pull_all(self) -> int:
        """Mirror the whole remote root into the local root.

        Returns the number of files downloaded.  The listing becomes the
        baseline for the next poll.
        """
        try:
            session = await self._sessions.acquire()
            files = await self.list_remote_files(session)
            for remote_path, info in files.items():
                await self.fetch(session, remote_path, info.mtime)
        except TransportError:
            await self._sessions.discard()
            raise
        self._remote_index = files
        logger.info("Pulled %d file(s) from %s", len(files), self._ctx.remote_root)
        return len(files)

    # ------------------------------------------------------------------
    # Live polling
    # ------------------------------------------------------------------

    async def poll_once(self) -> PollResult:
        """Apply remote changes since the previous poll to the local tree.

        New, newer (beyond the mtime skew) and differently-sized remote files
        are downloaded.  Files that vanished remotely since the previous poll
        are deleted locally unless edited locally within the protection
        window or waiting in the transfer queue.
        """
        result = PollResult()
        try:
            session = await self._sessions.acquire()
            current = await self.list_remote_files(session)
            for remote_path, info in current.items():
                local_path = local_path_from_remote(self._ctx, remote_path)
                if local_path is None:
                    continue
                if await self._needs_download(local_path, info):
                    await self.fetch(session, remote_path, info.mtime)
                    result.downloaded.append(str(local_path))
        except TransportError:
            await self._sessions.discard()
            raise

        for remote_path in self._remote_index.keys() - current.keys():
            local_path = local_path_from_remote(self._ctx, remote_path)
            if local_path is None:
                continue
            if self.has_recent_local_change(local_path) or (
                self._is_pending is not None and self._is_pending(_key(local_path))
            ):
                continue
            self.mark_suppressed(local_path)
            try:
                await asyncio.to_thread(os.remove, local_path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Could not delete local %s: %s", local_path, exc)
                continue
            self._local_changes.pop(_key(local_path), None)
            result.deleted.append(str(local_path))
            logger.info("Removed %s (deleted remotely)", local_path)

        self._remote_index = current
        return result

    async def _needs_download(self, local_path: Path, info: RemoteFileInfo) -> bool:
        try:
            local_stat = await asyncio.to_thread(os.stat, local_path)
        except FileNotFoundError:
            return True
        if local_stat.st_size != info.size:
            return True
        return info.mtime > local_stat.st_mtime + self._mtime_skew

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start_polling(self, interval: float | None = None) -> None:
        """Run :meth:`poll_once` now and then every *interval* seconds."""
        if self.is_polling:
            return
        period = interval if interval is not None else self._ctx.effective_poll_interval
        self._poll_task = asyncio.get_running_loop().create_task(
            self._poll_loop(period), name=f"poll-{self._ctx.id}"
        )
        logger.info("Polling %s every %.1fs", self._ctx.remote_root, period)

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll_loop(self, period: float) -> None:
        while True:
            try:
                result = await self.poll_once()
                if result.downloaded or result.deleted:
                    logger.info(
                        "Poll of %s: %d downloaded, %d deleted",
                        self._ctx.id,
                        len(result.downloaded),
                        len(result.deleted),
                    )
            except Exception as exc:
                logger.warning("Remote poll of %s failed: %s", self._ctx.id, exc)
                if self._tracker is not None:
                    self._tracker.update(last_error=str(exc))
            await asyncio.sleep(period)

    def _is_ignored(self, remote_path: str) -> bool:
        if self._ignore is None:
            return False
        local_path = local_path_from_remote(self._ctx, remote_path)
        return local_path is not None and self._ignore.should_ignore(local_path, self._ctx.local_root)

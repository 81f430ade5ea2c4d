"""Local change watcher feeding the transfer queue.

This module provides:
- IgnorePatterns: noise-path filtering (VCS metadata, dependency folders)
- ChangeWatcher: a watchdog observer whose events are settled per path on the
  asyncio loop and routed to upload or delete callbacks
- scan_local_files: a blocking walk used for full rescans
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from watchdog.events import (
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_PATTERNS = (".git", ".svn", ".hg", "node_modules")
IGNORE_FILE_NAME = ".sshmirrorignore"
SETTLE_SECONDS = 0.25

PathHandler = Callable[[str], None]


class ChangeKind(Enum):
    """Where a settled change is routed."""

    UPLOAD = "upload"
    DELETE = "delete"


class IgnorePatterns:
    """fnmatch-style patterns matched against every component of a path.

    A pattern matches when it matches any single component of the path
    relative to the root (``node_modules`` ignores the whole subtree) or the
    relative path as a whole (``build/*.o``).
    """

    def __init__(self, patterns: Iterable[str] | None = None) -> None:
        self._patterns = list(DEFAULT_IGNORE_PATTERNS)
        for pattern in patterns or ():
            self.add_pattern(pattern)

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        pattern = pattern.strip().rstrip("/")
        if pattern and pattern not in self._patterns:
            self._patterns.append(pattern)

    def load_from_file(self, path: Path) -> None:
        """Add patterns from an ignore file (``#`` starts a comment line)."""
        if not path.is_file():
            return
        with open(path, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line and not line.startswith("#"):
                    self.add_pattern(line)

    def should_ignore(self, path: str | os.PathLike[str], base_path: str | os.PathLike[str]) -> bool:
        """True if *path* (inside *base_path*) is a noise path."""
        try:
            rel = os.path.relpath(os.fspath(path), os.fspath(base_path))
        except ValueError:
            return False
        if rel == "." or rel.startswith(".."):
            return False
        rel = rel.replace("\\", "/")
        parts = rel.split("/")
        for pattern in self._patterns:
            if fnmatch.fnmatch(rel, pattern):
                return True
            if any(fnmatch.fnmatch(part, pattern) for part in parts):
                return True
        return False


def scan_local_files(root: str | os.PathLike[str], ignore: IgnorePatterns) -> list[str]:
    """Every regular, non-ignored file under *root* (blocking)."""
    root = os.fspath(root)
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not ignore.should_ignore(os.path.join(dirpath, d), root)
        )
        for name in sorted(filenames):
            full = os.path.join(dirpath, name)
            if ignore.should_ignore(full, root) or not os.path.isfile(full):
                continue
            found.append(full)
    return found


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


class _LoopForwardingHandler(FileSystemEventHandler):
    """Hands raw watchdog events (observer thread) to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, sink: Callable[[FileSystemEvent], None]) -> None:
        super().__init__()
        self._loop = loop
        self._sink = sink

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in ("created", "modified", "deleted", "moved"):
            return
        try:
            self._loop.call_soon_threadsafe(self._sink, event)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug("Dropped %s event for %s", event.event_type, event.src_path)


class ChangeWatcher:
    """Watches a local root and routes settled changes.

    Routing: created/modified files go to *on_upload*; deleted files and
    directories go to *on_delete*; a move is a delete of the source plus an
    upload of the destination (every file inside it, for directories).
    Directory created/modified events are ignored.  Each path waits for a
    quiet period of *settle_seconds* (re-armed by every event) before it is
    routed, so only settled files reach the queue.
    """

    def __init__(
        self,
        local_root: str | os.PathLike[str],
        on_upload: PathHandler,
        on_delete: PathHandler,
        ignore: IgnorePatterns | None = None,
        settle_seconds: float = SETTLE_SECONDS,
        is_suppressed: Optional[Callable[[str], bool]] = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self._root = os.path.abspath(os.fspath(local_root))
        self._on_upload = on_upload
        self._on_delete = on_delete
        self._ignore = ignore or IgnorePatterns()
        self._ignore.load_from_file(Path(self._root) / IGNORE_FILE_NAME)
        self._settle = settle_seconds
        self._is_suppressed = is_suppressed
        self._observer_factory = observer_factory

        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: BaseObserver | None = None
        self._pending: dict[str, ChangeKind] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def root(self) -> str:
        return self._root

    @property
    def ignore(self) -> IgnorePatterns:
        return self._ignore

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    @property
    def pending_paths(self) -> list[str]:
        return list(self._pending)

    def start(self) -> None:
        """Begin watching; must be called from the event loop."""
        if self._observer is not None:
            return
        if not os.path.isdir(self._root):
            raise ValueError(f"Watch path must be a directory: {self._root}")
        self._loop = asyncio.get_running_loop()
        observer = self._observer_factory()
        observer.schedule(
            _LoopForwardingHandler(self._loop, self.handle_event), self._root, recursive=True
        )
        observer.start()
        self._observer = observer
        logger.info("Watching %s", self._root)

    async def stop(self) -> None:
        """Stop event delivery and discard unsettled changes."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._pending.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
            logger.info("Stopped watching %s", self._root)

    # ------------------------------------------------------------------
    # Routing (event loop thread)
    # ------------------------------------------------------------------

    def handle_event(self, event: FileSystemEvent) -> None:
        """Route one raw watchdog event."""
        src = _decode(event.src_path)
        if event.event_type == "moved" and isinstance(event, FileSystemMovedEvent):
            dest = _decode(event.dest_path)
            self.route(src, ChangeKind.DELETE)
            if isinstance(event, DirMovedEvent) or event.is_directory:
                self._route_tree(dest)
            else:
                self.route(dest, ChangeKind.UPLOAD)
        elif event.event_type == "deleted":
            self.route(src, ChangeKind.DELETE)
        elif not event.is_directory:
            self.route(src, ChangeKind.UPLOAD)

    def route(self, path: str, kind: ChangeKind) -> None:
        """Schedule *path* for routing once it has settled."""
        if self._ignore.should_ignore(path, self._root):
            return
        self._pending[path] = kind
        previous = self._timers.pop(path, None)
        if previous is not None:
            previous.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._timers[path] = loop.call_later(self._settle, self._fire, path)

    def _route_tree(self, directory: str) -> None:
        if self._ignore.should_ignore(directory, self._root):
            return
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self._expand_tree(directory))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _expand_tree(self, directory: str) -> None:
        files = await asyncio.to_thread(scan_local_files, directory, self._ignore)
        for path in files:
            self.route(path, ChangeKind.UPLOAD)

    def _fire(self, path: str) -> None:
        self._timers.pop(path, None)
        kind = self._pending.pop(path, None)
        if kind is None:
            return
        if self._is_suppressed is not None and self._is_suppressed(path):
            logger.debug("Suppressed echo of %s", path)
            return
        handler = self._on_upload if kind is ChangeKind.UPLOAD else self._on_delete
        try:
            handler(path)
        except Exception:
            logger.exception("Exception routing %s for %s", kind.value, path)

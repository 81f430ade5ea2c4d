"""Shared fixtures: an in-memory remote session and a connection context."""

from __future__ import annotations

import hashlib
import posixpath
import shlex
import time
from collections import Counter
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest

from sshmirror.connection import LazySession, RemoteEntry, RemoteStat
from sshmirror.context import ConnectionContext


class FakeSession:
    """Implements the RemoteSession contract over dicts.

    ``calls`` counts protocol calls per operation, ``log`` keeps
    ``(operation, path)`` in call order.  ``fail_next(op, exc)`` makes the
    next call of *op* raise; ``fail_path(op, path, exc)`` fails every call of
    *op* on *path*.  ``hooks[op]`` is awaited before *op* runs.
    """

    chunk_size = 4

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.mtimes: dict[str, float] = {}
        self.dirs: set[str] = {"/"}
        self.calls: Counter[str] = Counter()
        self.log: list[tuple[str, str]] = []
        self.hooks: dict[str, Callable[[str], Awaitable[None]]] = {}
        self.exec_handler: Callable[[str], str] | None = None
        self.closed = False
        self._next_failures: dict[str, list[BaseException]] = {}
        self._path_failures: dict[tuple[str, str], BaseException] = {}

    # -- setup helpers -------------------------------------------------

    def add_dir(self, path: str) -> None:
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path) or "/"

    def add_file(self, path: str, data: bytes, mtime: float | None = None) -> None:
        self.add_dir(posixpath.dirname(path))
        self.files[path] = data
        self.mtimes[path] = time.time() if mtime is None else mtime

    def fail_next(self, op: str, exc: BaseException) -> None:
        self._next_failures.setdefault(op, []).append(exc)

    def fail_path(self, op: str, path: str, exc: BaseException) -> None:
        self._path_failures[(op, path)] = exc

    def ops(self, op: str) -> list[str]:
        return [path for name, path in self.log if name == op]

    # -- contract ------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return not self.closed

    async def _enter(self, op: str, path: str) -> None:
        self.calls[op] += 1
        self.log.append((op, path))
        hook = self.hooks.get(op)
        if hook is not None:
            await hook(path)
        pending = self._next_failures.get(op)
        if pending:
            raise pending.pop(0)
        exc = self._path_failures.get((op, path))
        if exc is not None:
            raise exc

    async def readdir(self, path: str) -> list[RemoteEntry]:
        await self._enter("readdir", path)
        if path not in self.dirs:
            raise FileNotFoundError(2, "No such file", path)
        entries = [
            RemoteEntry(name=posixpath.basename(d), is_directory=True)
            for d in self.dirs
            if d != path and posixpath.dirname(d) == path
        ]
        entries += [
            RemoteEntry(
                name=posixpath.basename(f),
                is_directory=False,
                size=len(data),
                mtime=self.mtimes.get(f, 0.0),
            )
            for f, data in self.files.items()
            if posixpath.dirname(f) == path
        ]
        return sorted(entries, key=lambda e: e.name)

    async def stat(self, path: str) -> RemoteStat | None:
        await self._enter("stat", path)
        if path in self.files:
            return RemoteStat(size=len(self.files[path]), is_directory=False, mtime=self.mtimes[path])
        if path in self.dirs:
            return RemoteStat(size=0, is_directory=True)
        return None

    async def read_stream(self, path: str, consume: Callable[[bytes], None]) -> int:
        await self._enter("read_stream", path)
        data = self.files[path]
        for offset in range(0, len(data), self.chunk_size):
            consume(data[offset:offset + self.chunk_size])
        return len(data)

    async def write_stream(
        self, local_path: str, remote_path: str, on_progress: Callable[[int], None] | None = None
    ) -> int:
        await self._enter("write_stream", remote_path)
        if posixpath.dirname(remote_path) not in self.dirs:
            raise FileNotFoundError(2, "No such file", remote_path)
        data = Path(local_path).read_bytes()
        self.files[remote_path] = b""
        sent = 0
        for offset in range(0, len(data), self.chunk_size):
            sent += len(data[offset:offset + self.chunk_size])
            if on_progress:
                on_progress(sent)
        self.files[remote_path] = data
        self.mtimes[remote_path] = time.time()
        return sent

    async def download(self, remote_path: str, local_path: str) -> None:
        await self._enter("download", remote_path)
        target = Path(local_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.files[remote_path])

    async def rename(self, src: str, dst: str) -> None:
        await self._enter("rename", src)
        self.files[dst] = self.files.pop(src)
        self.mtimes[dst] = self.mtimes.pop(src, time.time())

    async def utime(self, path: str, mtime: float) -> None:
        await self._enter("utime", path)
        if path not in self.files:
            raise FileNotFoundError(2, "No such file", path)
        self.mtimes[path] = mtime

    async def mkdir(self, path: str) -> None:
        await self._enter("mkdir", path)
        if path in self.dirs or path in self.files:
            raise OSError(f"Failure: {path} exists")
        if (posixpath.dirname(path) or "/") not in self.dirs:
            raise FileNotFoundError(2, "No such file", path)
        self.dirs.add(path)

    async def unlink(self, path: str) -> None:
        await self._enter("unlink", path)
        if path not in self.files:
            raise FileNotFoundError(2, "No such file", path)
        del self.files[path]
        self.mtimes.pop(path, None)

    async def rmdir(self, path: str) -> None:
        await self._enter("rmdir", path)
        children = [p for p in (*self.dirs, *self.files) if p != path and posixpath.dirname(p) == path]
        if children:
            raise OSError(f"Failure: {path} not empty")
        self.dirs.discard(path)

    async def exec(self, command: str) -> str:
        await self._enter("exec", command)
        if self.exec_handler is not None:
            return self.exec_handler(command)
        path = shlex.split(command)[-1]
        digest = hashlib.sha256(self.files[path]).hexdigest()
        return f"{digest}  {path}"

    async def close(self) -> None:
        self.closed = True


def factory_for(*sessions: Any) -> Callable[[ConnectionContext], Awaitable[Any]]:
    """Session factory handing out *sessions* in order (the last one repeats)."""
    remaining = list(sessions)
    opened: list[Any] = []

    async def _factory(ctx: ConnectionContext) -> Any:
        session = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        opened.append(session)
        return session

    _factory.opened = opened  # type: ignore[attr-defined]
    return _factory


@pytest.fixture()
def fake_session() -> FakeSession:
    session = FakeSession()
    session.add_dir("/remote")
    return session


@pytest.fixture()
def local_root(tmp_path: Path) -> Path:
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture()
def ctx(local_root: Path) -> ConnectionContext:
    return ConnectionContext(
        id="conn-a",
        host="example.test",
        username="dev",
        local_root=str(local_root),
        remote_root="/remote",
    )


@pytest.fixture()
def sessions(ctx: ConnectionContext, fake_session: FakeSession) -> LazySession:
    return LazySession(ctx, factory_for(fake_session))

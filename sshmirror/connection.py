"""SSH/SFTP session provider for SSHMirror.

``SSHConnection`` owns the paramiko client/SFTP channel pair and its
connection state machine.  Its methods block, so the engine talks to it
through ``RemoteSession``, an asyncio facade that runs every protocol call on
a worker thread and converts transport failures into :exc:`TransportError`.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import stat as _stat
import threading
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import keyring
import paramiko

if TYPE_CHECKING:
    from sshmirror.context import ConnectionContext

logger = logging.getLogger(__name__)

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]
ProgressCallback = Callable[[int], None]

KEYRING_SERVICE = "SSHMirror"
CHUNK_SIZE = 256 * 1024          # 256 KB per read/write call
_EXEC_TIMEOUT = 30               # seconds
_KEEPALIVE_INTERVAL = 30         # seconds
_DEFAULT_KEY_NAMES = ("id_ed25519", "id_rsa")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TransportError(Exception):
    """The SSH transport failed or the protocol session was lost."""


class NotConnectedError(TransportError):
    """An operation was attempted on a connection that is not open."""


class RemoteCommandError(Exception):
    """A remote command exited with a non-zero status."""

    def __init__(self, message: str, exit_code: int = -1, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class UnknownHostError(Exception):
    """The host key is not trusted yet (or no longer matches).

    Carries the offered key and its fingerprint so the caller can ask the
    user and persist it with :func:`accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


# Failures that mean the session itself is gone, as opposed to an SFTP
# status error (ENOENT, EACCES, ...) which paramiko raises as plain OSError.
_TRANSPORT_FAILURES: tuple[type[BaseException], ...] = (
    paramiko.SSHException,
    socket.timeout,
    ConnectionError,
    EOFError,
)


# ---------------------------------------------------------------------------
# Host keys
# ---------------------------------------------------------------------------


def _ssh_dir() -> Path:
    return Path.home() / ".ssh"


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Reject unknown hosts with an :exc:`UnknownHostError` carrying the key."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        fingerprint = ":".join(f"{b:02x}" for b in key.get_fingerprint())
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def accept_host_key(hostname: str, key: paramiko.PKey) -> None:
    """Trust *key* for *hostname* by adding it to ``~/.ssh/known_hosts``."""
    ssh_dir = _ssh_dir()
    ssh_dir.mkdir(mode=0o700, exist_ok=True)
    known_hosts = ssh_dir / "known_hosts"

    host_keys = paramiko.HostKeys()
    if known_hosts.exists():
        host_keys.load(str(known_hosts))
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts))
    logger.info("Saved host key for %s to %s", hostname, known_hosts)


def _close_client_safely(client: paramiko.SSHClient) -> None:
    try:
        client.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


# ---------------------------------------------------------------------------
# Blocking connection
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """Lifecycle of an :class:`SSHConnection`."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


class SSHConnection:
    """Blocking paramiko client plus SFTP channel for one host.

    ``_lock`` guards the state and the client/channel pair, so calls may come
    from any worker thread.  A dropped transport is not reconnected here: the
    next call raises :exc:`NotConnectedError` or a paramiko error, and the
    owning :class:`LazySession` opens a fresh connection.
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "",
        auth_type: str = "password",
        key_path: str | None = None,
        timeout: float = 15.0,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Store connection parameters; nothing is opened until :meth:`connect`.

        Args:
            host: Hostname or IP of the remote machine.
            port: SSH port.
            username: SSH username.
            auth_type: ``"password"`` (from the keyring) or ``"key"``.
            key_path: Private key file for ``"key"`` auth; the default
                ``~/.ssh`` keys are tried when omitted.
            timeout: TCP connect timeout in seconds.
            on_state_change: Called as ``(new_state, message)`` on every
                transition.
        """
        self.host = host
        self.port = port
        self.username = username
        self.auth_type = auth_type
        self.key_path = key_path
        self.timeout = timeout
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()

    @classmethod
    def from_context(cls, ctx: ConnectionContext) -> SSHConnection:
        return cls(
            host=ctx.host,
            port=ctx.port,
            username=ctx.username,
            auth_type=ctx.auth_type,
            key_path=ctx.key_path,
            timeout=ctx.timeout,
        )

    @property
    def account(self) -> str:
        """Keyring account name, ``user@host``."""
        return f"{self.username}@{self.host}"

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        """True while connected and the transport is still alive."""
        with self._lock:
            if self._state is not ConnectionState.CONNECTED or self._client is None:
                return False
            transport = self._client.get_transport()
            return transport is not None and transport.is_active()

    def _transition(self, state: ConnectionState, message: str | None = None) -> None:
        # Caller holds _lock
        self._state = state
        logger.debug("%s: %s%s", self.host, state.name, f" ({message})" if message else "")
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(state, message)
        except Exception:
            logger.exception("Exception in on_state_change callback")

    # ------------------------------------------------------------------
    # Open / close
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the SSH transport and SFTP channel; no-op if already open.

        Raises:
            UnknownHostError: Host key unknown or changed.
            paramiko.AuthenticationException: Credentials rejected.
            OSError: Network failure or timeout.
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                return
            self._transition(ConnectionState.CONNECTING)

        try:
            client, sftp = self._open()
        except Exception as exc:
            with self._lock:
                self._transition(ConnectionState.ERROR, str(exc))
            raise

        with self._lock:
            self._client, self._sftp = client, sftp
            self._transition(ConnectionState.CONNECTED)
        logger.info("Connected to %s@%s:%d", self.username, self.host, self.port)

    def _auth_kwargs(self) -> dict[str, Any]:
        """``SSHClient.connect`` arguments for the configured auth type."""
        if self.auth_type == "password":
            password = keyring.get_password(KEYRING_SERVICE, self.account)
            if password:
                return {"password": password, "look_for_keys": False}
            return {"look_for_keys": False}
        if self.key_path:
            return {"key_filename": self.key_path, "look_for_keys": True}
        candidates = [_ssh_dir() / name for name in _DEFAULT_KEY_NAMES]
        return {
            "key_filename": [str(p) for p in candidates if p.exists()],
            "look_for_keys": True,
        }

    def _open(self) -> tuple[paramiko.SSHClient, paramiko.SFTPClient]:
        logger.info("Connecting to %s@%s:%d", self.username, self.host, self.port)
        client = paramiko.SSHClient()
        known_hosts = _ssh_dir() / "known_hosts"
        if known_hosts.exists():
            client.load_host_keys(str(known_hosts))
        client.set_missing_host_key_policy(_CapturingPolicy())

        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                timeout=self.timeout,
                allow_agent=True,
                **self._auth_kwargs(),
            )
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(_KEEPALIVE_INTERVAL)
            sftp = client.open_sftp()
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key for {self.host} does not match {known_hosts}",
                hostname=self.host,
            ) from exc
        except Exception:
            _close_client_safely(client)
            raise
        return client, sftp

    def disconnect(self) -> None:
        """Close the SFTP channel and the transport; safe to repeat."""
        with self._lock:
            sftp, self._sftp = self._sftp, None
            client, self._client = self._client, None
            self._transition(ConnectionState.DISCONNECTED)
        if sftp is not None:
            try:
                sftp.close()
            except Exception as exc:
                logger.debug("Ignoring error while closing SFTP channel: %s", exc)
        if client is not None:
            _close_client_safely(client)
            logger.info("Disconnected from %s", self.host)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _require_open(self) -> tuple[paramiko.SSHClient, paramiko.SFTPClient]:
        with self._lock:
            if (
                self._state is not ConnectionState.CONNECTED
                or self._client is None
                or self._sftp is None
            ):
                raise NotConnectedError(f"Not connected to {self.host} (state: {self._state.name})")
            return self._client, self._sftp

    def get_sftp(self) -> paramiko.SFTPClient:
        """The open SFTP channel.

        Raises:
            NotConnectedError: The connection is not open.
        """
        return self._require_open()[1]

    def list_directory(self, remote_path: str) -> list[paramiko.SFTPAttributes]:
        """``listdir_attr`` of *remote_path*.

        Raises:
            ValueError: The path contains ``..`` or a NUL byte.
            OSError: SFTP status error (missing, permission denied).
        """
        from sshmirror.utils.path_helpers import validate_remote_path

        if not validate_remote_path(remote_path):
            raise ValueError(f"Invalid remote path: {remote_path!r}")
        entries: list[paramiko.SFTPAttributes] = self.get_sftp().listdir_attr(remote_path)
        logger.debug("Listed %d entries in %s", len(entries), remote_path)
        return entries

    def execute_command(self, command: str) -> tuple[str, str, int]:
        """Run *command*; return ``(stdout, stderr, exit_code)``."""
        client, _ = self._require_open()
        _, stdout, stderr = client.exec_command(command, timeout=_EXEC_TIMEOUT)
        exit_code = stdout.channel.recv_exit_status()
        return (
            stdout.read().decode("utf-8", errors="replace"),
            stderr.read().decode("utf-8", errors="replace"),
            exit_code,
        )

    # ------------------------------------------------------------------
    # Keyring
    # ------------------------------------------------------------------

    def store_password(self, password: str) -> None:
        keyring.set_password(KEYRING_SERVICE, self.account, password)
        logger.debug("Password stored in keyring for %s", self.account)

    def delete_password(self) -> None:
        try:
            keyring.delete_password(KEYRING_SERVICE, self.account)
        except keyring.errors.PasswordDeleteError:
            logger.debug("No stored password for %s", self.account)
            return
        logger.debug("Password deleted from keyring for %s", self.account)


# ---------------------------------------------------------------------------
# Async facade
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RemoteEntry:
    """One directory-listing row."""

    name: str
    is_directory: bool
    size: int = 0
    mtime: float = 0.0


@dataclass(frozen=True)
class RemoteStat:
    """Subset of SFTP attributes the engine relies on."""

    size: int
    is_directory: bool
    mtime: float = 0.0


def _is_dir(attr: paramiko.SFTPAttributes) -> bool:
    return isinstance(attr.st_mode, int) and _stat.S_ISDIR(attr.st_mode)


class RemoteSession:
    """Awaitable protocol operations on top of an :class:`SSHConnection`.

    Every method is a suspension point: the paramiko call runs on a worker
    thread via :func:`asyncio.to_thread`.  Transport-level failures are raised
    as :exc:`TransportError`; SFTP status errors stay ``OSError`` subclasses.
    """

    def __init__(self, connection: SSHConnection) -> None:
        """Wrap an already-connected *connection*."""
        self._connection = connection
        # One SFTP request at a time per channel
        self._lock = asyncio.Lock()

    @property
    def connection(self) -> SSHConnection:
        """The wrapped blocking connection."""
        return self._connection

    @property
    def is_open(self) -> bool:
        """True while the underlying transport is alive."""
        return self._connection.is_active

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            async with self._lock:
                return await asyncio.to_thread(func, *args)
        except TransportError:
            raise
        except _TRANSPORT_FAILURES as exc:
            raise TransportError(f"{self._connection.host}: {exc}") from exc

    # ------------------------------------------------------------------
    # Listing / metadata
    # ------------------------------------------------------------------

    async def readdir(self, path: str) -> list[RemoteEntry]:
        """List *path*; raises ``OSError`` if it is unreadable."""
        attrs = await self._call(self._connection.list_directory, path)
        return [
            RemoteEntry(
                name=attr.filename,
                is_directory=_is_dir(attr),
                size=attr.st_size or 0,
                mtime=float(attr.st_mtime or 0),
            )
            for attr in attrs
        ]

    async def stat(self, path: str) -> RemoteStat | None:
        """Return attributes for *path*, or None if it does not exist."""

        def _stat_blocking() -> RemoteStat | None:
            try:
                attr = self._connection.get_sftp().stat(path)
            except FileNotFoundError:
                return None
            return RemoteStat(
                size=attr.st_size or 0,
                is_directory=_is_dir(attr),
                mtime=float(attr.st_mtime or 0),
            )

        return await self._call(_stat_blocking)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def read_stream(self, path: str, consume: Callable[[bytes], None]) -> int:
        """Stream *path* in chunks into *consume*; return the byte count.

        *consume* runs on the worker thread, so it must not touch engine state.
        """

        def _read() -> int:
            total = 0
            with self._connection.get_sftp().open(path, "rb") as remote_fh:
                remote_fh.prefetch()
                while True:
                    chunk = remote_fh.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    consume(chunk)
                    total += len(chunk)
            return total

        return await self._call(_read)

    async def write_stream(
        self,
        local_path: str,
        remote_path: str,
        on_progress: ProgressCallback | None = None,
    ) -> int:
        """Copy *local_path* to *remote_path*; return the bytes written.

        ``on_progress(bytes_sent)`` is scheduled on the event loop after every
        chunk, so callers see offsets in order and before this coroutine
        returns.
        """
        loop = asyncio.get_running_loop()

        def _write() -> int:
            sent = 0
            with open(local_path, "rb") as local_fh:
                with self._connection.get_sftp().open(remote_path, "wb") as remote_fh:
                    # close() flushes every pipelined ACK before returning
                    remote_fh.set_pipelined(True)
                    while True:
                        chunk = local_fh.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        remote_fh.write(chunk)
                        sent += len(chunk)
                        if on_progress:
                            loop.call_soon_threadsafe(on_progress, sent)
            return sent

        return await self._call(_write)

    async def download(self, remote_path: str, local_path: str) -> None:
        """Fetch *remote_path* into *local_path*, creating parent directories."""

        def _get() -> None:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection.get_sftp().get(remote_path, local_path)

        await self._call(_get)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def rename(self, src: str, dst: str) -> None:
        """Rename *src* onto *dst*, replacing *dst* if it exists."""

        def _rename() -> None:
            sftp = self._connection.get_sftp()
            try:
                sftp.posix_rename(src, dst)
                return
            except OSError:
                logger.debug("posix_rename unsupported for %s; using rename", dst)
            try:
                sftp.rename(src, dst)
            except OSError:
                # plain SFTP rename refuses to overwrite
                sftp.remove(dst)
                sftp.rename(src, dst)

        await self._call(_rename)

    async def utime(self, path: str, mtime: float) -> None:
        """Set both access and modification time of *path* to *mtime*."""
        await self._call(lambda: self._connection.get_sftp().utime(path, (mtime, mtime)))

    async def mkdir(self, path: str) -> None:
        await self._call(lambda: self._connection.get_sftp().mkdir(path))

    async def unlink(self, path: str) -> None:
        await self._call(lambda: self._connection.get_sftp().remove(path))

    async def rmdir(self, path: str) -> None:
        await self._call(lambda: self._connection.get_sftp().rmdir(path))

    async def exec(self, command: str) -> str:
        """Run *command* remotely and return its stripped stdout.

        Raises:
            RemoteCommandError: The command exited non-zero.
        """
        stdout, stderr, exit_code = await self._call(
            self._connection.execute_command, command
        )
        if exit_code != 0:
            raise RemoteCommandError(
                stderr.strip() or f"Remote command exited with code {exit_code}",
                exit_code=exit_code,
                stderr=stderr,
            )
        return stdout.strip()

    async def close(self) -> None:
        """Disconnect; safe to call more than once."""
        await asyncio.to_thread(self._connection.disconnect)


async def open_session(ctx: ConnectionContext) -> RemoteSession:
    """Connect to the host described by *ctx* and return a session.

    Raises:
        UnknownHostError: Host key is not trusted yet.
        TransportError: Authentication or network failure.
    """
    connection = SSHConnection.from_context(ctx)
    try:
        await asyncio.to_thread(connection.connect)
    except UnknownHostError:
        raise
    except paramiko.AuthenticationException as exc:
        raise TransportError(f"Authentication failed for {ctx.username}@{ctx.host}") from exc
    except (paramiko.SSHException, OSError) as exc:
        raise TransportError(f"Could not connect to {ctx.host}:{ctx.port}: {exc}") from exc
    return RemoteSession(connection)


SessionFactory = Callable[["ConnectionContext"], Awaitable[RemoteSession]]


class LazySession:
    """A connection's remote session, opened on first use.

    After a :exc:`TransportError` the holder calls :meth:`discard`, and the next
    :meth:`acquire` opens a fresh session.  There is no background reconnect.
    """

    def __init__(self, ctx: ConnectionContext, factory: SessionFactory | None = None) -> None:
        self._ctx = ctx
        self._factory = factory or open_session
        self._session: RemoteSession | None = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._session is not None and self._session.is_open

    async def acquire(self) -> RemoteSession:
        """Return the open session, connecting if necessary."""
        async with self._lock:
            if self._session is not None and not self._session.is_open:
                logger.info("Session for %s went away; reconnecting", self._ctx.id)
                await self._close_quietly(self._session)
                self._session = None
            if self._session is None:
                self._session = await self._factory(self._ctx)
                logger.debug("Opened session for %s", self._ctx.id)
            return self._session

    async def discard(self) -> None:
        """Drop the current session so the next acquire reconnects."""
        async with self._lock:
            session, self._session = self._session, None
        if session is not None:
            await self._close_quietly(session)

    async def close(self) -> None:
        await self.discard()

    @staticmethod
    async def _close_quietly(session: RemoteSession) -> None:
        try:
            await session.close()
        except Exception as exc:
            logger.debug("Error closing session: %s", exc)

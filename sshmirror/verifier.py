"""Post-upload integrity verification.

Size is compared first; a mismatch is a hard failure.  The content hash is
then compared using the connection's strategy:

- ``VerifyMode.REMOTE_EXEC`` asks the remote host to hash the file
  (``sha256sum``, then ``shasum -a 256``).  Any failure of that strategy falls
  back to downloading the file and hashing it locally.
- ``VerifyMode.DOWNLOAD`` always downloads and hashes locally.

Size and hash mismatches raise distinct exceptions so callers can tell
"the upload was truncated" from "the upload landed but differs".
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sshmirror.context import VerifyMode
from sshmirror.utils.path_helpers import shell_quote

if TYPE_CHECKING:
    from sshmirror.connection import RemoteSession

logger = logging.getLogger(__name__)

HASH_COMMANDS = ("sha256sum {path}", "shasum -a 256 {path}")
_HEX_DIGEST = re.compile(r"[a-fA-F0-9]{64}")
_READ_SIZE = 1024 * 1024


class VerificationError(Exception):
    """Raised when an uploaded file does not match its local source."""


class SizeMismatchError(VerificationError):
    """Remote size differs from the local size."""

    def __init__(self, remote_path: str, local_size: int, remote_size: int) -> None:
        super().__init__(
            f"Upload verification failed (size mismatch): {remote_path} "
            f"is {remote_size} bytes, expected {local_size}"
        )
        self.local_size = local_size
        self.remote_size = remote_size


class HashMismatchError(VerificationError):
    """Sizes agree but the SHA-256 digests differ."""

    def __init__(self, remote_path: str, local_digest: str, remote_digest: str) -> None:
        super().__init__(f"Upload verification failed (hash mismatch): {remote_path}")
        self.local_digest = local_digest
        self.remote_digest = remote_digest


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a successful verification."""

    size: int
    digest: str
    strategy: VerifyMode


def hash_local_file(path: str | os.PathLike[str]) -> str:
    """Return the hex SHA-256 of a local file (blocking)."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_READ_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def parse_digest(output: str) -> str:
    """Extract the first 64-hex-digit token from hashing-command output.

    Raises:
        ValueError: No digest found.
    """
    match = _HEX_DIGEST.search(output)
    if not match:
        raise ValueError("Unable to parse remote hash")
    return match.group(0).lower()


class Verifier:
    """Confirms that a just-uploaded remote file matches its local source."""

    def __init__(self, verify_mode: VerifyMode = VerifyMode.REMOTE_EXEC) -> None:
        self.verify_mode = verify_mode

    async def verify_upload(
        self, session: RemoteSession, local_path: str, remote_path: str
    ) -> VerifyResult:
        """Verify *remote_path* against *local_path*.

        Raises:
            SizeMismatchError: Sizes differ (no hashing is attempted).
            HashMismatchError: Sizes agree, digests differ.
            VerificationError: The remote file is missing.
            TransportError: The session failed.
        """
        local_size = (await asyncio.to_thread(os.stat, local_path)).st_size
        remote_stat = await session.stat(remote_path)
        if remote_stat is None:
            raise VerificationError(
                f"Upload verification failed: {remote_path} does not exist"
            )
        if remote_stat.size != local_size:
            raise SizeMismatchError(remote_path, local_size, remote_stat.size)

        local_digest = await asyncio.to_thread(hash_local_file, local_path)
        remote_digest, strategy = await self.remote_hash(session, remote_path)
        if remote_digest != local_digest:
            raise HashMismatchError(remote_path, local_digest, remote_digest)

        logger.debug("Verified %s via %s (%s)", remote_path, strategy.value, local_digest[:12])
        return VerifyResult(size=local_size, digest=local_digest, strategy=strategy)

    async def remote_hash(
        self, session: RemoteSession, remote_path: str
    ) -> tuple[str, VerifyMode]:
        """Return ``(digest, strategy actually used)`` for *remote_path*."""
        if self.verify_mode is VerifyMode.REMOTE_EXEC:
            try:
                return await self.hash_via_exec(session, remote_path), VerifyMode.REMOTE_EXEC
            except Exception as exc:
                logger.warning(
                    "Remote hash unavailable for %s (%s); downloading to verify",
                    remote_path,
                    exc,
                )
        return await self.hash_via_download(session, remote_path), VerifyMode.DOWNLOAD

    async def hash_via_exec(self, session: RemoteSession, remote_path: str) -> str:
        """Hash *remote_path* with the first hashing command that works."""
        quoted = shell_quote(remote_path)
        last_error: Exception | None = None
        for template in HASH_COMMANDS:
            command = template.format(path=quoted)
            try:
                return parse_digest(await session.exec(command))
            except Exception as exc:
                logger.debug("%r failed: %s", command, exc)
                last_error = exc
        raise last_error or RuntimeError("Remote hash command unavailable")

    async def hash_via_download(self, session: RemoteSession, remote_path: str) -> str:
        """Stream *remote_path* back and hash it locally."""
        digest = hashlib.sha256()
        await session.read_stream(remote_path, digest.update)
        return digest.hexdigest()

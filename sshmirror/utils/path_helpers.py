"""Local/remote path mapping, normalisation and validation utilities."""

from __future__ import annotations

import logging
import os
import posixpath
import shlex
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sshmirror.context import ConnectionContext

logger = logging.getLogger(__name__)


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def normalize_remote_path(path: str) -> str:
    """Return *path* with forward slashes and redundant separators collapsed.

    ``normpath`` keeps a leading ``//`` (POSIX allows it to be special); remote
    SFTP roots never rely on that, so it is folded to a single slash.
    """
    if not path:
        return "."
    normalized = posixpath.normpath(path.replace("\\", "/"))
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe for SFTP operations.

    Rejects paths that contain null bytes or path-traversal sequences (``..``).
    """
    if "\x00" in path:
        logger.warning("Remote path rejected (contains null byte): %r", path)
        return False
    try:
        resolved = str(PurePosixPath(path))
    except Exception:
        logger.warning("Remote path rejected (could not parse): %r", path)
        return False
    if ".." in resolved.split("/"):
        logger.warning("Remote path rejected (contains '..'): %r", path)
        return False
    return True


def shell_quote(path: str) -> str:
    """Quote *path* for interpolation into a POSIX shell command."""
    return shlex.quote(path)


def remote_relative(root: str, target: str) -> str | None:
    """Return *target* relative to *root*, or None when it is the root itself
    or lies outside it."""
    relative = posixpath.relpath(normalize_remote_path(target), normalize_remote_path(root))
    if relative == "." or relative == ".." or relative.startswith("../"):
        return None
    return relative


def remote_path_from_local(ctx: ConnectionContext, local_path: str | os.PathLike[str]) -> str | None:
    """Re-root *local_path* under the connection's remote root.

    Returns None when the path is the local root itself or lies outside it.
    """
    root = os.path.abspath(ctx.local_root)
    target = os.path.abspath(local_path)
    try:
        relative = os.path.relpath(target, root)
    except ValueError:
        # Different drives on Windows
        return None
    if relative == os.curdir or relative == os.pardir or relative.startswith(os.pardir + os.sep):
        return None
    return posix_join(normalize_remote_path(ctx.remote_root), *relative.split(os.sep))


def local_path_from_remote(ctx: ConnectionContext, remote_path: str) -> Path | None:
    """Map *remote_path* back into the connection's local root, or None if it
    lies outside the remote root."""
    relative = remote_relative(ctx.remote_root, remote_path)
    if relative is None:
        return None
    return Path(ctx.local_root, *relative.split("/"))

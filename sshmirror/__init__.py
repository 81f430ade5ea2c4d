"""SSHMirror — keeps a local workspace and a remote SFTP tree in step."""

from __future__ import annotations

from sshmirror.config import ConfigManager
from sshmirror.context import ConnectionContext, SyncMode, VerifyMode
from sshmirror.engine import SyncEngine

__version__ = "0.1.0"

__all__ = [
    "ConfigManager",
    "ConnectionContext",
    "SyncEngine",
    "SyncMode",
    "VerifyMode",
    "__version__",
]

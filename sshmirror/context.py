"""Immutable per-connection settings passed into every engine call."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_PIN_THRESHOLD = 3
DEFAULT_PINNED_MAX_ENTRIES = 200
DEFAULT_POLL_INTERVAL = 5.0


class VerifyMode(Enum):
    """Strategy used to obtain the remote hash after an upload."""

    REMOTE_EXEC = "hash-via-remote-exec"
    DOWNLOAD = "download-and-hash"


class SyncMode(Enum):
    """How a watched connection keeps the two trees in step.

    ``MANUAL`` and ``UPLOAD`` only push local changes; ``LIVE`` additionally
    polls the remote tree and pulls newer files.
    """

    MANUAL = "manual"
    UPLOAD = "upload"
    LIVE = "live"


@dataclass(frozen=True)
class ConnectionContext:
    """Identity, roots, credentials and tuning for one sync session.

    Owned by the caller; the engine only ever reads it.
    """

    id: str
    host: str
    local_root: str
    remote_root: str
    port: int = 22
    username: str = ""
    auth_type: str = "password"
    key_path: str | None = None
    verify_mode: VerifyMode = VerifyMode.REMOTE_EXEC
    sync_mode: SyncMode = SyncMode.MANUAL
    pin_threshold: int = DEFAULT_PIN_THRESHOLD
    pinned_max_entries: int = DEFAULT_PINNED_MAX_ENTRIES
    poll_interval: float = DEFAULT_POLL_INTERVAL
    index_on_connect: bool = False
    timeout: float = 15.0
    ignore_patterns: tuple[str, ...] = field(default_factory=tuple)

    @property
    def effective_pin_threshold(self) -> int:
        """Pin threshold clamped to at least one visit."""
        return max(1, self.pin_threshold)

    @property
    def effective_poll_interval(self) -> float:
        """Poll interval clamped to at least one second."""
        return max(1.0, self.poll_interval)

    @classmethod
    def from_profile(
        cls, profile: dict[str, Any], config: dict[str, Any] | None = None
    ) -> ConnectionContext:
        """Build a context from a saved profile dict.

        Missing tuning keys fall back to the global *config* (as returned by
        ``ConfigManager.get_all()``) and then to the module defaults.
        """
        config = config or {}
        for required in ("host", "local_root", "remote_root"):
            if not profile.get(required):
                raise ValueError(f"Profile is missing required field {required!r}")

        def _pick(key: str, default: Any) -> Any:
            if key in profile and profile[key] is not None:
                return profile[key]
            return config.get(key, default)

        return cls(
            id=str(profile.get("id") or profile.get("name") or profile["host"]),
            host=profile["host"],
            port=int(profile.get("port", 22)),
            username=profile.get("username", ""),
            auth_type=profile.get("auth_type", "password"),
            key_path=profile.get("key_path"),
            local_root=os.path.abspath(os.path.expanduser(profile["local_root"])),
            remote_root=profile["remote_root"],
            verify_mode=VerifyMode(_pick("verify_mode", VerifyMode.REMOTE_EXEC.value)),
            sync_mode=SyncMode(_pick("sync_mode", SyncMode.MANUAL.value)),
            pin_threshold=int(_pick("pin_threshold", DEFAULT_PIN_THRESHOLD)),
            pinned_max_entries=int(_pick("pinned_max_entries", DEFAULT_PINNED_MAX_ENTRIES)),
            poll_interval=float(_pick("poll_interval_seconds", DEFAULT_POLL_INTERVAL)),
            index_on_connect=bool(_pick("index_on_connect", False)),
            timeout=float(_pick("ssh_timeout", 15.0)),
            ignore_patterns=tuple(_pick("ignore_patterns", ())),
        )

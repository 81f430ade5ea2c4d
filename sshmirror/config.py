"""Engine settings and connection profiles for SSHMirror.

Both live as JSON under ``~/.sshmirror/``: ``config.json`` holds the global
engine tuning (cache sizes, timings, default modes) and ``profiles.json`` the
saved connections.  A profile may override any tuning key for its own
connection.  Passwords never touch either file; they go to ``keyring``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable

from sshmirror.context import ConnectionContext, SyncMode, VerifyMode

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".sshmirror"

DEFAULT_CONFIG: dict[str, Any] = {
    "ssh_timeout": 15,
    "cache_max_entries": 800,
    "pin_threshold": 3,
    "pinned_max_entries": 200,
    "index_grace_seconds": 2.0,
    "progress_interval_ms": 200,
    "recent_limit": 8,
    "settle_ms": 250,
    "suppress_ttl_seconds": 2.0,
    "local_change_ttl_seconds": 20.0,
    "mtime_skew_seconds": 1.5,
    "poll_interval_seconds": 5,
    "verify_mode": VerifyMode.REMOTE_EXEC.value,
    "sync_mode": SyncMode.MANUAL.value,
    "index_on_connect": False,
    "ignore_patterns": [".git", ".svn", ".hg", "node_modules"],
}


def _non_negative(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _one_of(values: set[str]) -> Callable[[Any], bool]:
    return lambda value: value in values


def _string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


# A value failing its check falls back to the default for that key.
# pinned_max_entries <= 0 means "no cap", so any integer is accepted.
_VALIDATORS: dict[str, Callable[[Any], bool]] = {
    "ssh_timeout": _non_negative,
    "cache_max_entries": _non_negative,
    "pin_threshold": _non_negative,
    "pinned_max_entries": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "index_grace_seconds": _non_negative,
    "progress_interval_ms": _non_negative,
    "recent_limit": _positive_int,
    "settle_ms": _non_negative,
    "suppress_ttl_seconds": _non_negative,
    "local_change_ttl_seconds": _non_negative,
    "mtime_skew_seconds": _non_negative,
    "poll_interval_seconds": _non_negative,
    "verify_mode": _one_of({mode.value for mode in VerifyMode}),
    "sync_mode": _one_of({mode.value for mode in SyncMode}),
    "index_on_connect": lambda v: isinstance(v, bool),
    "ignore_patterns": _string_list,
}


def sanitize_settings(settings: dict[str, Any]) -> dict[str, Any]:
    """Return *settings* over the defaults with invalid known values reset.

    Unknown keys are kept untouched.
    """
    merged = dict(DEFAULT_CONFIG)
    for key, value in settings.items():
        check = _VALIDATORS.get(key)
        if check is not None and not check(value):
            logger.warning("Ignoring invalid %s=%r; using %r", key, value, DEFAULT_CONFIG[key])
            continue
        merged[key] = value
    return merged


class ConfigManager:
    """Reads and writes engine settings and connection profiles.

    Every write goes to a temporary file that then replaces the target, so an
    interrupted write never leaves a truncated file behind.  Unreadable or
    malformed files are reset with a warning instead of raising.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base = base_dir or Path.home() / CONFIG_DIR_NAME
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config = self._load_config()
        self._profiles = self._load_profiles()

    @property
    def base_dir(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _read_json(self, path: Path, expected: type, fallback: Any) -> Any:
        """Parse *path*; on any problem rewrite it with *fallback* and return that."""
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(loaded, expected):
                raise ValueError(f"expected a JSON {expected.__name__}, got {type(loaded).__name__}")
            return loaded
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt %s (%s); resetting", path.name, exc)
            self._atomic_write(path, fallback)
            return fallback

    def _load_config(self) -> dict[str, Any]:
        if not self._config_path.exists():
            logger.debug("No config file; writing defaults to %s", self._config_path)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config
        return sanitize_settings(self._read_json(self._config_path, dict, dict(DEFAULT_CONFIG)))

    def _load_profiles(self) -> list[dict[str, Any]]:
        if not self._profiles_path.exists():
            return []
        profiles = self._read_json(self._profiles_path, list, [])
        return [p for p in profiles if isinstance(p, dict)]

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set one setting and persist it.

        Raises:
            ValueError: *value* is not valid for a known setting.
        """
        self.update({key: value})

    def update(self, values: dict[str, Any]) -> None:
        """Set several settings with a single write; all or nothing."""
        for key, value in values.items():
            check = _VALIDATORS.get(key)
            if check is not None and not check(value):
                raise ValueError(f"Invalid value for {key}: {value!r}")
        self._config.update(values)
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s", ", ".join(f"{k}={v!r}" for k, v in values.items()))

    def get_all(self) -> dict[str, Any]:
        """Shallow copy of every setting, as passed to ``SyncEngine``."""
        return dict(self._config)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profiles(self) -> list[dict[str, Any]]:
        return [dict(p) for p in self._profiles]

    def get_profile(self, name: str) -> dict[str, Any] | None:
        index = self._index_of(name)
        return dict(self._profiles[index]) if index is not None else None

    def save_profile(self, profile: dict[str, Any]) -> None:
        """Insert or replace the profile with the same ``name``.

        Any ``password`` key is dropped before writing.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Profile must have a non-empty 'name' field")
        stored = {k: v for k, v in profile.items() if k != "password"}

        index = self._index_of(name)
        if index is None:
            self._profiles.append(stored)
        else:
            self._profiles[index] = stored
        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Profile saved: %s", name)

    def delete_profile(self, name: str) -> bool:
        """Remove the profile *name*; False if there was none."""
        index = self._index_of(name)
        if index is None:
            logger.warning("delete_profile: profile not found: %s", name)
            return False
        del self._profiles[index]
        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Profile deleted: %s", name)
        return True

    def build_context(self, name: str) -> ConnectionContext:
        """Resolve profile *name* against the current settings.

        Raises:
            KeyError: No profile with that name exists.
            ValueError: The profile lacks a host or a root, or names an
                unknown verify/sync mode.
        """
        profile = self.get_profile(name)
        if profile is None:
            raise KeyError(f"No such profile: {name!r}")
        return ConnectionContext.from_profile(profile, self._config)

    def _index_of(self, name: str) -> int | None:
        for index, profile in enumerate(self._profiles):
            if profile.get("name") == name:
                return index
        return None

"""In-memory cache of remote directory listings.

Listings are keyed by (connection id, normalised remote path).  Each
connection's listings, visit counters and pinned set live in a
:class:`CacheShard` that the connection's session owns; the process-wide
:class:`RemoteDirectoryCache` holds the shards and enforces one global cap on
the number of cached directories.

Eviction is LRU with pinning:

- A directory visited ``pin_threshold`` times is pinned.  Pinned entries are
  only evicted when every cached entry is pinned, and are unpinned when that
  happens.
- Each connection may pin at most ``pinned_max_entries`` directories; on
  overflow its least-recently-accessed pinned entry is demoted and evicted.
  Other connections' pins are never touched.

Every mutation is a plain synchronous method, so callers on the event loop
never observe a half-applied update.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from sshmirror.context import DEFAULT_PIN_THRESHOLD, DEFAULT_PINNED_MAX_ENTRIES
from sshmirror.utils.path_helpers import normalize_remote_path, posix_join

if TYPE_CHECKING:
    from sshmirror.connection import RemoteEntry
    from sshmirror.context import ConnectionContext

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 800


class NodeKind(Enum):
    """Kind of a remote tree node."""

    FILE = "file"
    DIRECTORY = "dir"


@dataclass(frozen=True)
class RemoteNode:
    """One child of a cached remote directory."""

    name: str
    path: str
    kind: NodeKind
    size: int = 0
    mtime: float = 0.0

    @property
    def is_directory(self) -> bool:
        return self.kind is NodeKind.DIRECTORY

    @classmethod
    def from_entry(cls, parent: str, entry: RemoteEntry) -> RemoteNode:
        """Build a node for *entry* listed inside *parent*."""
        kind = NodeKind.DIRECTORY if entry.is_directory else NodeKind.FILE
        return cls(
            name=entry.name,
            path=posix_join(parent, entry.name),
            kind=kind,
            size=0 if entry.is_directory else entry.size,
            mtime=entry.mtime,
        )


def nodes_from_entries(parent: str, entries: Iterable[RemoteEntry]) -> list[RemoteNode]:
    """Convert a raw listing of *parent* into cache nodes, preserving order."""
    return [RemoteNode.from_entry(parent, entry) for entry in entries]


@dataclass
class CacheEntry:
    """A cached listing plus its bookkeeping timestamps.

    ``last_access`` is a tick from the owning cache's monotonic counter, not
    wall time, so LRU order is exact even for accesses in the same instant.
    """

    nodes: list[RemoteNode]
    fetched_at: float = field(default_factory=time.time)
    last_access: int = 0


class CacheShard:
    """Listings, visit counters and pins for one connection."""

    def __init__(
        self,
        cache: RemoteDirectoryCache,
        connection_id: str,
        pin_threshold: int = DEFAULT_PIN_THRESHOLD,
        pinned_max_entries: int = DEFAULT_PINNED_MAX_ENTRIES,
    ) -> None:
        self._cache = cache
        self.connection_id = connection_id
        self.pin_threshold = max(1, pin_threshold)
        self.pinned_max_entries = pinned_max_entries
        self.entries: dict[str, CacheEntry] = {}
        self.access_counts: dict[str, int] = {}
        self.pinned: set[str] = set()

    def configure(self, ctx: ConnectionContext) -> None:
        """Pick up pin settings from the latest context for this connection."""
        self.pin_threshold = ctx.effective_pin_threshold
        self.pinned_max_entries = ctx.pinned_max_entries

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def get(self, path: str) -> list[RemoteNode] | None:
        """Return the cached children of *path* (or None) and record a visit."""
        key = normalize_remote_path(path)
        entry = self.entries.get(key)
        if entry is not None:
            # Touch first so a pin-cap demotion never picks this entry
            entry.last_access = self._cache.next_tick()
        self.record_access(key)
        return entry.nodes if entry is not None else None

    def put(self, path: str, nodes: list[RemoteNode]) -> None:
        """Replace the listing of *path* unconditionally."""
        key = normalize_remote_path(path)
        existing = self.entries.get(key)
        self.entries[key] = CacheEntry(
            nodes=list(nodes),
            last_access=existing.last_access if existing else self._cache.next_tick(),
        )
        self._cache.evict()

    def merge_diff(self, path: str, nodes: list[RemoteNode]) -> list[RemoteNode]:
        """Refresh *path*, keeping prior node objects that did not change.

        A prior node is reused when one exists at the same path with the same
        kind and size; otherwise the incoming node is adopted.  Children absent
        from *nodes* disappear.  Returns the merged listing.
        """
        key = normalize_remote_path(path)
        existing = self.entries.get(key)
        if existing is None:
            self.put(key, nodes)
            return self.entries[key].nodes if key in self.entries else list(nodes)

        current_by_path = {node.path: node for node in existing.nodes}
        merged: list[RemoteNode] = []
        for incoming in nodes:
            prior = current_by_path.get(incoming.path)
            if prior is not None and prior.kind is incoming.kind and prior.size == incoming.size:
                merged.append(prior)
            else:
                merged.append(incoming)

        self.entries[key] = CacheEntry(nodes=merged, last_access=existing.last_access)
        self._cache.evict()
        return merged

    def invalidate(self) -> None:
        """Drop every entry, counter and pin of this connection."""
        dropped = len(self.entries)
        self.entries.clear()
        self.access_counts.clear()
        self.pinned.clear()
        logger.debug("Invalidated %d cached directories for %s", dropped, self.connection_id)

    # ------------------------------------------------------------------
    # Pinning
    # ------------------------------------------------------------------

    def record_access(self, path: str) -> int:
        """Count a visit to *path*, pinning it once it crosses the threshold."""
        key = normalize_remote_path(path)
        count = self.access_counts.get(key, 0) + 1
        self.access_counts[key] = count
        if count >= self.pin_threshold and key not in self.pinned:
            self.pinned.add(key)
            logger.debug("Pinned %s:%s after %d visits", self.connection_id, key, count)
            self._enforce_pinned_limit()
        return count

    def is_pinned(self, path: str) -> bool:
        return normalize_remote_path(path) in self.pinned

    @property
    def pinned_count(self) -> int:
        return len(self.pinned)

    def _enforce_pinned_limit(self) -> None:
        if self.pinned_max_entries <= 0:
            return
        while len(self.pinned) > self.pinned_max_entries:
            # Pins without a cached listing sort first (tick 0)
            victim = min(
                self.pinned,
                key=lambda k: self.entries[k].last_access if k in self.entries else 0,
            )
            self.pinned.discard(victim)
            self.entries.pop(victim, None)
            self.access_counts.pop(victim, None)
            logger.debug("Demoted pinned %s:%s (pin cap reached)", self.connection_id, victim)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and normalize_remote_path(path) in self.entries


class RemoteDirectoryCache:
    """Process-wide holder of per-connection shards with a global size cap."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._shards: dict[str, CacheShard] = {}
        self._ticks = itertools.count(1)

    def next_tick(self) -> int:
        return next(self._ticks)

    def shard(self, ctx: ConnectionContext) -> CacheShard:
        """Return (creating if needed) the shard for *ctx*'s connection."""
        shard = self._shards.get(ctx.id)
        if shard is None:
            shard = CacheShard(
                self,
                ctx.id,
                pin_threshold=ctx.effective_pin_threshold,
                pinned_max_entries=ctx.pinned_max_entries,
            )
            self._shards[ctx.id] = shard
        else:
            shard.configure(ctx)
        return shard

    def drop_shard(self, connection_id: str) -> None:
        """Forget a connection entirely (its session is being torn down)."""
        self._shards.pop(connection_id, None)

    # ------------------------------------------------------------------
    # Connection-scoped convenience wrappers
    # ------------------------------------------------------------------

    def get(self, ctx: ConnectionContext, path: str) -> list[RemoteNode] | None:
        return self.shard(ctx).get(path)

    def put(self, ctx: ConnectionContext, path: str, nodes: list[RemoteNode]) -> None:
        self.shard(ctx).put(path, nodes)

    def merge_diff(
        self, ctx: ConnectionContext, path: str, nodes: list[RemoteNode]
    ) -> list[RemoteNode]:
        return self.shard(ctx).merge_diff(path, nodes)

    def invalidate_connection(self, ctx: ConnectionContext) -> None:
        self.shard(ctx).invalidate()

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards.values())

    def evict(self) -> None:
        """Evict least-recently-accessed entries until under the global cap."""
        while len(self) > self.max_entries:
            victim = self._oldest(pinned=False)
            if victim is None:
                victim = self._oldest(pinned=True)
                if victim is None:
                    break
                victim[0].pinned.discard(victim[1])
            shard, key = victim
            del shard.entries[key]
            logger.debug("Evicted cached listing %s:%s", shard.connection_id, key)

    def _oldest(self, pinned: bool) -> tuple[CacheShard, str] | None:
        """Least-recently-accessed entry among unpinned (or, with
        *pinned*, all) entries across every shard."""
        best: tuple[CacheShard, str] | None = None
        best_access = None
        for shard in self._shards.values():
            for key, entry in shard.entries.items():
                if not pinned and key in shard.pinned:
                    continue
                if best_access is None or entry.last_access < best_access:
                    best_access = entry.last_access
                    best = (shard, key)
        return best

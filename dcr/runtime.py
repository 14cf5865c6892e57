from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock

from .docker_ops import ObservedContainer


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class CacheEntry:
    observed: ObservedContainer | None  # None marks a removed container (tombstone)
    generation: int
    refreshed_at: str


class StatusCache:
    """Last-observed container states, keyed by container name.

    Every write carries a generation stamp. A write older than what the entry
    already holds is dropped, so a slow refresh that started before a
    reconciliation step cannot overwrite that step's result. Removals leave a
    tombstone with their generation for the same reason.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._generation = 0
        # Highest generation of a pruned tombstone; missing names need a newer write.
        self._floor = 0
        self.last_refresh_at: str | None = None
        self.last_refresh_error: str | None = None

    def next_generation(self) -> int:
        """Stamp for a write whose observation starts now."""
        with self.lock:
            self._generation += 1
            return self._generation

    def _accepts(self, name: str, generation: int) -> bool:
        cur = self._entries.get(name)
        if cur is None:
            return generation >= self._floor
        return generation >= cur.generation

    def _bump(self, generation: int) -> None:
        if generation > self._generation:
            self._generation = generation

    def put(self, name: str, observed: ObservedContainer, generation: int) -> bool:
        """Store ``observed`` unless a newer generation is already held. Returns whether it was stored."""
        with self.lock:
            self._bump(generation)
            if not self._accepts(name, generation):
                return False
            self._entries[name] = CacheEntry(observed=observed, generation=generation, refreshed_at=utc_now())
            return True

    def invalidate(self, name: str, generation: int | None = None) -> bool:
        with self.lock:
            if generation is None:
                self._generation += 1
                generation = self._generation
            self._bump(generation)
            if not self._accepts(name, generation):
                return False
            self._entries[name] = CacheEntry(observed=None, generation=generation, refreshed_at=utc_now())
            return True

    def replace_all(self, observed: list[ObservedContainer], generation: int) -> None:
        """Apply a completed full listing taken at ``generation``.

        Names the runtime no longer reports are evicted, subject to the same
        generation check as single writes. Tombstones older than the listing
        are dropped: the listing itself confirms those containers are gone.
        """
        seen = {o.name for o in observed}
        with self.lock:
            self._bump(generation)
            now = utc_now()
            for o in observed:
                if self._accepts(o.name, generation):
                    self._entries[o.name] = CacheEntry(observed=o, generation=generation, refreshed_at=now)
            for name, entry in list(self._entries.items()):
                if name in seen or entry.observed is None:
                    continue
                if self._accepts(name, generation):
                    self._entries[name] = CacheEntry(observed=None, generation=generation, refreshed_at=now)
            for name, entry in list(self._entries.items()):
                if entry.observed is None and name not in seen and entry.generation < generation:
                    del self._entries[name]
                    self._floor = max(self._floor, entry.generation)

    def get(self, name: str) -> ObservedContainer | None:
        with self.lock:
            entry = self._entries.get(name)
            return entry.observed if entry else None

    def list(self) -> list[ObservedContainer]:
        with self.lock:
            return [e.observed for e in self._entries.values() if e.observed is not None]

    def find(self, ref: str) -> ObservedContainer | None:
        """Look a container up by name, full id or id prefix (12+ chars)."""
        with self.lock:
            entry = self._entries.get(ref)
            if entry and entry.observed is not None:
                return entry.observed
            for e in self._entries.values():
                o = e.observed
                if o is None:
                    continue
                if o.id == ref or (len(ref) >= 12 and o.id.startswith(ref)):
                    return o
            return None

    def mark_refresh(self, ok: bool, error: str | None = None) -> None:
        with self.lock:
            self.last_refresh_at = utc_now()
            self.last_refresh_error = None if ok else (error or "refresh failed")

    @property
    def stale(self) -> bool:
        with self.lock:
            return self.last_refresh_error is not None

"""ThumbnailCache: in-memory, single-flight store for preview bitmaps.

Entries are keyed by ``ThumbnailKey`` (normalized path, byte size, mtime in
nanoseconds). A changed file therefore produces a new key and never sees
the bitmap generated for its previous content.

Lifecycle of one entry::

    reserve(key) -> PENDING --publish(bitmap)--> READY
                             --publish(failure)-> FAILED (expires after the cooldown)
                             --publish(CANCELLED)-> dropped

The cache is bounded by the total number of decoded pixels it holds. When
over budget the least recently used READY entries are evicted; PENDING
entries are never evicted. FAILED entries are swept once their cooldown has
passed, and at most ``max_failed`` of them are kept.
"""

from __future__ import annotations

import enum
import os
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from file_lister.errors import ErrorKind
from file_lister.logger import get_logger
from file_lister.path_utils import path_key

from .decoder import Bitmap
from .metrics import metrics

_logger = get_logger("thumbnail_cache")

DEFAULT_PIXEL_BUDGET = 64_000_000
DEFAULT_FAILURE_COOLDOWN = 30.0
DEFAULT_MAX_FAILED = 10_000


class EntryState(enum.Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ThumbnailKey:
    path: str
    size_bytes: int
    mtime_ns: int

    def __post_init__(self) -> None:
        if not str(self.path).strip():
            raise ValueError("ThumbnailKey.path must not be empty")
        if self.size_bytes < 0 or self.mtime_ns < 0:
            raise ValueError(f"invalid ThumbnailKey metadata: size={self.size_bytes} mtime={self.mtime_ns}")
        object.__setattr__(self, "path", path_key(self.path))

    @classmethod
    def for_path(cls, path: str | Path) -> ThumbnailKey:
        """Build the key for the file as it is on disk now (raises OSError)."""
        st = os.stat(path)
        return cls(str(path), int(st.st_size), int(st.st_mtime_ns))


@dataclass(frozen=True)
class ThumbnailFailure:
    kind: ErrorKind
    message: str = ""


@dataclass(frozen=True)
class ThumbnailEntry:
    """Read-only view of a cache entry handed out to callers."""

    key: ThumbnailKey
    state: EntryState
    bitmap: Bitmap | None = None
    failure: ThumbnailFailure | None = None

    @property
    def ready(self) -> bool:
        return self.state is EntryState.READY

    @property
    def failed(self) -> bool:
        return self.state is EntryState.FAILED

    @property
    def pending(self) -> bool:
        return self.state is EntryState.PENDING


class _Slot:
    __slots__ = ("bitmap", "done", "failed_at", "failure", "stale", "state")

    def __init__(self) -> None:
        self.state = EntryState.PENDING
        self.bitmap: Bitmap | None = None
        self.failure: ThumbnailFailure | None = None
        self.failed_at = 0.0
        self.stale = False
        self.done = threading.Event()


class ThumbnailCache:
    """Thread-safe bounded thumbnail store shared by the UI thread and workers."""

    def __init__(
        self,
        pixel_budget: int = DEFAULT_PIXEL_BUDGET,
        failure_cooldown: float = DEFAULT_FAILURE_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
        max_failed: int = DEFAULT_MAX_FAILED,
    ) -> None:
        if pixel_budget <= 0:
            raise ValueError("pixel_budget must be positive")
        self._pixel_budget = int(pixel_budget)
        self._failure_cooldown = float(failure_cooldown)
        self._max_failed = max(1, int(max_failed))
        self._clock = clock
        self._slots: OrderedDict[ThumbnailKey, _Slot] = OrderedDict()
        # FAILED keys in the order they failed (oldest first).
        self._failed: OrderedDict[ThumbnailKey, None] = OrderedDict()
        self._by_path: dict[str, set[ThumbnailKey]] = {}
        self._pixels = 0
        self._lock = threading.Lock()

    # ---- internal helpers (lock held) -----------------------------
    def _snapshot(self, key: ThumbnailKey, slot: _Slot) -> ThumbnailEntry:
        return ThumbnailEntry(key, slot.state, slot.bitmap, slot.failure)

    def _expired(self, slot: _Slot) -> bool:
        return slot.state is EntryState.FAILED and self._clock() - slot.failed_at >= self._failure_cooldown

    def _drop(self, key: ThumbnailKey) -> _Slot | None:
        slot = self._slots.pop(key, None)
        if slot is None:
            return None
        if slot.state is EntryState.READY and slot.bitmap is not None:
            self._pixels -= slot.bitmap.pixel_count
        self._failed.pop(key, None)
        keys = self._by_path.get(key.path)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_path[key.path]
        return slot

    def _evict(self) -> None:
        if self._pixels <= self._pixel_budget:
            return
        for key in list(self._slots):
            if self._pixels <= self._pixel_budget:
                break
            if self._slots[key].state is not EntryState.READY:
                continue
            self._drop(key)
            metrics.inc("thumbnail.evictions")
            _logger.debug("evicted thumbnail: %s pixels_now=%d", key.path, self._pixels)

    def _sweep_failed(self, room: int = 0) -> None:
        """Drop expired FAILED entries, then the oldest ones beyond ``max_failed - room``."""
        swept = 0
        while self._failed:
            key = next(iter(self._failed))
            slot = self._slots.get(key)
            if slot is not None and len(self._failed) + room <= self._max_failed and not self._expired(slot):
                break
            if slot is None:
                del self._failed[key]
            else:
                self._drop(key)
            swept += 1
        if swept:
            _logger.debug("swept %d failed thumbnail(s)", swept)

    # ---- public API -----------------------------------------------
    def get(self, key: ThumbnailKey) -> ThumbnailEntry | None:
        """Non-blocking lookup; never starts a generation."""
        with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                return None
            if self._expired(slot):
                self._drop(key)
                return None
            self._slots.move_to_end(key)
            return self._snapshot(key, slot)

    def reserve(self, key: ThumbnailKey) -> bool:
        """Claim the right to generate ``key``; False if someone holds it or a result exists."""
        with self._lock:
            slot = self._slots.get(key)
            if slot is not None:
                if not self._expired(slot):
                    return False
                self._drop(key)
            self._slots[key] = _Slot()
            self._by_path.setdefault(key.path, set()).add(key)
            return True

    def publish(self, key: ThumbnailKey, result: Bitmap | ThumbnailFailure) -> ThumbnailEntry | None:
        """Resolve a PENDING entry, wake its waiters and return the resolved entry.

        The returned entry is what the cache actually recorded: a result for
        a path invalidated meanwhile comes back as a CANCELLED failure. Returns
        None when there was no claim to resolve.
        """
        if not isinstance(result, (Bitmap, ThumbnailFailure)):
            raise TypeError(f"publish expects Bitmap or ThumbnailFailure, got {type(result).__name__}")
        with self._lock:
            slot = self._slots.get(key)
            if slot is None or slot.state is not EntryState.PENDING:
                _logger.debug("publish ignored (no pending claim): %s", key.path)
                return None
            if slot.stale:
                result = ThumbnailFailure(ErrorKind.CANCELLED, "invalidated while generating")
            if isinstance(result, Bitmap):
                slot.state = EntryState.READY
                slot.bitmap = result
                self._pixels += result.pixel_count
                self._slots.move_to_end(key)
                self._sweep_failed()
            elif result.kind is ErrorKind.CANCELLED:
                slot.state = EntryState.FAILED
                slot.failure = result
                # Release the claim without caching anything.
                self._drop(key)
            else:
                self._sweep_failed(room=1)
                slot.state = EntryState.FAILED
                slot.failure = result
                slot.failed_at = self._clock()
                self._failed[key] = None
            slot.done.set()
            self._evict()
            return self._snapshot(key, slot)

    def wait(self, key: ThumbnailKey, timeout: float | None = None) -> ThumbnailEntry | None:
        """Block until ``key`` is no longer PENDING and return its entry."""
        with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                return None
        slot.done.wait(timeout)
        with self._lock:
            return self._snapshot(key, slot)

    def invalidate(self, path: str | Path) -> int:
        """Forget every entry for ``path`` regardless of size/mtime."""
        pkey = path_key(path)
        removed = 0
        with self._lock:
            for key in list(self._by_path.get(pkey, ())):
                slot = self._slots[key]
                if slot.state is EntryState.PENDING:
                    # The running generation publishes into this slot and drops it.
                    slot.stale = True
                    continue
                self._drop(key)
                removed += 1
        if removed:
            _logger.debug("invalidated %d thumbnail(s) for %s", removed, pkey)
        return removed

    def clear(self) -> None:
        with self._lock:
            for key in [k for k, s in self._slots.items() if s.state is not EntryState.PENDING]:
                self._drop(key)

    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {state: 0 for state in EntryState}
            for slot in self._slots.values():
                counts[slot.state] += 1
            return {
                "entries": len(self._slots),
                "pixels": self._pixels,
                "pixel_budget": self._pixel_budget,
                "pending": counts[EntryState.PENDING],
                "ready": counts[EntryState.READY],
                "failed": counts[EntryState.FAILED],
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import numpy as np
import pytest

from file_lister.errors import ErrorKind
from file_lister.scan_engine.decoder import Bitmap
from file_lister.scan_engine.thumbnail_cache import EntryState, ThumbnailCache, ThumbnailFailure, ThumbnailKey


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _bitmap(w: int = 4, h: int = 3) -> Bitmap:
    return Bitmap.from_array(np.zeros((h, w, 3), dtype=np.uint8))


def _key(name: str, size: int = 10, mtime: int = 1) -> ThumbnailKey:
    return ThumbnailKey(f"/pics/{name}", size, mtime)


def test_reserve_publish_get_roundtrip() -> None:
    cache = ThumbnailCache()
    key = _key("a.jpg")

    assert cache.get(key) is None
    assert cache.reserve(key) is True
    assert cache.reserve(key) is False
    assert cache.get(key).state is EntryState.PENDING

    bmp = _bitmap()
    published = cache.publish(key, bmp)
    assert published.ready and published.bitmap is bmp
    entry = cache.get(key)
    assert entry.ready
    assert entry.bitmap is bmp
    assert not entry.bitmap.pixels.flags.writeable
    # A READY entry blocks new claims.
    assert cache.reserve(key) is False
    # Second publish has no claim to resolve.
    assert cache.publish(key, _bitmap()) is None


def test_changed_size_or_mtime_is_a_different_key(tmp_path: Path) -> None:
    f = tmp_path / "pic.png"
    f.write_bytes(b"12345")
    cache = ThumbnailCache()
    old = ThumbnailKey.for_path(f)
    cache.reserve(old)
    cache.publish(old, _bitmap())

    f.write_bytes(b"123456789")
    os.utime(f, ns=(old.mtime_ns + 5_000_000_000, old.mtime_ns + 5_000_000_000))
    new = ThumbnailKey.for_path(f)

    assert new != old
    assert cache.get(new) is None
    assert cache.get(old).ready


def test_key_normalizes_path_and_validates() -> None:
    assert ThumbnailKey("/pics/../pics/a.jpg", 1, 1) == ThumbnailKey("/pics/a.jpg", 1, 1)
    with pytest.raises(ValueError):
        ThumbnailKey("", 1, 1)
    with pytest.raises(ValueError):
        ThumbnailKey("/pics/a.jpg", -1, 1)


def test_failed_entries_expire_after_cooldown() -> None:
    clock = _Clock()
    cache = ThumbnailCache(failure_cooldown=30.0, clock=clock)
    key = _key("clip.mp4")
    cache.reserve(key)
    cache.publish(key, ThumbnailFailure(ErrorKind.TOOL_UNAVAILABLE, "ffmpeg not found"))

    entry = cache.get(key)
    assert entry.failed and entry.failure.kind is ErrorKind.TOOL_UNAVAILABLE
    assert cache.reserve(key) is False

    clock.now += 31
    assert cache.get(key) is None
    assert cache.reserve(key) is True


def test_cancelled_publish_releases_claim() -> None:
    cache = ThumbnailCache()
    key = _key("a.jpg")
    cache.reserve(key)

    cache.publish(key, ThumbnailFailure(ErrorKind.CANCELLED))

    assert cache.get(key) is None
    assert cache.reserve(key) is True


def test_eviction_by_pixel_budget_is_lru_and_spares_pending() -> None:
    cache = ThumbnailCache(pixel_budget=100)
    a, b, c, p = _key("a.jpg"), _key("b.jpg"), _key("c.jpg"), _key("p.jpg")
    cache.reserve(p)  # stays pending throughout
    for k in (a, b):
        cache.reserve(k)
        cache.publish(k, _bitmap(5, 8))  # 40 px each
    cache.get(a)  # a is now more recent than b

    cache.reserve(c)
    cache.publish(c, _bitmap(5, 8))  # 120 px > budget -> evict LRU READY (b)

    assert cache.get(b) is None
    assert cache.get(a).ready
    assert cache.get(c).ready
    assert cache.get(p).pending
    assert cache.stats()["pixels"] == 80


def test_invalidate_drops_every_entry_for_path() -> None:
    cache = ThumbnailCache()
    k1, k2, other = _key("a.jpg", 1), _key("a.jpg", 2), _key("b.jpg")
    for k in (k1, k2, other):
        cache.reserve(k)
        cache.publish(k, _bitmap())

    assert cache.invalidate("/pics/a.jpg") == 2
    assert cache.get(k1) is None and cache.get(k2) is None
    assert cache.get(other).ready


def test_invalidate_while_pending_discards_late_result() -> None:
    cache = ThumbnailCache()
    key = _key("a.jpg")
    cache.reserve(key)

    cache.invalidate("/pics/a.jpg")
    # The in-flight claim is still held until its owner publishes.
    assert cache.reserve(key) is False
    cache.publish(key, _bitmap())

    assert cache.get(key) is None
    assert cache.reserve(key) is True


def test_wait_wakes_joiners_with_the_same_entry() -> None:
    cache = ThumbnailCache()
    key = _key("a.jpg")
    cache.reserve(key)
    seen = []
    barrier = threading.Barrier(4)

    def joiner() -> None:
        barrier.wait()
        seen.append(cache.wait(key, timeout=5))

    threads = [threading.Thread(target=joiner) for _ in range(3)]
    for t in threads:
        t.start()
    barrier.wait()
    time.sleep(0.05)
    bmp = _bitmap()
    cache.publish(key, bmp)
    for t in threads:
        t.join()

    assert len(seen) == 3
    assert all(e.ready and e.bitmap is bmp for e in seen)


def test_publish_rejects_wrong_type() -> None:
    cache = ThumbnailCache()
    key = _key("a.jpg")
    cache.reserve(key)
    with pytest.raises(TypeError):
        cache.publish(key, "not a bitmap")  # type: ignore[arg-type]


def test_late_result_for_invalidated_path_comes_back_cancelled() -> None:
    cache = ThumbnailCache()
    key = _key("a.jpg")
    cache.reserve(key)
    cache.invalidate("/pics/a.jpg")

    entry = cache.publish(key, _bitmap())

    assert entry.failed
    assert entry.failure.kind is ErrorKind.CANCELLED
    assert entry.bitmap is None
    assert len(cache) == 0


def test_expired_failures_do_not_accumulate() -> None:
    cache = ThumbnailCache(failure_cooldown=0.0)
    for i in range(2000):
        key = _key(f"broken{i}.jpg")
        cache.reserve(key)
        cache.publish(key, ThumbnailFailure(ErrorKind.DECODE_ERROR, "bad header"))

    stats = cache.stats()
    assert stats["failed"] <= 1
    assert stats["entries"] <= 1


def test_failed_entries_are_swept_when_another_key_resolves() -> None:
    clock = _Clock()
    cache = ThumbnailCache(failure_cooldown=30.0, clock=clock)
    for name in ("a.mp4", "b.mp4"):
        cache.reserve(_key(name))
        cache.publish(_key(name), ThumbnailFailure(ErrorKind.TIMEOUT))

    clock.now += 31
    cache.reserve(_key("c.jpg"))
    cache.publish(_key("c.jpg"), _bitmap())

    assert cache.stats()["failed"] == 0
    assert len(cache) == 1


def test_failed_entries_are_capped() -> None:
    cache = ThumbnailCache(failure_cooldown=3600.0, max_failed=3)
    keys = [_key(f"f{i}.jpg") for i in range(5)]
    for key in keys:
        cache.reserve(key)
        cache.publish(key, ThumbnailFailure(ErrorKind.UNSUPPORTED_FORMAT))

    assert cache.stats()["failed"] == 3
    assert cache.get(keys[0]) is None and cache.get(keys[1]) is None
    assert cache.get(keys[4]).failed

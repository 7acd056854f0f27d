from __future__ import annotations

import os
import sys
import threading
import time
from pathlib import Path

import numpy as np
import pytest

from file_lister.classifier import Category
from file_lister.errors import ErrorKind, ThumbnailError
from file_lister.scan_engine import generators
from file_lister.scan_engine.cancel import CancelToken
from file_lister.scan_engine.decoder import Bitmap
from file_lister.scan_engine.generators import PdfProducer, ThumbnailGenerator, VideoProducer
from file_lister.scan_engine.thumbnail_cache import ThumbnailCache, ThumbnailKey

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake ffmpeg is a shell script")


def _bitmap() -> Bitmap:
    return Bitmap.from_array(np.full((2, 2, 3), 7, dtype=np.uint8))


class _GatedProducer:
    def __init__(self, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail
        self.started = threading.Event()
        self.release = threading.Event()

    def generate(self, path: str, cancel: CancelToken) -> Bitmap:
        self.calls += 1
        self.started.set()
        self.release.wait(5)
        if self.fail:
            raise ThumbnailError(ErrorKind.DECODE_ERROR, "broken file")
        return _bitmap()


def _concurrent_requests(gen: ThumbnailGenerator, producer: _GatedProducer, path: Path) -> list:
    barrier = threading.Barrier(3)
    results: list = []

    def caller() -> None:
        barrier.wait()
        results.append(gen.request(path))

    threads = [threading.Thread(target=caller) for _ in range(3)]
    for t in threads:
        t.start()
    assert producer.started.wait(5)
    time.sleep(0.1)
    producer.release.set()
    for t in threads:
        t.join(5)
    return results


@pytest.mark.parametrize("fail", [False, True])
def test_three_callers_share_one_generation(tmp_path: Path, metrics_reset, fail: bool) -> None:
    img = tmp_path / "shot.png"
    img.write_bytes(b"not really a png")
    producer = _GatedProducer(fail=fail)
    gen = ThumbnailGenerator(ThumbnailCache(), {Category.IMAGE: producer})

    results = _concurrent_requests(gen, producer, img)

    assert producer.calls == 1
    assert metrics_reset.get("thumbnail.generate_attempts") == 1
    assert len(results) == 3
    if fail:
        assert all(e.failed and e.failure.kind is ErrorKind.DECODE_ERROR for e in results)
    else:
        assert all(e.ready for e in results)
        assert len({id(e.bitmap) for e in results}) == 1


def test_request_unknown_category_fails_unsupported(tmp_path: Path) -> None:
    f = tmp_path / "notes.txt"
    f.write_text("hi", encoding="utf-8")
    cache = ThumbnailCache()

    entry = ThumbnailGenerator(cache, {}).request(f)

    assert entry.failed and entry.failure.kind is ErrorKind.UNSUPPORTED_FORMAT
    assert cache.get(ThumbnailKey.for_path(f)).failed


def test_request_missing_file_raises_typed_error(tmp_path: Path) -> None:
    with pytest.raises(ThumbnailError) as info:
        ThumbnailGenerator(ThumbnailCache(), {}).request(tmp_path / "gone.jpg")
    assert info.value.kind is ErrorKind.NOT_FOUND


def test_producer_crash_still_publishes(tmp_path: Path) -> None:
    class Boom:
        def generate(self, path, cancel):
            raise RuntimeError("boom")

    f = tmp_path / "a.jpg"
    f.write_bytes(b"x")
    cache = ThumbnailCache()
    gen = ThumbnailGenerator(cache, {Category.IMAGE: Boom()})

    entry = gen.request(f)

    assert entry.failed
    assert cache.stats()["pending"] == 0


def test_cancelled_request_releases_claim(tmp_path: Path) -> None:
    f = tmp_path / "a.jpg"
    f.write_bytes(b"x")
    cache = ThumbnailCache()
    token = CancelToken()
    token.cancel()

    entry = ThumbnailGenerator(cache, {Category.IMAGE: _GatedProducer()}).request(f, token)

    assert entry.failure.kind is ErrorKind.CANCELLED
    assert cache.get(ThumbnailKey.for_path(f)) is None


def test_owner_does_not_return_bitmap_for_path_invalidated_mid_generation(tmp_path: Path) -> None:
    img = tmp_path / "before.jpg"
    img.write_bytes(b"x")
    cache = ThumbnailCache()

    class RenamedWhileDecoding:
        def generate(self, path, cancel):
            img.rename(tmp_path / "after.jpg")
            cache.invalidate(path)
            return _bitmap()

    entry = ThumbnailGenerator(cache, {Category.IMAGE: RenamedWhileDecoding()}).request(img)

    assert not entry.ready
    assert entry.bitmap is None
    assert entry.failure.kind is ErrorKind.CANCELLED
    assert len(cache) == 0


# ---- video ---------------------------------------------------------


def _fake_ffmpeg(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "fake-ffmpeg"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_video_default_timeout_is_ten_seconds() -> None:
    assert generators.DEFAULT_VIDEO_TIMEOUT == 10.0


def test_video_without_tool_is_tool_unavailable(tmp_path: Path) -> None:
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"\x00")
    producer = VideoProducer(ffmpeg_path=str(tmp_path / "no-such-ffmpeg"))

    with pytest.raises(ThumbnailError) as info:
        producer.generate(str(clip), CancelToken())
    assert info.value.kind is ErrorKind.TOOL_UNAVAILABLE


@posix_only
def test_video_hanging_tool_times_out_and_is_killed(tmp_path: Path) -> None:
    pid_file = tmp_path / "pid"
    tool = _fake_ffmpeg(tmp_path, f'echo $$ > "{pid_file}"\nexec sleep 60\n')
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"\x00")
    producer = VideoProducer(ffmpeg_path=str(tool), timeout=1.0)

    start = time.monotonic()
    with pytest.raises(ThumbnailError) as info:
        producer.generate(str(clip), CancelToken())
    elapsed = time.monotonic() - start

    assert info.value.kind is ErrorKind.TIMEOUT
    assert 1.0 <= elapsed < 5.0
    pid = int(pid_file.read_text().strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@posix_only
def test_video_cancel_kills_tool(tmp_path: Path) -> None:
    tool = _fake_ffmpeg(tmp_path, "exec sleep 60\n")
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"\x00")
    token = CancelToken()
    threading.Timer(0.2, token.cancel).start()

    start = time.monotonic()
    with pytest.raises(ThumbnailError) as info:
        VideoProducer(ffmpeg_path=str(tool), timeout=30.0).generate(str(clip), token)

    assert info.value.kind is ErrorKind.CANCELLED
    assert time.monotonic() - start < 5.0


@posix_only
def test_video_falls_back_to_first_frame_for_short_clips(tmp_path: Path, monkeypatch) -> None:
    calls = tmp_path / "calls"
    tool = _fake_ffmpeg(
        tmp_path,
        f'printf "%s\\n" "$*" >> "{calls}"\ncase "$*" in *"-ss 1.000"*) exit 0;; esac\nprintf FRAME\n',
    )
    clip = tmp_path / "short.mp4"
    clip.write_bytes(b"\x00")
    seen: list[bytes] = []

    def fake_decode(data: bytes, max_edge: int) -> Bitmap:
        seen.append(data)
        return _bitmap()

    monkeypatch.setattr(generators, "decode_thumbnail_buffer", fake_decode)

    bmp = VideoProducer(ffmpeg_path=str(tool)).generate(str(clip), CancelToken())

    assert bmp.width == 2
    assert seen == [b"FRAME"]
    lines = calls.read_text().splitlines()
    assert len(lines) == 2
    assert "-ss 1.000" in lines[0] and "-ss 0.000" in lines[1]


@posix_only
def test_video_no_frame_at_all_is_decode_error(tmp_path: Path) -> None:
    tool = _fake_ffmpeg(tmp_path, "exit 1\n")
    clip = tmp_path / "broken.mp4"
    clip.write_bytes(b"\x00")

    with pytest.raises(ThumbnailError) as info:
        VideoProducer(ffmpeg_path=str(tool)).generate(str(clip), CancelToken())
    assert info.value.kind is ErrorKind.DECODE_ERROR


# ---- pdf -----------------------------------------------------------


class _FakePdfiumError(Exception):
    pass


class _FakeDoc:
    def __init__(self, pages: int) -> None:
        self.pages = pages
        self.closed = False

    def __len__(self) -> int:
        return self.pages

    def close(self) -> None:
        self.closed = True


class _FakePdfium:
    PdfiumError = _FakePdfiumError

    def __init__(self, pages: int = 0, broken: bool = False) -> None:
        self.pages = pages
        self.broken = broken
        self.docs: list[_FakeDoc] = []

    def PdfDocument(self, path: str) -> _FakeDoc:  # noqa: N802
        if self.broken:
            raise _FakePdfiumError("Failed to load document (PDFium: Data format error).")
        doc = _FakeDoc(self.pages)
        self.docs.append(doc)
        return doc


def test_pdf_without_library_is_tool_unavailable(monkeypatch) -> None:
    monkeypatch.setattr(generators, "load_pdfium", lambda: None)
    with pytest.raises(ThumbnailError) as info:
        PdfProducer().generate("/x.pdf", CancelToken())
    assert info.value.kind is ErrorKind.TOOL_UNAVAILABLE


def test_pdf_without_pages_is_empty_document(monkeypatch) -> None:
    fake = _FakePdfium(pages=0)
    monkeypatch.setattr(generators, "load_pdfium", lambda: fake)
    with pytest.raises(ThumbnailError) as info:
        PdfProducer().generate("/x.pdf", CancelToken())
    assert info.value.kind is ErrorKind.EMPTY_DOCUMENT
    assert fake.docs[0].closed


def test_pdf_unreadable_is_render_error(monkeypatch) -> None:
    monkeypatch.setattr(generators, "load_pdfium", lambda: _FakePdfium(broken=True))
    with pytest.raises(ThumbnailError) as info:
        PdfProducer().generate("/x.pdf", CancelToken())
    assert info.value.kind is ErrorKind.RENDER_ERROR


# ---- real decoders -------------------------------------------------


def _require_pyvips():
    try:
        import pyvips  # type: ignore
    except Exception as exc:  # libvips missing raises OSError, not ImportError
        pytest.skip(f"pyvips unavailable: {exc}")
    return pyvips


def test_image_producer_bounds_longer_edge(tmp_path: Path) -> None:
    _require_pyvips()
    Image = pytest.importorskip("PIL.Image")
    src = tmp_path / "wide.png"
    Image.new("RGBA", (1000, 500), (10, 200, 30, 255)).save(src)

    bmp = generators.ImageProducer(max_edge=400).generate(str(src), CancelToken())

    assert (bmp.width, bmp.height) == (400, 200)
    assert bmp.pixels.shape == (200, 400, 3)
    assert tuple(bmp.pixels[100, 200]) == (10, 200, 30)


def test_image_producer_keeps_small_images(tmp_path: Path) -> None:
    _require_pyvips()
    Image = pytest.importorskip("PIL.Image")
    src = tmp_path / "tiny.jpg"
    Image.new("L", (40, 30), 128).save(src)

    bmp = generators.ImageProducer().generate(str(src), CancelToken())

    assert (bmp.width, bmp.height) == (40, 30)


def test_image_producer_garbage_is_typed_failure(tmp_path: Path) -> None:
    _require_pyvips()
    src = tmp_path / "bad.jpg"
    src.write_bytes(b"definitely not a jpeg")

    with pytest.raises(ThumbnailError) as info:
        generators.ImageProducer().generate(str(src), CancelToken())
    assert info.value.kind in (ErrorKind.UNSUPPORTED_FORMAT, ErrorKind.DECODE_ERROR)


def test_pdf_producer_renders_first_page(tmp_path: Path) -> None:
    _require_pyvips()
    pdfium = pytest.importorskip("pypdfium2")
    doc = pdfium.PdfDocument.new()
    doc.new_page(612, 792)
    src = tmp_path / "letter.pdf"
    doc.save(str(src))
    doc.close()

    bmp = PdfProducer(dpi=150, max_edge=400).generate(str(src), CancelToken())

    assert max(bmp.width, bmp.height) == 400
    assert bmp.height > bmp.width

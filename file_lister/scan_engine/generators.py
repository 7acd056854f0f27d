"""Preview producers and the single-flight generation entry point.

Producers share one contract, ``generate(path, cancel) -> Bitmap``, and raise
`ThumbnailError` on failure. `ThumbnailGenerator` picks the producer from the
file's category and coordinates with `ThumbnailCache` so that at most one
generation per key runs at a time.
"""

from __future__ import annotations

import contextlib
import subprocess
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from file_lister.classifier import Category, classify
from file_lister.errors import ErrorKind, ThumbnailError, kind_for_os_error
from file_lister.logger import get_logger
from file_lister.settings_manager import SettingsManager

from .cancel import NEVER, CancelToken
from .decoder import DEFAULT_MAX_EDGE, Bitmap, decode_thumbnail_buffer, decode_thumbnail_file, shrink_array
from .metrics import metrics
from .thumbnail_cache import EntryState, ThumbnailCache, ThumbnailEntry, ThumbnailFailure, ThumbnailKey
from .tools import find_ffmpeg, load_pdfium, pdfium_unavailable_reason

_logger = get_logger("generators")

DEFAULT_VIDEO_TIMEOUT = 10.0
DEFAULT_VIDEO_SEEK = 1.0
DEFAULT_PDF_DPI = 150
_PDF_POINTS_PER_INCH = 72.0
_MAX_JOIN_ATTEMPTS = 5

# pdfium keeps global state and is not safe to drive from several threads.
_PDFIUM_LOCK = threading.Lock()


class ThumbnailProducer(Protocol):
    def generate(self, path: str, cancel: CancelToken) -> Bitmap: ...


def _check_cancelled(cancel: CancelToken) -> None:
    if cancel.cancelled:
        raise ThumbnailError(ErrorKind.CANCELLED, "cancelled")


class ImageProducer:
    def __init__(self, max_edge: int = DEFAULT_MAX_EDGE) -> None:
        self._max_edge = int(max_edge)

    def generate(self, path: str, cancel: CancelToken) -> Bitmap:
        _check_cancelled(cancel)
        return decode_thumbnail_file(path, self._max_edge)


class VideoProducer:
    """Grab one frame with ffmpeg: at ``seek`` seconds, then at 0 s for short clips.

    A single wall-clock deadline covers both attempts. When it passes, or the
    job is cancelled, the ffmpeg process is killed and reaped.
    """

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        timeout: float = DEFAULT_VIDEO_TIMEOUT,
        seek: float = DEFAULT_VIDEO_SEEK,
        max_edge: int = DEFAULT_MAX_EDGE,
        poll_interval: float = 0.05,
    ) -> None:
        self._ffmpeg_path = ffmpeg_path
        self._timeout = float(timeout)
        self._seek = float(seek)
        self._max_edge = int(max_edge)
        self._poll_interval = float(poll_interval)

    @staticmethod
    def build_command(ffmpeg: str, path: str, seek: float) -> list[str]:
        return [
            ffmpeg,
            "-hide_banner",
            "-loglevel",
            "error",
            "-nostdin",
            "-ss",
            f"{seek:.3f}",
            "-i",
            path,
            "-frames:v",
            "1",
            "-f",
            "image2pipe",
            "-vcodec",
            "png",
            "-",
        ]

    def generate(self, path: str, cancel: CancelToken) -> Bitmap:
        ffmpeg = find_ffmpeg(self._ffmpeg_path)
        if ffmpeg is None:
            raise ThumbnailError(ErrorKind.TOOL_UNAVAILABLE, "ffmpeg not found")
        deadline = time.monotonic() + self._timeout
        seeks = (self._seek, 0.0) if self._seek > 0 else (0.0,)
        for seek in seeks:
            data = self._run(self.build_command(ffmpeg, path, seek), deadline, cancel)
            if data:
                return decode_thumbnail_buffer(data, self._max_edge)
            _logger.debug("no frame at %.1fs: %s", seek, path)
        raise ThumbnailError(ErrorKind.DECODE_ERROR, "ffmpeg produced no frame")

    def _run(self, cmd: list[str], deadline: float, cancel: CancelToken) -> bytes:
        try:
            proc = subprocess.Popen(  # noqa: S603
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ThumbnailError(ErrorKind.TOOL_UNAVAILABLE, str(exc)) from exc
        except OSError as exc:
            raise ThumbnailError(ErrorKind.IO_ERROR, str(exc)) from exc

        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ThumbnailError(ErrorKind.TIMEOUT, f"ffmpeg exceeded {self._timeout:.1f}s")
                _check_cancelled(cancel)
                try:
                    out, err = proc.communicate(timeout=min(self._poll_interval, remaining))
                    break
                except subprocess.TimeoutExpired:
                    continue
        finally:
            if proc.poll() is None:
                _logger.debug("killing ffmpeg pid=%s", proc.pid)
                proc.kill()
                proc.wait()
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    with contextlib.suppress(OSError):
                        stream.close()

        if proc.returncode != 0:
            _logger.debug("ffmpeg exit=%s stderr=%s", proc.returncode, (err or b"").decode(errors="replace").strip())
            return b""
        return out or b""


class PdfProducer:
    """Rasterize page 1 with pdfium at ``dpi`` and shrink it to fit ``max_edge``."""

    def __init__(self, dpi: int = DEFAULT_PDF_DPI, max_edge: int = DEFAULT_MAX_EDGE) -> None:
        self._dpi = int(dpi)
        self._max_edge = int(max_edge)

    def generate(self, path: str, cancel: CancelToken) -> Bitmap:
        pdfium = load_pdfium()
        if pdfium is None:
            raise ThumbnailError(ErrorKind.TOOL_UNAVAILABLE, pdfium_unavailable_reason() or "pdfium unavailable")
        _check_cancelled(cancel)
        with _PDFIUM_LOCK:
            try:
                pdf = pdfium.PdfDocument(path)
            except pdfium.PdfiumError as exc:
                raise ThumbnailError(ErrorKind.RENDER_ERROR, str(exc)) from exc
            try:
                if len(pdf) == 0:
                    raise ThumbnailError(ErrorKind.EMPTY_DOCUMENT, "document has no pages")
                _check_cancelled(cancel)
                page = pdf[0]
                try:
                    rendered = page.render(scale=self._dpi / _PDF_POINTS_PER_INCH, rev_byteorder=True)
                    try:
                        # to_numpy() shares the bitmap buffer; shrink before closing it.
                        return shrink_array(rendered.to_numpy(), self._max_edge)
                    finally:
                        rendered.close()
                finally:
                    page.close()
            except pdfium.PdfiumError as exc:
                raise ThumbnailError(ErrorKind.RENDER_ERROR, str(exc)) from exc
            finally:
                pdf.close()


class ThumbnailGenerator:
    """Dispatch by category and enforce single-flight through the cache."""

    def __init__(
        self,
        cache: ThumbnailCache,
        producers: Mapping[Category, ThumbnailProducer] | None = None,
        join_timeout: float | None = None,
    ) -> None:
        self._cache = cache
        self._producers: dict[Category, ThumbnailProducer] = dict(
            producers
            if producers is not None
            else {
                Category.IMAGE: ImageProducer(),
                Category.VIDEO: VideoProducer(),
                Category.PDF: PdfProducer(),
            }
        )
        self._join_timeout = join_timeout

    @classmethod
    def from_settings(cls, cache: ThumbnailCache, settings: SettingsManager) -> ThumbnailGenerator:
        max_edge = settings.get_int("thumbnail_max_edge")
        producers: dict[Category, ThumbnailProducer] = {
            Category.IMAGE: ImageProducer(max_edge),
            Category.VIDEO: VideoProducer(
                ffmpeg_path=settings.ffmpeg_path,
                timeout=settings.get_float("video_timeout_s"),
                seek=settings.get_float("video_seek_s"),
                max_edge=max_edge,
            ),
            Category.PDF: PdfProducer(settings.get_int("pdf_dpi"), max_edge),
        }
        return cls(cache, producers)

    @property
    def cache(self) -> ThumbnailCache:
        return self._cache

    def producer_for(self, path: str | Path) -> ThumbnailProducer | None:
        return self._producers.get(classify(Path(path).suffix))

    def request(self, path: str | Path, cancel: CancelToken | None = None) -> ThumbnailEntry:
        """Return the cached entry for ``path``, generating it if nobody else is.

        Raises `ThumbnailError` only when the file cannot be stat'ed (no key).
        """
        cancel = cancel or NEVER
        path = str(path)
        try:
            key = ThumbnailKey.for_path(path)
        except OSError as exc:
            raise ThumbnailError(kind_for_os_error(exc), str(exc)) from exc

        for _ in range(_MAX_JOIN_ATTEMPTS):
            entry = self._cache.get(key)
            if entry is not None and not entry.pending:
                metrics.inc("thumbnail.cache_hits")
                return entry
            if self._cache.reserve(key):
                return self._generate(key, path, cancel)
            metrics.inc("thumbnail.joins")
            entry = self._cache.wait(key, self._join_timeout)
            if entry is not None and not entry.pending and not self._owner_cancelled(entry):
                return entry
            if cancel.cancelled:
                break
        return ThumbnailEntry(key, EntryState.FAILED, failure=ThumbnailFailure(ErrorKind.CANCELLED, "cancelled"))

    @staticmethod
    def _owner_cancelled(entry: ThumbnailEntry) -> bool:
        # The flight we joined was cancelled by its owner; try to claim it ourselves.
        return entry.failed and entry.failure is not None and entry.failure.kind is ErrorKind.CANCELLED

    def _generate(self, key: ThumbnailKey, path: str, cancel: CancelToken) -> ThumbnailEntry:
        producer = self.producer_for(path)
        metrics.inc("thumbnail.generate_attempts")
        result: Bitmap | ThumbnailFailure = ThumbnailFailure(ErrorKind.CANCELLED, "generation aborted")
        try:
            if producer is None:
                result = ThumbnailFailure(ErrorKind.UNSUPPORTED_FORMAT, f"no preview for {Path(path).suffix or 'file'}")
            elif cancel.cancelled:
                result = ThumbnailFailure(ErrorKind.CANCELLED, "cancelled")
            else:
                with metrics.timed("thumbnail.generate_duration"):
                    result = producer.generate(path, cancel)
        except ThumbnailError as exc:
            result = ThumbnailFailure(exc.kind, exc.message)
        except OSError as exc:
            result = ThumbnailFailure(ErrorKind.IO_ERROR, str(exc))
        except Exception as exc:
            _logger.exception("thumbnail producer crashed: %s", path)
            result = ThumbnailFailure(ErrorKind.DECODE_ERROR, str(exc))
        finally:
            entry = self._cache.publish(key, result)

        if entry is None:
            # Our claim was already gone; never hand out an unrecorded result.
            entry = ThumbnailEntry(key, EntryState.FAILED, failure=ThumbnailFailure(ErrorKind.CANCELLED, "claim lost"))
        if entry.ready and entry.bitmap is not None:
            _logger.debug("thumbnail ready: %s (%dx%d)", path, entry.bitmap.width, entry.bitmap.height)
        elif entry.failure is not None:
            _logger.debug("thumbnail failed: %s kind=%s msg=%s", path, entry.failure.kind.value, entry.failure.message)
        return entry

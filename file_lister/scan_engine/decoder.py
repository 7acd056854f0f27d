"""Bitmap type and image decoding using pyvips.

Every producer (image, video frame, PDF page) ends up here so thumbnails
share one representation: an RGB ``uint8`` numpy array whose longer edge is
bounded by ``max_edge``.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import Any

import numpy as np

from file_lister.errors import ErrorKind, ThumbnailError
from file_lister.logger import get_logger

_logger = get_logger("decoder")

RGB_CHANNELS = 3
DEFAULT_MAX_EDGE = 400

_pyvips: Any | None = None


def _get_pyvips_module() -> Any:
    global _pyvips
    if _pyvips is None:
        import pyvips  # type: ignore

        # Keep libvips' own operation cache from growing alongside ours.
        with contextlib.suppress(Exception):
            pyvips.cache_set_max(0)
            pyvips.cache_set_max_mem(0)
            pyvips.cache_set_max_files(0)
        _pyvips = pyvips
    return _pyvips


@dataclass(frozen=True, eq=False)
class Bitmap:
    """Decoded thumbnail pixels (height x width x RGB), read-only."""

    width: int
    height: int
    pixels: np.ndarray

    @classmethod
    def from_array(cls, array: np.ndarray) -> Bitmap:
        if array.ndim != 3 or array.shape[2] != RGB_CHANNELS or array.dtype != np.uint8:  # noqa: PLR2004
            raise ValueError(f"expected uint8 HxWx3 array, got {array.dtype} {array.shape}")
        pixels = np.ascontiguousarray(array).copy()
        pixels.flags.writeable = False
        return cls(int(pixels.shape[1]), int(pixels.shape[0]), pixels)

    @property
    def pixel_count(self) -> int:
        return self.width * self.height


def fit_within(width: int, height: int, max_edge: int) -> tuple[int, int]:
    """Scale (width, height) down so the longer edge is at most ``max_edge``."""
    longest = max(width, height)
    if longest <= max_edge or longest <= 0:
        return width, height
    scale = max_edge / float(longest)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _to_rgb_array(image: Any) -> np.ndarray:
    pyvips = _get_pyvips_module()
    with contextlib.suppress(Exception):
        image = image.colourspace("srgb")
    if image.hasalpha():
        image = image.flatten(background=[0, 0, 0])
    if image.bands > RGB_CHANNELS:
        image = image.extract_band(0, n=RGB_CHANNELS)
    elif image.bands < RGB_CHANNELS:
        image = pyvips.Image.bandjoin([image] * RGB_CHANNELS)
    if image.format != "uchar":
        image = image.cast("uchar")

    mem = image.write_to_memory()
    array = np.frombuffer(mem, dtype=np.uint8).reshape(image.height, image.width, image.bands)
    if array.shape[2] != RGB_CHANNELS:
        raise RuntimeError(f"Unsupported band count after conversion: {array.shape[2]}")
    return array


def _classify_vips_error(exc: Exception) -> ErrorKind:
    text = str(exc).lower()
    if "not a known file format" in text or "is not a known" in text or "unsupported" in text:
        return ErrorKind.UNSUPPORTED_FORMAT
    if "no such file" in text or "unable to open" in text or "permission denied" in text:
        return ErrorKind.IO_ERROR
    return ErrorKind.DECODE_ERROR


def decode_thumbnail_file(path: str, max_edge: int = DEFAULT_MAX_EDGE) -> Bitmap:
    """Decode ``path`` and shrink it so the longer edge is <= ``max_edge``."""
    pyvips = _get_pyvips_module()
    try:
        image = pyvips.Image.thumbnail(path, max_edge, height=max_edge, size="down")
        return Bitmap.from_array(_to_rgb_array(image))
    except pyvips.Error as exc:
        kind = _classify_vips_error(exc)
        _logger.debug("decode failed (%s): %s", kind.value, path)
        raise ThumbnailError(kind, str(exc).strip()) from exc


def decode_thumbnail_buffer(data: bytes, max_edge: int = DEFAULT_MAX_EDGE) -> Bitmap:
    """Same as `decode_thumbnail_file` for an in-memory encoded image (PNG frame etc.)."""
    if not data:
        raise ThumbnailError(ErrorKind.DECODE_ERROR, "empty image buffer")
    pyvips = _get_pyvips_module()
    try:
        image = pyvips.Image.thumbnail_buffer(data, max_edge, height=max_edge, size="down")
        return Bitmap.from_array(_to_rgb_array(image))
    except pyvips.Error as exc:
        raise ThumbnailError(_classify_vips_error(exc), str(exc).strip()) from exc


def shrink_array(array: np.ndarray, max_edge: int = DEFAULT_MAX_EDGE) -> Bitmap:
    """Downsize an RGB/RGBA pixel array with pyvips so its longer edge is <= ``max_edge``."""
    pyvips = _get_pyvips_module()
    height, width = int(array.shape[0]), int(array.shape[1])
    bands = int(array.shape[2]) if array.ndim == 3 else 1  # noqa: PLR2004
    data = np.ascontiguousarray(array, dtype=np.uint8)
    try:
        image = pyvips.Image.new_from_memory(data.tobytes(), width, height, bands, "uchar")
        if bands == 4:  # noqa: PLR2004
            image = image.copy(interpretation="srgb")
        tw, th = fit_within(width, height, max_edge)
        if (tw, th) != (width, height):
            image = image.thumbnail_image(tw, height=th, size="down")
        return Bitmap.from_array(_to_rgb_array(image))
    except pyvips.Error as exc:
        raise ThumbnailError(ErrorKind.RENDER_ERROR, str(exc).strip()) from exc

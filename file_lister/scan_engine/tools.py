"""Availability probes for the external decoders used by the preview producers.

Installing or downloading these tools is out of scope; callers only need to
know whether they can be used right now.
"""

from __future__ import annotations

import os
import shutil
import threading
from typing import Any

from file_lister.logger import get_logger

_logger = get_logger("tools")

_lock = threading.Lock()
_pdfium: Any | None = None
_pdfium_error: str | None = None


def find_ffmpeg(configured: str | None = None) -> str | None:
    """Return an executable ffmpeg path (configured path first, then PATH)."""
    if configured:
        if os.path.isfile(configured) and os.access(configured, os.X_OK):
            return configured
        found = shutil.which(configured)
        if found:
            return found
        _logger.debug("configured ffmpeg not usable: %s", configured)
        return None
    return shutil.which("ffmpeg")


def ffmpeg_available(configured: str | None = None) -> bool:
    return find_ffmpeg(configured) is not None


def load_pdfium() -> Any | None:
    """Import pypdfium2 once; None when the library cannot be resolved here."""
    global _pdfium, _pdfium_error
    with _lock:
        if _pdfium is not None:
            return _pdfium
        if _pdfium_error is not None:
            return None
        try:
            import pypdfium2 as pdfium  # type: ignore
        except (ImportError, OSError) as exc:
            # OSError: the wheel's shared library failed to load on this platform.
            _pdfium_error = str(exc)
            _logger.info("PDF previews disabled: %s", exc)
            return None
        _pdfium = pdfium
        return _pdfium


def pdfium_available() -> bool:
    return load_pdfium() is not None


def pdfium_unavailable_reason() -> str | None:
    with _lock:
        return _pdfium_error

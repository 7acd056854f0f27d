"""Path normalization utilities.

This module centralizes the project's path normalization rules:

- Use absolute paths when interacting with the filesystem.
- Use a stable, normalized key for cache lookups (forward slashes + drive
  letter normalization on Windows).

Keep this module free of Qt dependencies.
"""

from __future__ import annotations

from pathlib import Path

_DRIVE_PREFIX_LEN = 2
_SIZE_UNITS = (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024))


def _normalize_drive_letter(path_str: str) -> str:
    # Normalize drive letter casing on Windows ("c:\\" -> "C:\\").
    if len(path_str) >= _DRIVE_PREFIX_LEN and path_str[1] == ":":
        return path_str[0].upper() + path_str[1:]
    return path_str


def abs_path(path: str | Path) -> Path:
    """Return an absolute path without requiring that it exists."""
    p = Path(path).expanduser()
    try:
        # strict=False avoids exceptions for non-existent paths.
        return p.resolve(strict=False)
    except OSError:
        return p.absolute()


def abs_path_str(path: str | Path) -> str:
    """Absolute, OS-native path string (Windows uses backslashes)."""
    return _normalize_drive_letter(str(abs_path(path)))


def path_key(path: str | Path) -> str:
    """Stable cache key for a filesystem path."""
    return _normalize_drive_letter(abs_path_str(path)).replace("\\", "/")


def format_size(size: int) -> str:
    """Human readable byte count, e.g. ``1.50 MB``."""
    for unit, factor in _SIZE_UNITS:
        if size >= factor:
            return f"{size / factor:.2f} {unit}"
    return f"{size} B"

"""Map file extensions onto the preview categories used by the engine."""

from __future__ import annotations

import enum


class Category(enum.Enum):
    IMAGE = "image"
    VIDEO = "video"
    PDF = "pdf"
    DOCUMENT = "document"
    OTHER = "other"


_IMAGE_EXTS = frozenset({"jpg", "jpeg", "png", "gif", "bmp", "ico", "webp", "tif", "tiff"})
_VIDEO_EXTS = frozenset({"mp4", "avi", "mkv", "mov", "wmv", "flv", "webm", "m4v", "mpeg", "mpg", "3gp"})
_PDF_EXTS = frozenset({"pdf"})
_DOCUMENT_EXTS = frozenset(
    {
        "txt", "md", "rtf", "doc", "docx", "odt", "xls", "xlsx", "ods", "ppt", "pptx", "odp",
        "csv", "json", "xml", "yaml", "yml", "toml", "html", "htm",
    }
)  # fmt: skip

_TABLE: tuple[tuple[frozenset[str], Category], ...] = (
    (_IMAGE_EXTS, Category.IMAGE),
    (_VIDEO_EXTS, Category.VIDEO),
    (_PDF_EXTS, Category.PDF),
    (_DOCUMENT_EXTS, Category.DOCUMENT),
)

PREVIEWABLE = frozenset({Category.IMAGE, Category.VIDEO, Category.PDF})


def classify(extension: str | None) -> Category:
    """Return the category for ``extension`` ("JPG", ".jpg" and "jpg" are equal)."""
    ext = (extension or "").strip().lstrip(".").lower()
    for exts, category in _TABLE:
        if ext in exts:
            return category
    return Category.OTHER


def is_previewable(extension: str | None) -> bool:
    return classify(extension) in PREVIEWABLE

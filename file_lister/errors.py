"""Error taxonomy shared by the scanner, thumbnail pipeline and file operations."""

from __future__ import annotations

import errno
import enum


class ErrorKind(enum.Enum):
    IO_ERROR = "io_error"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    NAME_COLLISION = "name_collision"
    INVALID_NAME = "invalid_name"
    TIMEOUT = "timeout"
    TOOL_UNAVAILABLE = "tool_unavailable"
    UNSUPPORTED_FORMAT = "unsupported_format"
    DECODE_ERROR = "decode_error"
    RENDER_ERROR = "render_error"
    EMPTY_DOCUMENT = "empty_document"
    CANCELLED = "cancelled"


def kind_for_os_error(exc: OSError) -> ErrorKind:
    """Map an OSError onto the coarse error kinds reported to callers."""
    if isinstance(exc, FileNotFoundError) or exc.errno == errno.ENOENT:
        return ErrorKind.NOT_FOUND
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(exc, FileExistsError) or exc.errno == errno.EEXIST:
        return ErrorKind.NAME_COLLISION
    return ErrorKind.IO_ERROR


class FileListerError(Exception):
    """Base class for recoverable errors raised by the engine."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value


class ThumbnailError(FileListerError):
    """A thumbnail producer failed for one file."""


class MutationError(FileListerError):
    """A rename/delete/move failed for one file."""

    def __init__(self, kind: ErrorKind, path: str, message: str = "") -> None:
        super().__init__(kind, message)
        self.path = path

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"

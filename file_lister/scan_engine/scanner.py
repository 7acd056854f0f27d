"""Folder walker producing `FileRecord` snapshots.

The walk is lazy and directory-granular: the files of one directory are
collected into a batch and only handed out once that directory has been
listed completely. A cancelled walk therefore never yields a half-listed
directory, while batches already handed out stay valid.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from file_lister.errors import ErrorKind, kind_for_os_error
from file_lister.logger import get_logger
from file_lister.path_utils import abs_path_str

from .cancel import NEVER, CancelToken
from .metrics import metrics
from .records import DuplicateIndex, FileRecord, RootSpec

_logger = get_logger("scanner")


@dataclass(frozen=True)
class ScanIssue:
    path: str
    kind: ErrorKind
    message: str


ErrorSink = Callable[[ScanIssue], None]


class ScanEngine:
    def __init__(self, on_error: ErrorSink | None = None) -> None:
        self._on_error = on_error

    def _report(self, path: str, kind: ErrorKind, message: str) -> None:
        _logger.warning("scan skipped %s (%s): %s", path, kind.value, message)
        metrics.inc("scan.skipped")
        if self._on_error is not None:
            try:
                self._on_error(ScanIssue(path, kind, message))
            except Exception:
                _logger.debug("scan error sink raised", exc_info=True)

    def scan(
        self,
        roots: Iterable[RootSpec],
        recursive: bool,
        cancel: CancelToken | None = None,
        generation: int = 0,
    ) -> Iterator[FileRecord]:
        """Lazily walk ``roots`` and yield one record per regular file."""
        cancel = cancel or NEVER
        roots = list(roots)
        multi_root = len(roots) > 1
        for root in roots:
            if cancel.cancelled:
                return
            yield from self._walk_root(root, recursive, multi_root, cancel, generation)

    def scan_directory(
        self,
        root: RootSpec,
        directory: str | Path,
        multi_root: bool = False,
        cancel: CancelToken | None = None,
        generation: int = 0,
    ) -> list[FileRecord]:
        """List only the direct children of ``directory`` (scoped rescan)."""
        cancel = cancel or NEVER
        batch = self._list_directory(root, abs_path_str(directory), multi_root, cancel, generation, subdirs=None)
        return batch if batch is not None else []

    @staticmethod
    def build_duplicate_index(records: Iterable[FileRecord]) -> DuplicateIndex:
        return DuplicateIndex.build(records)

    def _walk_root(
        self,
        root: RootSpec,
        recursive: bool,
        multi_root: bool,
        cancel: CancelToken,
        generation: int,
    ) -> Iterator[FileRecord]:
        if not os.path.isdir(root.path):
            self._report(root.path, ErrorKind.NOT_FOUND, "root is not a directory")
            return

        visited: set[tuple[int, int]] = set()
        stack: list[str] = [root.path]
        while stack:
            if cancel.cancelled:
                _logger.debug("scan cancelled: root=%s pending_dirs=%d", root.path, len(stack))
                return
            current = stack.pop()
            try:
                st = os.stat(current)
            except OSError as exc:
                self._report(current, kind_for_os_error(exc), str(exc))
                continue
            ident = (st.st_dev, st.st_ino)
            if ident in visited:
                self._report(current, ErrorKind.IO_ERROR, "directory already visited (symlink cycle)")
                continue
            visited.add(ident)

            subdirs: list[str] | None = [] if recursive else None
            batch = self._list_directory(root, current, multi_root, cancel, generation, subdirs)
            if batch is None:
                return
            if subdirs:
                stack.extend(reversed(subdirs))
            metrics.inc("scan.files", len(batch))
            yield from batch

    def _list_directory(  # noqa: PLR0913
        self,
        root: RootSpec,
        directory: str,
        multi_root: bool,
        cancel: CancelToken,
        generation: int,
        subdirs: list[str] | None,
    ) -> list[FileRecord] | None:
        """Return the file records of one directory, or None when cancelled mid-listing."""
        batch: list[FileRecord] = []
        try:
            with os.scandir(directory) as it:
                for entry in it:
                    if cancel.cancelled:
                        return None
                    try:
                        if entry.is_dir(follow_symlinks=True):
                            if subdirs is not None:
                                subdirs.append(entry.path)
                            continue
                        if not entry.is_file(follow_symlinks=True):
                            continue
                        batch.append(self._make_record(root, entry, multi_root, generation))
                    except OSError as exc:
                        self._report(entry.path, kind_for_os_error(exc), str(exc))
        except OSError as exc:
            self._report(directory, kind_for_os_error(exc), str(exc))
            return []
        if cancel.cancelled:
            return None
        return batch

    @staticmethod
    def _make_record(root: RootSpec, entry: os.DirEntry, multi_root: bool, generation: int) -> FileRecord:
        st = entry.stat(follow_symlinks=True)
        p = Path(entry.path)
        rel = os.path.relpath(entry.path, root.path)
        if multi_root:
            rel = os.path.join(root.label, rel)
        return FileRecord(
            name=p.stem,
            extension=p.suffix[1:] if p.suffix else "",
            full_name=entry.name,
            relative_path=rel,
            absolute_path=abs_path_str(entry.path),
            size_bytes=int(st.st_size),
            modified_ns=int(st.st_mtime_ns),
            source_folder=root.label,
            generation=generation,
        )

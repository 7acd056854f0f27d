"""Headless file operations: rename, delete and move.

Every successful operation drops the thumbnails cached for the touched
paths and asks the job runner for a scoped rescan of the affected
directories, so the record set never keeps a row for a file that moved.

UI concerns (confirmation dialogs, prompts) live in the UI layer.
"""

from __future__ import annotations

import errno
import os
import shutil
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from send2trash import send2trash

from file_lister.errors import ErrorKind, MutationError, kind_for_os_error
from file_lister.logger import get_logger
from file_lister.path_utils import abs_path, abs_path_str
from file_lister.scan_engine.thumbnail_cache import ThumbnailCache

if TYPE_CHECKING:
    from file_lister.scan_engine.job_runner import BackgroundJobRunner
    from file_lister.settings_manager import SettingsManager

_logger = get_logger("file_operations")

RescanHook = Callable[[str], object]


@dataclass(frozen=True)
class MutationOutcome:
    source: str
    target: str | None = None
    error: MutationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult:
    outcomes: list[MutationOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[MutationOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[MutationOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_paths(self) -> list[str]:
        return [o.source for o in self.failed]

    def summary(self, verb: str) -> str:
        if not self.failed:
            return f"{verb} {self.success_count} files"
        return f"{verb} {self.success_count} files, {len(self.failed)} failed"


def _copy_file(src: str, dst: str) -> None:
    """Copy bytes and metadata; the target must not exist yet."""
    shutil.copyfile(src, dst)
    shutil.copystat(src, dst)


def _wrap(exc: OSError, path: str) -> MutationError:
    return MutationError(kind_for_os_error(exc), path, exc.strerror or str(exc))


class FileMutationService:
    def __init__(
        self,
        cache: ThumbnailCache | None = None,
        rescan: RescanHook | None = None,
        use_trash: bool = False,
    ) -> None:
        self._cache = cache
        self._rescan = rescan
        self._use_trash = use_trash

    @classmethod
    def for_runner(cls, runner: BackgroundJobRunner, settings: SettingsManager | None = None) -> FileMutationService:
        use_trash = settings.delete_to_trash if settings is not None else False
        return cls(runner.cache, runner.submit_rescan, use_trash)

    # ---- single-file operations -------------------------------------
    def rename(self, path: str | Path, new_name: str) -> str:
        """Rename a file within its directory and return the new absolute path."""
        src = abs_path(path)
        nn = str(new_name).strip()
        if not nn:
            raise MutationError(ErrorKind.INVALID_NAME, str(src), "new name is empty")
        # Disallow path separators to avoid escaping the directory.
        if "/" in nn or "\\" in nn or nn in (".", ".."):
            raise MutationError(ErrorKind.INVALID_NAME, str(src), "new name must be a basename")
        if not src.exists():
            raise MutationError(ErrorKind.NOT_FOUND, str(src), "file does not exist")

        dest = src.with_name(nn)
        if dest == src:
            return str(src)
        if dest.exists() and not dest.samefile(src):
            raise MutationError(ErrorKind.NAME_COLLISION, str(src), f"{nn} already exists")

        _logger.debug("rename: %s -> %s", src, dest)
        try:
            src.rename(dest)
        except OSError as exc:
            _logger.error("rename failed: %s -> %s: %s", src, dest, exc)
            raise _wrap(exc, str(src)) from exc
        self._after_mutation(str(src), str(dest))
        return abs_path_str(dest)

    def delete(self, path: str | Path) -> None:
        target = abs_path_str(path)
        _logger.debug("delete: %s (trash=%s)", target, self._use_trash)
        try:
            if self._use_trash:
                if not os.path.lexists(target):
                    raise FileNotFoundError(errno.ENOENT, "file does not exist", target)
                send2trash(target)
            else:
                os.remove(target)
        except OSError as exc:
            _logger.error("delete failed: %s -> %s", target, exc)
            raise _wrap(exc, target) from exc
        self._after_mutation(target, None)

    def move(self, path: str | Path, destination_folder: str | Path) -> str:
        """Move a file into ``destination_folder`` and return the new path.

        A same-device rename is tried first. Only when that fails with EXDEV
        is the file copied; the source is deleted after the copy has the
        source's byte count and has been renamed into place.
        """
        src = abs_path_str(path)
        dest_dir = abs_path(destination_folder)
        if not os.path.exists(src):
            raise MutationError(ErrorKind.NOT_FOUND, src, "file does not exist")
        if not dest_dir.is_dir():
            raise MutationError(ErrorKind.NOT_FOUND, src, f"destination is not a directory: {dest_dir}")
        dest = str(dest_dir / os.path.basename(src))
        if os.path.exists(dest):
            if os.path.samefile(src, dest):
                return dest
            raise MutationError(ErrorKind.NAME_COLLISION, src, f"{dest} already exists")

        _logger.debug("move: %s -> %s", src, dest)
        try:
            os.rename(src, dest)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                _logger.error("move failed: %s -> %s: %s", src, dest, exc)
                raise _wrap(exc, src) from exc
            _logger.debug("cross-device move, copying: %s -> %s", src, dest)
            self._copy_then_delete(src, dest)
        self._after_mutation(src, dest)
        return abs_path_str(dest)

    def _copy_then_delete(self, src: str, dest: str) -> None:
        tmp = os.path.join(os.path.dirname(dest), f".{os.path.basename(dest)}.{uuid.uuid4().hex[:8]}.partial")
        try:
            expected = os.stat(src).st_size
            _copy_file(src, tmp)
            copied = os.stat(tmp).st_size
            if copied != expected:
                raise MutationError(ErrorKind.IO_ERROR, src, f"incomplete copy: {copied} of {expected} bytes")
            os.replace(tmp, dest)
        except (OSError, MutationError) as exc:
            self._discard_partial(tmp)
            if isinstance(exc, MutationError):
                _logger.error("move aborted, source kept: %s", exc)
                raise
            _logger.error("move copy failed, source kept: %s -> %s: %s", src, dest, exc)
            raise _wrap(exc, src) from exc

        try:
            os.remove(src)
        except OSError as exc:
            # Both copies now exist; report it so the caller can resolve it.
            _logger.error("move copied but source not removed: %s: %s", src, exc)
            self._after_mutation(None, dest)
            raise MutationError(kind_for_os_error(exc), src, f"copied to {dest} but source not removed: {exc}") from exc

    @staticmethod
    def _discard_partial(tmp: str) -> None:
        try:
            if os.path.lexists(tmp):
                os.remove(tmp)
        except OSError as exc:
            _logger.warning("could not remove partial copy %s: %s", tmp, exc)

    # ---- batches ----------------------------------------------------
    def delete_many(self, paths: Iterable[str | Path]) -> BatchResult:
        result = BatchResult()
        for path in paths:
            try:
                self.delete(path)
                result.outcomes.append(MutationOutcome(str(path)))
            except MutationError as exc:
                _logger.warning("delete failed for %s: %s", path, exc)
                result.outcomes.append(MutationOutcome(str(path), error=exc))
        _logger.debug("delete complete: %s", result.summary("deleted"))
        return result

    def move_many(self, paths: Iterable[str | Path], destination_folder: str | Path) -> BatchResult:
        result = BatchResult()
        for path in paths:
            try:
                target = self.move(path, destination_folder)
                result.outcomes.append(MutationOutcome(str(path), target))
            except MutationError as exc:
                _logger.warning("move failed for %s: %s", path, exc)
                result.outcomes.append(MutationOutcome(str(path), error=exc))
        _logger.debug("move complete: %s", result.summary("moved"))
        return result

    # ---- consistency ------------------------------------------------
    def _after_mutation(self, old: str | None, new: str | None) -> None:
        dirs: list[str] = []
        for p in (old, new):
            if p is None:
                continue
            if self._cache is not None:
                self._cache.invalidate(p)
            d = os.path.dirname(abs_path_str(p))
            if d not in dirs:
                dirs.append(d)
        if self._rescan is None:
            return
        for d in dirs:
            try:
                self._rescan(d)
            except RuntimeError as exc:
                _logger.warning("rescan of %s not scheduled: %s", d, exc)

"""Background job runner for folder scans and thumbnail previews.

All filesystem walking, decoding and process waiting runs on worker pools.
Results are pushed onto a thread-safe result channel; the UI thread drains it
with `BackgroundJobRunner.poll()` (never blocking) or reacts to the
``result_ready`` signal, which Qt delivers queued to receivers living on the
UI thread.

Scans and thumbnails use separate pools so a burst of hover requests never
holds up a scan.
"""

from __future__ import annotations

import enum
import itertools
import queue
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from PySide6.QtCore import QObject, Signal

from file_lister.errors import ErrorKind, FileListerError, ThumbnailError
from file_lister.logger import get_logger
from file_lister.path_utils import abs_path_str, format_size, path_key
from file_lister.settings_manager import SettingsManager

from .cancel import CancelToken
from .generators import ThumbnailGenerator
from .metrics import metrics
from .records import DuplicateIndex, FileRecord, RecordSnapshot, RecordStore, RootSpec
from .scanner import ScanEngine, ScanIssue
from .thumbnail_cache import ThumbnailCache, ThumbnailEntry

_logger = get_logger("job_runner")


class JobStatus(enum.Enum):
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, eq=False)
class ScanJob:
    job_id: int
    roots: tuple[RootSpec, ...]
    recursive: bool
    scope: str | None = None
    cancel: CancelToken = field(default_factory=CancelToken)

    @property
    def scoped(self) -> bool:
        return self.scope is not None


@dataclass(frozen=True, eq=False)
class ThumbnailJob:
    job_id: int
    path: str
    cancel: CancelToken = field(default_factory=CancelToken)


Job = Union[ScanJob, ThumbnailJob]


@dataclass(frozen=True)
class ScanOutcome:
    """Records produced by one scan job.

    ``snapshot`` is the store state after the job was applied; it is None for
    cancelled or superseded jobs, whose records were never applied.
    """

    records: tuple[FileRecord, ...]
    duplicates: DuplicateIndex
    issues: tuple[ScanIssue, ...]
    snapshot: RecordSnapshot | None = None


@dataclass(frozen=True)
class JobResult:
    job: Job
    status: JobStatus
    scan: ScanOutcome | None = None
    thumbnail: ThumbnailEntry | None = None
    error: FileListerError | None = None

    @property
    def job_id(self) -> int:
        return self.job.job_id


class BackgroundJobRunner(QObject):
    """Schedules scan and thumbnail jobs and delivers each result exactly once."""

    result_ready = Signal(object)  # JobResult

    def __init__(  # noqa: PLR0913
        self,
        cache: ThumbnailCache,
        store: RecordStore | None = None,
        generator: ThumbnailGenerator | None = None,
        scan_workers: int = 2,
        thumbnail_workers: int = 4,
        recursive: bool = False,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._cache = cache
        self._store = store if store is not None else RecordStore()
        self._generator = generator if generator is not None else ThumbnailGenerator(cache)
        self._scan_pool = ThreadPoolExecutor(max_workers=max(1, scan_workers), thread_name_prefix="scan")
        self._thumb_pool = ThreadPoolExecutor(max_workers=max(1, thumbnail_workers), thread_name_prefix="thumb")
        self._results: queue.Queue[JobResult] = queue.Queue()
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        # The only full scan allowed to replace the record set.
        self._latest_full: ScanJob | None = None
        # directory key -> latest scoped rescan job
        self._latest_rescan: dict[str, ScanJob] = {}
        self._running_scans: dict[int, ScanJob] = {}
        self._thumb_jobs: dict[int, ThumbnailJob] = {}
        # job id -> future, until a worker picks the job up
        self._queued: dict[int, tuple[Job, Future]] = {}
        self._active_roots: tuple[RootSpec, ...] = ()
        self._default_recursive = bool(recursive)
        self._recursive = self._default_recursive
        self._closed = False
        _logger.debug("runner init: scan_workers=%s thumbnail_workers=%s", scan_workers, thumbnail_workers)

    @classmethod
    def from_settings(cls, settings: SettingsManager, parent: QObject | None = None) -> BackgroundJobRunner:
        cache = ThumbnailCache(
            pixel_budget=settings.get_int("cache_pixel_budget"),
            failure_cooldown=settings.get_float("failure_cooldown_s"),
        )
        return cls(
            cache,
            generator=ThumbnailGenerator.from_settings(cache, settings),
            scan_workers=settings.get_int("scan_workers"),
            thumbnail_workers=settings.get_int("thumbnail_workers"),
            recursive=bool(settings.get("recursive")),
            parent=parent,
        )

    # ---- accessors --------------------------------------------------
    @property
    def cache(self) -> ThumbnailCache:
        return self._cache

    @property
    def store(self) -> RecordStore:
        return self._store

    def snapshot(self) -> RecordSnapshot:
        return self._store.snapshot()

    @property
    def active_roots(self) -> tuple[RootSpec, ...]:
        with self._lock:
            return self._active_roots

    # ---- submission -------------------------------------------------
    def submit_scan(self, roots: Iterable[RootSpec], recursive: bool | None = None) -> ScanJob:
        """Start a full scan that replaces the whole record set.

        Every scan or rescan still running is cancelled, whatever roots it
        covers. ``recursive`` defaults to the runner's configured mode.
        """
        with self._lock:
            self._ensure_open()
            job = self._start_scan_locked(tuple(roots), self._default_recursive if recursive is None else recursive)
        _logger.debug("submit_scan: id=%s roots=%d recursive=%s", job.job_id, len(job.roots), job.recursive)
        return job

    def submit_rescan(self, directory: str | Path) -> ScanJob | None:
        """Refresh the records of one directory after a mutation.

        Returns None when the directory is not covered by the active roots. If
        a full scan is still running it is restarted instead, so it cannot
        apply a listing taken before the mutation.
        """
        directory = abs_path_str(directory)
        with self._lock:
            self._ensure_open()
            roots = self._active_roots
            recursive = self._recursive
            root = next((r for r in roots if r.contains(directory, recursive)), None)
            if root is None:
                _logger.debug("rescan skipped (outside active roots): %s", directory)
                return None
            full = self._latest_full
            if full is not None and full.job_id in self._running_scans:
                _logger.debug("rescan of %s restarts running scan %s", directory, full.job_id)
                return self._start_scan_locked(roots, recursive)

            job = ScanJob(next(self._ids), roots, recursive, scope=directory)
            dkey = path_key(directory)
            prev = self._latest_rescan.get(dkey)
            if prev is not None:
                prev.cancel.cancel()
            self._latest_rescan[dkey] = job
            self._running_scans[job.job_id] = job
            self._schedule_locked(self._scan_pool, self._run_rescan, job, root)
        _logger.debug("submit_rescan: id=%s dir=%s", job.job_id, directory)
        return job

    def submit_thumbnail(self, path: str | Path) -> ThumbnailJob:
        with self._lock:
            self._ensure_open()
            job = ThumbnailJob(next(self._ids), str(path))
            self._thumb_jobs[job.job_id] = job
            self._schedule_locked(self._thumb_pool, self._run_thumbnail, job)
        return job

    def cancel(self, job: Job) -> None:
        job.cancel.cancel()

    def cancel_thumbnails(self) -> int:
        """Cancel every queued or running thumbnail job (e.g. the hover moved on)."""
        with self._lock:
            jobs = list(self._thumb_jobs.values())
        for job in jobs:
            job.cancel.cancel()
        return len(jobs)

    def _start_scan_locked(self, roots: tuple[RootSpec, ...], recursive: bool) -> ScanJob:
        job = ScanJob(next(self._ids), roots, bool(recursive))
        for prev in self._running_scans.values():
            if not prev.cancel.cancelled:
                prev.cancel.cancel()
                _logger.debug("scan superseded: old=%s new=%s", prev.job_id, job.job_id)
        self._latest_full = job
        self._running_scans[job.job_id] = job
        self._active_roots = roots
        self._recursive = job.recursive
        self._schedule_locked(self._scan_pool, self._run_scan, job)
        return job

    def _schedule_locked(self, pool: ThreadPoolExecutor, fn: Callable[..., None], job: Job, *args: object) -> None:
        self._queued[job.job_id] = (job, pool.submit(fn, job, *args))

    def _picked_up(self, job: Job) -> None:
        with self._lock:
            self._queued.pop(job.job_id, None)

    # ---- result channel ---------------------------------------------
    def poll(self, max_items: int | None = None) -> list[JobResult]:
        """Drain finished results without blocking."""
        out: list[JobResult] = []
        while max_items is None or len(out) < max_items:
            try:
                out.append(self._results.get_nowait())
            except queue.Empty:
                break
        return out

    def _deliver(self, result: JobResult) -> None:
        self._results.put(result)
        try:
            self.result_ready.emit(result)
        except RuntimeError:
            # Receiver side already torn down; the queue still holds the result.
            _logger.debug("result_ready emit failed for job %s", result.job_id)

    # ---- workers ----------------------------------------------------
    def _is_current(self, job: ScanJob) -> bool:
        if job.cancel.cancelled:
            return False
        if job.scoped:
            return self._latest_rescan.get(path_key(job.scope or "")) is job and job.roots is self._active_roots
        return self._latest_full is job

    def _finish_scan(self, job: ScanJob) -> None:
        self._running_scans.pop(job.job_id, None)
        if job.scoped:
            dkey = path_key(job.scope or "")
            if self._latest_rescan.get(dkey) is job:
                del self._latest_rescan[dkey]

    def _run_scan(self, job: ScanJob) -> None:
        self._picked_up(job)
        issues: list[ScanIssue] = []
        records: list[FileRecord] = []
        generation = 0
        try:
            if not job.cancel.cancelled:
                scanner = ScanEngine(on_error=issues.append)
                generation = self._store.next_generation()
                with metrics.timed("scan.duration"):
                    for rec in scanner.scan(job.roots, job.recursive, job.cancel, generation):
                        records.append(rec)
        except Exception as exc:
            _logger.exception("scan job %s crashed", job.job_id)
            with self._lock:
                self._finish_scan(job)
            self._deliver(JobResult(job, JobStatus.FAILED, error=FileListerError(ErrorKind.IO_ERROR, str(exc))))
            return

        recs = tuple(records)
        with self._lock:
            current = self._is_current(job)
            snapshot = self._store.replace_all(recs, generation) if current else None
            self._finish_scan(job)
        if snapshot is None:
            _logger.debug("scan %s discarded (cancelled/superseded) after %d records", job.job_id, len(recs))
            outcome = ScanOutcome(recs, DuplicateIndex.build(recs), tuple(issues))
            self._deliver(JobResult(job, JobStatus.CANCELLED, scan=outcome))
            return
        _logger.debug(
            "scan %s done: records=%d size=%s issues=%d",
            job.job_id,
            len(recs),
            format_size(sum(r.size_bytes for r in recs)),
            len(issues),
        )
        outcome = ScanOutcome(recs, snapshot.duplicates, tuple(issues), snapshot)
        self._deliver(JobResult(job, JobStatus.DONE, scan=outcome))

    def _run_rescan(self, job: ScanJob, root: RootSpec) -> None:
        self._picked_up(job)
        issues: list[ScanIssue] = []
        try:
            scanner = ScanEngine(on_error=issues.append)
            generation = self._store.next_generation()
            recs = tuple(
                scanner.scan_directory(root, job.scope or root.path, len(job.roots) > 1, job.cancel, generation)
            )
        except Exception as exc:
            _logger.exception("rescan job %s crashed", job.job_id)
            with self._lock:
                self._finish_scan(job)
            self._deliver(JobResult(job, JobStatus.FAILED, error=FileListerError(ErrorKind.IO_ERROR, str(exc))))
            return

        with self._lock:
            current = self._is_current(job)
            snapshot = self._store.replace_directory(job.scope or root.path, recs, generation) if current else None
            self._finish_scan(job)
        status = JobStatus.DONE if snapshot is not None else JobStatus.CANCELLED
        duplicates = snapshot.duplicates if snapshot is not None else DuplicateIndex.build(recs)
        self._deliver(JobResult(job, status, scan=ScanOutcome(recs, duplicates, tuple(issues), snapshot)))

    def _run_thumbnail(self, job: ThumbnailJob) -> None:
        self._picked_up(job)
        try:
            if job.cancel.cancelled:
                self._deliver(JobResult(job, JobStatus.CANCELLED))
                return
            entry = self._generator.request(job.path, job.cancel)
        except ThumbnailError as exc:
            self._deliver(JobResult(job, JobStatus.FAILED, error=exc))
            return
        except Exception as exc:
            _logger.exception("thumbnail job %s crashed", job.job_id)
            self._deliver(JobResult(job, JobStatus.FAILED, error=FileListerError(ErrorKind.DECODE_ERROR, str(exc))))
            return
        finally:
            with self._lock:
                self._thumb_jobs.pop(job.job_id, None)

        if entry.ready:
            status = JobStatus.DONE
        elif entry.failure is not None and entry.failure.kind is ErrorKind.CANCELLED:
            status = JobStatus.CANCELLED
        else:
            status = JobStatus.FAILED
        self._deliver(JobResult(job, status, thumbnail=entry))

    # ---- lifecycle --------------------------------------------------
    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("BackgroundJobRunner has been shut down")

    def shutdown(self, wait: bool = False) -> None:
        """Cancel every job and stop the pools.

        Jobs still queued are withdrawn here and reported as CANCELLED; jobs a
        worker already picked up report their own result.
        """
        with self._lock:
            self._closed = True
            running: list[Job] = [*self._running_scans.values(), *self._thumb_jobs.values()]
            queued = list(self._queued.values())
            self._queued.clear()
        for job in running:
            job.cancel.cancel()
        withdrawn = 0
        for job, future in queued:
            if not future.cancel():
                continue
            withdrawn += 1
            with self._lock:
                if isinstance(job, ScanJob):
                    self._finish_scan(job)
                else:
                    self._thumb_jobs.pop(job.job_id, None)
            self._deliver(JobResult(job, JobStatus.CANCELLED))
        self._scan_pool.shutdown(wait=wait)
        self._thumb_pool.shutdown(wait=wait)
        _logger.debug("runner shut down: cancelled=%d withdrawn=%d", len(running), withdrawn)

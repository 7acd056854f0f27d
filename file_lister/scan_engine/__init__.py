"""Scan engine - background scanning and thumbnail preview layer.

This package provides the non-UI core:
- Folder walking into immutable file records (scanner, records)
- Preview generation for images, videos and PDFs (generators, decoder, tools)
- In-memory single-flight thumbnail caching (thumbnail_cache)
- Job scheduling with a polled result channel (job_runner)

Usage:
    from file_lister.scan_engine import BackgroundJobRunner, RootSpec, ThumbnailCache

    runner = BackgroundJobRunner(ThumbnailCache())
    runner.result_ready.connect(on_result)
    runner.submit_scan([RootSpec("/path/to/folder")], recursive=True)
    runner.submit_thumbnail("/path/to/folder/photo.jpg")
"""

from .cancel import CancelToken
from .records import DuplicateIndex, FileRecord, RecordSnapshot, RecordStore, RootSpec
from .scanner import ScanEngine, ScanIssue
from .thumbnail_cache import EntryState, ThumbnailCache, ThumbnailEntry, ThumbnailFailure, ThumbnailKey

try:
    from .job_runner import BackgroundJobRunner, JobResult, JobStatus, ScanJob, ThumbnailJob
except ImportError:  # pragma: no cover - allow importing submodules without PySide6 in tests
    BackgroundJobRunner = None
    JobResult = JobStatus = ScanJob = ThumbnailJob = None

__all__ = [
    "BackgroundJobRunner",
    "CancelToken",
    "DuplicateIndex",
    "EntryState",
    "FileRecord",
    "JobResult",
    "JobStatus",
    "RecordSnapshot",
    "RecordStore",
    "RootSpec",
    "ScanEngine",
    "ScanIssue",
    "ScanJob",
    "ThumbnailCache",
    "ThumbnailEntry",
    "ThumbnailFailure",
    "ThumbnailJob",
    "ThumbnailKey",
]

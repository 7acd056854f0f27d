"""Scan result types and the shared record store.

`FileRecord` instances are immutable snapshots produced by the scanner. The
`RecordStore` owns the latest complete record set together with the
duplicate index derived from it; both are swapped in one assignment so a
reader on another thread never sees one without the other.
"""

from __future__ import annotations

import os
import threading
from collections import defaultdict
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from file_lister.classifier import Category, classify
from file_lister.logger import get_logger
from file_lister.path_utils import abs_path_str, path_key

_logger = get_logger("records")

RecordIdentity = tuple[str, int]


@dataclass(frozen=True)
class RootSpec:
    """One user-selected folder plus the label used to tell roots apart."""

    path: str
    label: str = ""

    def __post_init__(self) -> None:
        if not str(self.path).strip():
            raise ValueError("RootSpec.path must not be empty")
        object.__setattr__(self, "path", abs_path_str(self.path))
        if not self.label:
            object.__setattr__(self, "label", Path(self.path).name or self.path)

    def contains(self, directory: str | Path, recursive: bool) -> bool:
        d = path_key(directory)
        root = path_key(self.path)
        if d == root:
            return True
        return recursive and d.startswith(root.rstrip("/") + "/")


@dataclass(frozen=True)
class FileRecord:
    name: str
    extension: str
    full_name: str
    relative_path: str
    absolute_path: str
    size_bytes: int
    modified_ns: int
    source_folder: str
    generation: int = 0

    @property
    def identity(self) -> RecordIdentity:
        return self.absolute_path, self.generation

    @property
    def modified_at(self) -> datetime:
        return datetime.fromtimestamp(self.modified_ns / 1_000_000_000, tz=timezone.utc)

    @property
    def category(self) -> Category:
        return classify(self.extension)

    @property
    def directory(self) -> str:
        return os.path.dirname(self.absolute_path)


@dataclass(frozen=True)
class DuplicateIndex:
    """Groups of records sharing an identical ``full_name`` (two or more members)."""

    _groups: Mapping[str, frozenset[RecordIdentity]] = field(default_factory=dict)

    @classmethod
    def build(cls, records: Iterable[FileRecord]) -> DuplicateIndex:
        by_name: dict[str, set[RecordIdentity]] = defaultdict(set)
        for rec in records:
            by_name[rec.full_name].add(rec.identity)
        groups = {name: frozenset(ids) for name, ids in by_name.items() if len(ids) >= 2}
        return cls(groups)

    def count(self, full_name: str) -> int:
        return len(self._groups.get(full_name, ()))

    def is_duplicate(self, full_name: str) -> bool:
        return full_name in self._groups

    def members(self, full_name: str) -> frozenset[RecordIdentity]:
        return self._groups.get(full_name, frozenset())

    def groups(self) -> dict[str, frozenset[RecordIdentity]]:
        return dict(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def __iter__(self) -> Iterator[str]:
        return iter(self._groups)


@dataclass(frozen=True)
class RecordSnapshot:
    records: tuple[FileRecord, ...] = ()
    duplicates: DuplicateIndex = field(default_factory=DuplicateIndex)
    generation: int = 0

    def by_path(self, path: str | Path) -> FileRecord | None:
        key = path_key(path)
        for rec in self.records:
            if path_key(rec.absolute_path) == key:
                return rec
        return None

    def __len__(self) -> int:
        return len(self.records)


class RecordStore:
    """Thread-safe holder of the current complete record set."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = RecordSnapshot()
        self._generation = 0

    def next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def snapshot(self) -> RecordSnapshot:
        with self._lock:
            return self._snapshot

    def replace_all(self, records: Iterable[FileRecord], generation: int) -> RecordSnapshot:
        recs = tuple(records)
        snap = RecordSnapshot(recs, DuplicateIndex.build(recs), generation)
        with self._lock:
            self._snapshot = snap
        _logger.debug("record set replaced: records=%d duplicates=%d gen=%d", len(recs), len(snap.duplicates), generation)
        return snap

    def replace_directory(self, directory: str | Path, records: Iterable[FileRecord], generation: int) -> RecordSnapshot:
        """Swap the direct children of ``directory`` for ``records``.

        Everything outside that directory is kept as-is; the duplicate index
        is rebuilt from the merged, complete set.
        """
        dir_key = path_key(directory)
        fresh = tuple(records)
        with self._lock:
            previous = self._snapshot.records
            kept = tuple(r for r in previous if path_key(r.directory) != dir_key)
            merged = kept + fresh
            snap = RecordSnapshot(merged, DuplicateIndex.build(merged), generation)
            self._snapshot = snap
        _logger.debug(
            "directory refreshed: dir=%s removed=%d added=%d total=%d",
            dir_key,
            len(previous) - len(kept),
            len(fresh),
            len(merged),
        )
        return snap

    def clear(self) -> None:
        with self._lock:
            self._snapshot = RecordSnapshot()

"""Pytest configuration.

The job runner is a ``QObject`` that emits signals from worker threads. We
create a single ``QCoreApplication`` for the session as early as possible
and cleanly shut it down at the end.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

_APP: Any | None = None


def pytest_configure(config) -> None:  # noqa: ARG001
    """Ensure a QCoreApplication exists before collecting/running tests."""

    # Import lazily so non-Qt environments can still import this conftest.
    try:
        from PySide6.QtCore import QCoreApplication
    except ImportError:
        return

    global _APP

    app = QCoreApplication.instance()
    _APP = app if app is not None else QCoreApplication([])


def pytest_sessionfinish(session, exitstatus) -> None:  # noqa: ARG001
    try:
        from PySide6.QtCore import QCoreApplication
    except ImportError:
        return

    app = QCoreApplication.instance()
    if app is None:
        return
    app.quit()
    app.processEvents()


@pytest.fixture
def make_tree(tmp_path: Path):
    """Create files from a {relative_path: content} mapping under tmp_path."""

    def _make(files: dict[str, bytes | str], base: Path | None = None) -> Path:
        root = base or tmp_path
        for rel, content in files.items():
            p = root / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, str):
                content = content.encode("utf-8")
            p.write_bytes(content)
        return root

    return _make


@pytest.fixture
def metrics_reset():
    from file_lister.scan_engine.metrics import metrics

    metrics.reset()
    yield metrics
    metrics.reset()

from __future__ import annotations

import threading


class CancelToken:
    """Cooperative cancellation flag shared between a job and its worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to ``timeout`` seconds, returning early (True) once cancelled."""
        return self._event.wait(timeout)


class _NeverCancelled(CancelToken):
    """Shared token for callers that never cancel; `cancel` does nothing."""

    def cancel(self) -> None:
        pass


NEVER: CancelToken = _NeverCancelled()

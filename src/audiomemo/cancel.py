from __future__ import annotations

import threading
import time

from audiomemo.errors import DeadlineExceeded, OperationCanceled


class CancelToken:
    """Cancellation flag with an optional deadline, owned by the caller.

    A token is handed to a transcription call; another thread (typically a
    signal handler) calls ``cancel()`` to abort it.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCanceled("operation canceled")
        if self.expired:
            raise DeadlineExceeded("deadline exceeded")

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancel."""
        return self._event.wait(timeout)

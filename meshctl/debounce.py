"""Coalescing of bursts of events into single callback invocations."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

log = logging.getLogger(__name__)


class Debouncer:
    """Calls ``callback`` once events have been quiet for ``after`` seconds.

    If events keep arriving, the callback fires anyway once ``max_wait``
    seconds have passed since the first pending event.
    """

    def __init__(self, after: float, max_wait: float, callback: Callable[[], None]) -> None:
        self._after = after
        self._max_wait = max_wait
        self._callback = callback
        self._cond = threading.Condition()
        self._first: Optional[float] = None
        self._last: Optional[float] = None
        self._stopped = False
        self._thread = threading.Thread(target=self._loop, name="debouncer", daemon=True)
        self._thread.start()

    def __enter__(self) -> "Debouncer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def bounce(self) -> None:
        """Record an event; ignored once the debouncer is stopped."""
        with self._cond:
            if self._stopped:
                return
            now = time.monotonic()
            if self._first is None:
                self._first = now
            self._last = now
            self._cond.notify()

    def stop(self) -> None:
        """Stop the debouncer; pending events are dropped."""
        with self._cond:
            self._stopped = True
            self._cond.notify()
        if threading.current_thread() is not self._thread:
            self._thread.join()

    def _loop(self) -> None:
        while True:
            with self._cond:
                while not self._stopped and self._first is None:
                    self._cond.wait()
                if self._stopped:
                    return
                deadline = min(self._last + self._after, self._first + self._max_wait)
                remaining = deadline - time.monotonic()
                if remaining > 0:
                    self._cond.wait(remaining)
                    continue
                self._first = None
                self._last = None
            try:
                self._callback()
            except Exception:
                log.exception("debounced callback failed")
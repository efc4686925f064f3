"""Cancellable timers for watchdog and inactivity checks."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RepeatingTimer:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread until cancelled.

    Exceptions from the callback are logged and the timer keeps running.
    ``cancel()`` is idempotent and safe to call from inside the callback.
    """

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "timer"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "RepeatingTimer":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        return self

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("Timer %s callback failed", self.name)

    def cancel(self) -> None:
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()


class CancellableTimer:
    """One-shot timer wrapper around threading.Timer with a reset operation."""

    def __init__(self, delay: float, callback: Callable[[], None], name: str = "timer"):
        self.delay = delay
        self.callback = callback
        self.name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._cancelled = False

    def _fire(self) -> None:
        with self._lock:
            if self._cancelled:
                return
        try:
            self.callback()
        except Exception:
            logger.exception("Timer %s callback failed", self.name)

    def start(self) -> "CancellableTimer":
        with self._lock:
            if self._cancelled:
                return self
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.name = self.name
            self._timer.start()
        return self

    def reset(self) -> None:
        self.start()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

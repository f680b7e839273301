"""Thread-backed timers for heartbeats, registry polling and retries."""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellable handle returned by the scheduler."""

    def __init__(self, thread: threading.Thread, cancelled: threading.Event):
        self._thread = thread
        self._cancelled = cancelled

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class Scheduler:
    """Runs callbacks on daemon threads after a delay or on a fixed interval.

    Callbacks must handle their own errors; an exception escaping a callback
    is logged and, for repeating timers, does not stop later ticks.
    """

    def call_later(self, delay: float, fn: Callable, *args) -> TimerHandle:
        cancelled = threading.Event()

        def run():
            if cancelled.wait(delay):
                return
            self._invoke(fn, args)

        return self._start(run, cancelled, getattr(fn, "__name__", "timer"))

    def call_every(self, interval: float, fn: Callable, *args) -> TimerHandle:
        cancelled = threading.Event()

        def run():
            while not cancelled.wait(interval):
                self._invoke(fn, args)

        return self._start(run, cancelled, getattr(fn, "__name__", "interval"))

    @staticmethod
    def _invoke(fn: Callable, args: tuple) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Unhandled error in scheduled callback %r", fn)

    @staticmethod
    def _start(target: Callable, cancelled: threading.Event, name: str) -> TimerHandle:
        thread = threading.Thread(target=target, name=f"beacon-{name}", daemon=True)
        thread.start()
        return TimerHandle(thread, cancelled)

"""Lifecycle signals emitted by the client."""

import logging
import threading
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

STARTED = "started"
REGISTERED = "registered"
DEREGISTERED = "deregistered"
HEARTBEAT = "heartbeat"
REGISTRY_UPDATED = "registryUpdated"

SIGNALS = (STARTED, REGISTERED, DEREGISTERED, HEARTBEAT, REGISTRY_UPDATED)


class EventEmitter:
    """Minimal observer registry keyed by signal name.

    Listeners run synchronously on the thread that emits, which may be a
    timer thread for ``heartbeat`` and ``registryUpdated``. A listener that
    raises is logged and does not stop the remaining listeners.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Callable]] = {}

    def on(self, signal: str, listener: Callable) -> Callable:
        if signal not in SIGNALS:
            raise ValueError(f"Unknown signal: {signal!r}")
        with self._lock:
            self._listeners.setdefault(signal, []).append(listener)
        return listener

    def off(self, signal: str, listener: Callable) -> None:
        with self._lock:
            listeners = self._listeners.get(signal, [])
            if listener in listeners:
                listeners.remove(listener)

    def emit(self, signal: str, *args) -> None:
        with self._lock:
            listeners = list(self._listeners.get(signal, []))
        logger.debug("emitting %s to %d listener(s)", signal, len(listeners))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                logger.exception("Listener for %s failed", signal)

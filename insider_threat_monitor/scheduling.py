from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Protocol

logger = logging.getLogger(__name__)


class Timer(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[str, float, Callable[[], None]], Timer]


class PeriodicTask:
    """Runs ``callback`` every ``interval`` seconds on a daemon thread.

    A failing tick is logged and the schedule continues. Once cancelled the
    task never fires again, including when cancelled from inside its own
    callback.
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], None]):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stopped.set()

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("Periodic task %s failed; continuing", self.name)


class KeyedLocks:
    """One re-entrant lock per key, so unrelated employees never contend."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def __call__(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

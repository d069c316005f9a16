"""Watches local folders and feeds settled new files into the download detector."""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .models import utcnow

logger = logging.getLogger(__name__)

TouchSink = Callable[[str, int, datetime], None]


def default_monitored_paths() -> List[str]:
    configured = os.getenv("MONITORED_PATHS")
    if configured:
        candidates = [p for p in configured.split(os.pathsep) if p]
    else:
        home = Path.home()
        candidates = [str(home / "Downloads"), str(home / "Desktop"), str(home / "Documents")]
    return [p for p in candidates if os.path.isdir(p)]


def is_hidden(path: str) -> bool:
    return any(part.startswith(".") and part not in (".", "..") for part in Path(path).parts)


def wait_for_stable_size(path: str, stability_seconds: float, poll_interval: float) -> Optional[int]:
    """Block until ``path`` stops growing for ``stability_seconds``; None if it vanished."""
    last_size = -1
    stable_since = time.monotonic()
    while True:
        try:
            size = os.path.getsize(path)
        except OSError:
            return None
        now = time.monotonic()
        if size != last_size:
            last_size = size
            stable_since = now
        elif now - stable_since >= stability_seconds:
            return size
        time.sleep(poll_interval)


class SettledFileHandler(FileSystemEventHandler):
    """Reports each new non-hidden file once its size has settled."""

    def __init__(
        self,
        sink: TouchSink,
        executor: ThreadPoolExecutor,
        stability_seconds: float = 2.0,
        poll_interval: float = 0.1,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sink = sink
        self.executor = executor
        self.stability_seconds = stability_seconds
        self.poll_interval = poll_interval
        self.clock = clock

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        if is_hidden(path):
            return
        self.executor.submit(self._settle, path)

    def _settle(self, path: str) -> None:
        size = wait_for_stable_size(path, self.stability_seconds, self.poll_interval)
        if size is None:
            logger.debug("File %s disappeared before settling", path)
            return
        try:
            self.sink(path, size, self.clock())
        except Exception:
            logger.exception("Failed to record file activity for %s", path)


class FolderWatcher:
    """One watchdog observer per monitored employee."""

    def __init__(
        self,
        paths: Iterable[str] | None = None,
        stability_seconds: float = 2.0,
        poll_interval: float = 0.1,
        max_workers: int = 4,
    ):
        self.paths = list(paths) if paths is not None else default_monitored_paths()
        self.stability_seconds = stability_seconds
        self.poll_interval = poll_interval
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="settle")
        self._observers: Dict[str, Observer] = {}
        self._lock = threading.Lock()

    def watch(self, employee_id: str, sink: TouchSink) -> bool:
        with self._lock:
            if employee_id in self._observers:
                return False
            handler = SettledFileHandler(sink, self._executor, self.stability_seconds, self.poll_interval)
            observer = Observer()
            for path in self.paths:
                observer.schedule(handler, path, recursive=True)
            observer.start()
            self._observers[employee_id] = observer
        logger.info("Watching %s for %s", self.paths, employee_id)
        return True

    def unwatch(self, employee_id: str) -> None:
        with self._lock:
            observer = self._observers.pop(employee_id, None)
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)
            logger.info("Stopped watching folders for %s", employee_id)

    def close(self) -> None:
        with self._lock:
            employees = list(self._observers)
        for employee_id in employees:
            self.unwatch(employee_id)
        self._executor.shutdown(wait=False)

from __future__ import annotations

import logging
import os
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from .config import EngineConfig
from .exceptions import InvalidEventError
from .models import BulkDownloadAlert, BulkThreatDetails, DownloadTouch, ThreatCategory, utcnow
from .persistence import Repository
from .risk_engine import BulkDownloadRiskInput, score_bulk_download
from .scheduling import KeyedLocks, PeriodicTask, Timer, TimerFactory
from .threats import ThreatLifecycleManager

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)
BYTES_PER_MB = 1024 * 1024


@dataclass(slots=True)
class DownloadWindow:
    last_check_time: datetime
    touches: List[DownloadTouch] = field(default_factory=list)


class BulkDownloadDetector:
    """Rolls file touches per employee and reports bursts as bulk downloads.

    Each monitored employee gets a periodic scan. A scan that finds enough
    files or bytes inside the trailing window persists a download alert,
    escalates it through the threat lifecycle and empties the window, so a
    burst is reported once.
    """

    def __init__(
        self,
        repository: Repository,
        threats: ThreatLifecycleManager,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        timer_factory: TimerFactory = PeriodicTask,
    ):
        self.repository = repository
        self.threats = threats
        self.config = config or EngineConfig()
        self.clock = clock
        self.timer_factory = timer_factory
        self._windows: Dict[str, DownloadWindow] = {}
        self._timers: Dict[str, Timer] = {}
        self._registry_lock = threading.Lock()
        self._locks = KeyedLocks()

    def start_monitoring(self, employee_id: str) -> bool:
        with self._registry_lock:
            if employee_id in self._timers:
                logger.debug("Already monitoring downloads for %s", employee_id)
                return False
            self._windows.setdefault(employee_id, DownloadWindow(last_check_time=self.clock()))
            timer = self.timer_factory(
                f"bulk-scan-{employee_id}",
                self.config.scan_interval_seconds,
                lambda: self.evaluate(employee_id),
            )
            self._timers[employee_id] = timer
        timer.start()
        logger.info("Started download monitoring for %s", employee_id)
        return True

    def stop_monitoring(self, employee_id: str) -> None:
        with self._registry_lock:
            timer = self._timers.pop(employee_id, None)
            self._windows.pop(employee_id, None)
        if timer is not None:
            timer.cancel()
            logger.info("Stopped download monitoring for %s", employee_id)

    def stop_all(self) -> None:
        for employee_id in self.monitored_employees():
            self.stop_monitoring(employee_id)

    def is_monitoring(self, employee_id: str) -> bool:
        with self._registry_lock:
            return employee_id in self._timers

    def monitored_employees(self) -> List[str]:
        with self._registry_lock:
            return list(self._timers)

    def pending_touches(self, employee_id: str) -> int:
        with self._locks(employee_id):
            window = self._windows.get(employee_id)
            return len(window.touches) if window else 0

    def record_touch(
        self,
        employee_id: str,
        path: str,
        size: int,
        timestamp: Optional[datetime] = None,
        folder: Optional[str] = None,
    ) -> bool:
        if not employee_id:
            raise InvalidEventError("employee_id is required")
        if size < 0:
            raise InvalidEventError(f"negative file size for {path}: {size}")
        timestamp = timestamp or self.clock()
        if timestamp < EPOCH:
            raise InvalidEventError(f"timestamp {timestamp.isoformat()} precedes the Unix epoch")

        touch = DownloadTouch(
            employee_id=employee_id,
            path=path,
            size=size,
            timestamp=timestamp,
            folder=folder or os.path.dirname(path),
        )
        with self._locks(employee_id):
            window = self._windows.get(employee_id)
            if window is None:
                logger.debug("Dropping touch %s: %s is not monitored", path, employee_id)
                return False
            window.touches.append(touch)
        return True

    def evaluate(self, employee_id: str) -> Optional[BulkDownloadAlert]:
        with self._locks(employee_id):
            window = self._windows.get(employee_id)
            if window is None or not window.touches:
                return None

            now = self.clock()
            window_start = now - self.config.bulk_window
            recent = [touch for touch in window.touches if touch.timestamp > window_start]
            if not recent:
                window.touches.clear()
                window.last_check_time = now
                return None

            total_files = len(recent)
            total_size_mb = round(sum(touch.size for touch in recent) / BYTES_PER_MB, 2)
            if total_files < self.config.bulk_file_threshold and total_size_mb < self.config.bulk_size_threshold_mb:
                window.touches = recent
                window.last_check_time = now
                return None

            folder_path = Counter(touch.folder for touch in recent).most_common(1)[0][0]
            risk = score_bulk_download(
                BulkDownloadRiskInput(total_files=total_files, total_size_mb=total_size_mb, timestamp=now),
                self.config,
            )
            alert = BulkDownloadAlert(
                alert_id=str(uuid4()),
                employee_id=employee_id,
                timestamp=now,
                total_files=total_files,
                total_size_mb=total_size_mb,
                folder_path=folder_path,
                risk=risk,
            )
            # touches recorded while the alert is stored belong to the next window
            window.touches = []
            window.last_check_time = now

        try:
            self.repository.insert_download_alert(alert)
        except Exception:
            self._restore(employee_id, window, recent)
            raise
        logger.info(
            "Bulk download alert for %s: %s files, %sMB from %s (score=%s)",
            employee_id,
            total_files,
            total_size_mb,
            folder_path,
            risk.score,
        )
        # the window stays empty if escalation fails; the stored alert covers the burst
        self.threats.raise_threat(
            employee_id,
            ThreatCategory.BULK,
            risk,
            alert.alert_id,
            BulkThreatDetails(total_files=total_files, total_size_mb=total_size_mb, folder_path=folder_path),
        )
        return alert

    def _restore(self, employee_id: str, window: DownloadWindow, touches: List[DownloadTouch]) -> None:
        with self._locks(employee_id):
            if self._windows.get(employee_id) is window:
                window.touches[:0] = touches

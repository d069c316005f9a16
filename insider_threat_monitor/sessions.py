from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .config import EngineConfig
from .models import Session, utcnow
from .scheduling import KeyedLocks, PeriodicTask, Timer, TimerFactory

logger = logging.getLogger(__name__)

SessionEndHook = Callable[[Session, str], None]


class SessionManager:
    """Owns the active session per employee and its idle-timeout check.

    Every session carries its own periodic idle check; the check is cancelled
    whenever the session ends, whatever the reason. Starting a session for
    an employee that already has one with a different login ends the old
    session first (reason ``"replaced"``).
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        timer_factory: TimerFactory = PeriodicTask,
        on_session_end: Optional[SessionEndHook] = None,
    ):
        self.config = config or EngineConfig()
        self.clock = clock
        self.timer_factory = timer_factory
        self.on_session_end = on_session_end
        self._sessions: Dict[str, Session] = {}
        self._timers: Dict[str, Timer] = {}
        self._registry_lock = threading.Lock()
        self._locks = KeyedLocks()

    def start_session(self, employee_id: str, login_ref: str) -> Session:
        replaced: Optional[Session] = None
        with self._locks(employee_id):
            existing = self.get_session(employee_id)
            if existing is not None and existing.login_ref == login_ref:
                return existing
            if existing is not None:
                replaced = self._remove(employee_id)

            now = self.clock()
            session = Session(employee_id=employee_id, login_ref=login_ref, login_time=now, last_activity_time=now)
            timer = self.timer_factory(
                f"idle-check-{employee_id}",
                self.config.idle_check_interval_seconds,
                lambda: self.check_idle(employee_id),
            )
            with self._registry_lock:
                self._sessions[employee_id] = session
                self._timers[employee_id] = timer
            timer.start()

        if replaced is not None:
            logger.info("Session %s for %s replaced by %s", replaced.login_ref, employee_id, login_ref)
            try:
                self._notify_end(replaced, "replaced")
            except Exception:
                logger.exception("Failed to close replaced session %s for %s", replaced.login_ref, employee_id)
        logger.info("Session started for %s (login %s)", employee_id, login_ref)
        return session

    def touch_activity(self, employee_id: str) -> bool:
        with self._locks(employee_id):
            session = self.get_session(employee_id)
            if session is None:
                return False
            session.last_activity_time = self.clock()
            return True

    def end_session(self, employee_id: str, reason: str = "logout") -> Optional[Session]:
        with self._locks(employee_id):
            session = self._remove(employee_id)
        if session is not None:
            logger.info("Session ended for %s (%s)", employee_id, reason)
            self._notify_end(session, reason)
        return session

    def check_idle(self, employee_id: str) -> bool:
        """Run one idle check; True when it timed the session out."""
        with self._locks(employee_id):
            session = self.get_session(employee_id)
            if session is None:
                self._cancel_timer(employee_id)
                return False
            if self.clock() - session.last_activity_time < self.config.session_timeout:
                return False
            self._remove(employee_id)

        logger.info("Auto-logout for %s due to inactivity", employee_id)
        self._notify_end(session, "idle_timeout")
        return True

    def get_session(self, employee_id: str) -> Optional[Session]:
        with self._registry_lock:
            return self._sessions.get(employee_id)

    def active_sessions(self) -> List[Session]:
        with self._registry_lock:
            return list(self._sessions.values())

    def stop_all(self) -> None:
        with self._registry_lock:
            employees = list(self._sessions)
        for employee_id in employees:
            try:
                self.end_session(employee_id, reason="shutdown")
            except Exception:
                logger.exception("Failed to close session for %s during shutdown", employee_id)

    def _remove(self, employee_id: str) -> Optional[Session]:
        with self._registry_lock:
            session = self._sessions.pop(employee_id, None)
        self._cancel_timer(employee_id)
        return session

    def _cancel_timer(self, employee_id: str) -> None:
        with self._registry_lock:
            timer = self._timers.pop(employee_id, None)
        if timer is not None:
            timer.cancel()

    def _notify_end(self, session: Session, reason: str) -> None:
        if self.on_session_end is not None:
            self.on_session_end(session, reason)

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

from .activity_aggregator import EPOCH, BulkDownloadDetector
from .broadcaster import AlertBroadcaster, default_broadcaster
from .config import EngineConfig
from .exceptions import InvalidEventError, LoginBlockedError
from .file_watcher import FolderWatcher
from .geo_analyzer import GeoAnomalyAnalyzer, IpApiResolver, LocationResolver
from .models import (
    ActiveThreat,
    ActivityRecord,
    AnomalyResult,
    AnomalyType,
    BulkDownloadAlert,
    EmployeeRiskSummary,
    GeographicAlert,
    GeoThreatDetails,
    Location,
    LoginEvent,
    LoginOutcome,
    LoginStatus,
    LoginThreatDetails,
    RiskAssessment,
    RiskLevel,
    Session,
    ThreatCategory,
    utcnow,
)
from .persistence import MongoRepository, Repository
from .risk_engine import (
    BulkDownloadRiskInput,
    GeoRiskInput,
    LoginRiskInput,
    risk_level,
    score_bulk_download,
    score_geo,
    score_login,
)
from .scheduling import PeriodicTask, TimerFactory
from .sessions import SessionManager
from .threats import ThreatLifecycleManager

logger = logging.getLogger(__name__)

VERIFICATION_SCORES = {RiskLevel.MEDIUM: 50, RiskLevel.HIGH: 75}
BLOCKED_LOGIN_SCORE = 100
DOWNLOAD_ALERT_STATUSES = ("New", "Resolved")
GEO_VERDICTS = ("Yes", "No")


def _require_employee(employee_id: str) -> None:
    if not employee_id or not employee_id.strip():
        raise InvalidEventError("employee_id is required")


def _require_timestamp(timestamp: datetime) -> None:
    if timestamp < EPOCH:
        raise InvalidEventError(f"timestamp {timestamp.isoformat()} precedes the Unix epoch")


class MonitoringService:
    """Entry point tying scoring, geo analysis, bulk-download aggregation,
    sessions and threat escalation together for the calling layer."""

    def __init__(
        self,
        repository: Repository,
        resolver: LocationResolver | None = None,
        broadcaster: AlertBroadcaster | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        timer_factory: TimerFactory = PeriodicTask,
        folder_watcher: FolderWatcher | None = None,
    ):
        self.config = config or EngineConfig()
        self.repository = repository
        self.clock = clock
        self.threats = ThreatLifecycleManager(repository, broadcaster or default_broadcaster(), self.config, clock)
        self.geo = GeoAnomalyAnalyzer(
            resolver or IpApiResolver(self.config.location_api_url, self.config.location_timeout_seconds),
            self.config,
            clock,
        )
        self.downloads = BulkDownloadDetector(repository, self.threats, self.config, clock, timer_factory)
        self.sessions = SessionManager(self.config, clock, timer_factory, on_session_end=self._on_session_end)
        self.folder_watcher = folder_watcher

    def stop(self) -> None:
        self.sessions.stop_all()
        self.downloads.stop_all()
        if self.folder_watcher is not None:
            self.folder_watcher.close()
        logger.info("Monitoring service stopped")

    # scoring

    def score_login(self, data: LoginRiskInput) -> RiskAssessment:
        return score_login(data, self.config)

    def score_bulk_download(self, data: BulkDownloadRiskInput) -> RiskAssessment:
        return score_bulk_download(data, self.config)

    def score_geo(self, data: GeoRiskInput) -> RiskAssessment:
        return score_geo(data, self.config)

    # logins

    def record_failed_login(self, employee_id: str, ip_address: str = "") -> LoginOutcome:
        _require_employee(employee_id)
        now = self.clock()
        failed_count = self.repository.count_failed_logins(employee_id, now - self.config.failed_login_lookback) + 1
        risk = score_login(
            LoginRiskInput(failed_attempts_count=failed_count, login_timestamp=now, success=False),
            self.config,
        )
        event = LoginEvent(
            login_ref=str(uuid4()),
            employee_id=employee_id,
            timestamp=now,
            status=LoginStatus.FAILED,
            ip_address=ip_address,
            failed_attempts_count=failed_count,
            risk_level=risk.level,
        )
        self.repository.insert_login(event)
        logger.info("Failed login #%s for %s (score=%s)", failed_count, employee_id, risk.score)

        threat = self.threats.raise_threat(
            employee_id,
            ThreatCategory.LOGIN,
            risk,
            event.login_ref,
            LoginThreatDetails(failed_attempts=failed_count, login_time=now, ip_address=ip_address),
        )
        return LoginOutcome(login_ref=event.login_ref, assessment=risk, threats=[threat] if threat else [])

    def record_successful_login(self, employee_id: str, ip_address: str, login_ref: Optional[str] = None) -> LoginOutcome:
        """Process an authenticated login and open a monitored session.

        Raises :class:`LoginBlockedError` when the employee's location policy
        refuses the resolved location; the refusal is persisted as a failed
        login and a critical geographic threat first.
        """
        _require_employee(employee_id)
        now = self.clock()
        login_ref = login_ref or str(uuid4())
        location = self.geo.resolve(ip_address)
        threats: List[ActiveThreat] = []

        verification = None
        profile = self.repository.get_employee(employee_id)
        if profile is not None:
            verification = self.geo.verify_login_location(ip_address, location, profile)
            if not verification.allowed:
                self._record_blocked_login(employee_id, ip_address, login_ref, now, location, verification.reason)
                raise LoginBlockedError(employee_id, verification.reason)

        anomaly = self.resolve_and_analyze_geo(employee_id, ip_address, now)

        failures = self.repository.count_failed_logins(employee_id, now - self.config.failed_login_lookback)
        risk = score_login(
            LoginRiskInput(
                failed_attempts_count=failures,
                login_timestamp=now,
                success=True,
                previous_failed_then_success=failures > 0,
            ),
            self.config,
        )
        stored_level = risk.level
        if risk.level is RiskLevel.LOW and verification is not None:
            stored_level = verification.risk_level
        event = LoginEvent(
            login_ref=login_ref,
            employee_id=employee_id,
            timestamp=now,
            status=LoginStatus.SUCCESS,
            ip_address=ip_address,
            city=location.city,
            country=location.country,
            failed_attempts_count=failures,
            risk_level=stored_level,
        )
        self.repository.insert_login(event)

        if verification is not None and verification.risk_level in VERIFICATION_SCORES:
            score = VERIFICATION_SCORES[verification.risk_level]
            threat = self.threats.raise_threat(
                employee_id,
                ThreatCategory.GEO,
                RiskAssessment(score=score, level=risk_level(score), reasons=[verification.reason]),
                login_ref,
                GeoThreatDetails(
                    current_location=location.label,
                    ip_address=ip_address,
                    verification_reason=verification.reason,
                ),
            )
            if threat:
                threats.append(threat)

        if anomaly is not None and self.threats.qualifies(ThreatCategory.GEO, anomaly.risk):
            geo_alert = GeographicAlert(
                alert_id=str(uuid4()),
                employee_id=employee_id,
                alert_timestamp=now,
                current_location=anomaly.current_location,
                previous_location=anomaly.previous_location,
                hours_between=anomaly.hours_between,
                min_travel_hours=anomaly.min_travel_hours,
                anomaly_type=anomaly.anomaly_type,
                risk_level=anomaly.risk.level,
            )
            self.repository.insert_geo_alert(geo_alert)
            threat = self.threats.raise_threat(
                employee_id,
                ThreatCategory.GEO,
                anomaly.risk,
                geo_alert.alert_id,
                GeoThreatDetails(
                    current_location=anomaly.current_location.label,
                    previous_location=anomaly.previous_location.label,
                    anomaly_type=anomaly.anomaly_type,
                    ip_address=ip_address,
                ),
            )
            if threat:
                threats.append(threat)

        threat = self.threats.raise_threat(
            employee_id,
            ThreatCategory.LOGIN,
            risk,
            login_ref,
            LoginThreatDetails(failed_attempts=failures, login_time=now, ip_address=ip_address),
        )
        if threat:
            threats.append(threat)

        self.start_session(employee_id, login_ref)
        return LoginOutcome(
            login_ref=login_ref,
            assessment=risk,
            location=location,
            verification=verification,
            anomaly=anomaly,
            threats=threats,
        )

    def _record_blocked_login(
        self, employee_id: str, ip_address: str, login_ref: str, now: datetime, location: Location, reason: str
    ) -> None:
        self.repository.insert_login(
            LoginEvent(
                login_ref=login_ref,
                employee_id=employee_id,
                timestamp=now,
                status=LoginStatus.FAILED,
                ip_address=ip_address,
                city=location.city,
                country=location.country,
                risk_level=RiskLevel.CRITICAL,
            )
        )
        self.threats.raise_threat(
            employee_id,
            ThreatCategory.GEO,
            RiskAssessment(score=BLOCKED_LOGIN_SCORE, level=risk_level(BLOCKED_LOGIN_SCORE), reasons=[reason]),
            login_ref,
            GeoThreatDetails(
                current_location=location.label,
                ip_address=ip_address,
                blocked=True,
                verification_reason=reason,
            ),
        )
        logger.warning("Blocked login for %s from %s: %s", employee_id, location.label, reason)

    def resolve_and_analyze_geo(self, employee_id: str, ip_address: str, timestamp: datetime) -> Optional[AnomalyResult]:
        _require_employee(employee_id)
        _require_timestamp(timestamp)
        previous = self.repository.latest_completed_login(employee_id)
        return self.geo.analyze(ip_address, timestamp, previous)

    # downloads

    def record_download_touch(
        self, employee_id: str, path: str, size: int, timestamp: Optional[datetime] = None
    ) -> bool:
        return self.downloads.record_touch(employee_id, path, size, timestamp)

    # sessions

    def start_session(self, employee_id: str, login_ref: str) -> Session:
        _require_employee(employee_id)
        session = self.sessions.start_session(employee_id, login_ref)
        self.downloads.start_monitoring(employee_id)
        if self.folder_watcher is not None:
            self.folder_watcher.watch(
                employee_id,
                lambda path, size, ts: self.downloads.record_touch(employee_id, path, size, ts),
            )
        return session

    def touch_activity(self, employee_id: str) -> bool:
        return self.sessions.touch_activity(employee_id)

    def end_session(self, employee_id: str) -> bool:
        return self.sessions.end_session(employee_id) is not None

    def _on_session_end(self, session: Session, reason: str) -> None:
        # monitoring stops with the session even when the logout write fails
        try:
            self.repository.close_login(session.login_ref, self.clock())
        finally:
            self.downloads.stop_monitoring(session.employee_id)
            if self.folder_watcher is not None:
                self.folder_watcher.unwatch(session.employee_id)

    # alert review

    def list_download_alerts(
        self, employee_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50
    ) -> List[BulkDownloadAlert]:
        return self.repository.list_download_alerts(employee_id=employee_id, status=status, limit=limit)

    def set_download_alert_status(self, alert_id: str, status: str) -> Optional[BulkDownloadAlert]:
        if status not in DOWNLOAD_ALERT_STATUSES:
            raise InvalidEventError(f"status must be one of {', '.join(DOWNLOAD_ALERT_STATUSES)}")
        alert = self.repository.set_download_alert_status(alert_id, status)
        if alert is not None:
            logger.info("Download alert %s set to %s", alert_id, status)
        return alert

    def list_geo_alerts(
        self,
        employee_id: Optional[str] = None,
        anomaly_type: Optional[AnomalyType] = None,
        verified: Optional[str] = None,
        limit: int = 50,
    ) -> List[GeographicAlert]:
        return self.repository.list_geo_alerts(
            employee_id=employee_id, anomaly_type=anomaly_type, verified=verified, limit=limit
        )

    def verify_geo_alert(self, alert_id: str, verified: str) -> Optional[GeographicAlert]:
        """Record an operator's verdict on a geographic alert.

        ``"Yes"`` marks the travel as legitimate and solves the geo threat
        that alert raised.
        """
        if verified not in GEO_VERDICTS:
            raise InvalidEventError('verified must be "Yes" or "No"')
        alert = self.repository.set_geo_alert_verified(alert_id, verified)
        if alert is None:
            return None
        if verified == "Yes":
            solved = self.repository.solve_threats_for_source(ThreatCategory.GEO, alert_id, self.clock())
            logger.info("Geo alert %s verified legitimate; %s threat(s) solved", alert_id, solved)
        return alert

    def high_risk_employees(self, limit: int = 5) -> List[EmployeeRiskSummary]:
        summaries = self.repository.open_threat_totals(limit)
        for summary in summaries:
            profile = self.repository.get_employee(summary.employee_id)
            if profile is not None and profile.name:
                summary.employee_name = profile.name
        return summaries

    def recent_activity(self, limit: int = 10) -> List[ActivityRecord]:
        records = [
            ActivityRecord(
                kind="login",
                ref=event.login_ref,
                employee_id=event.employee_id,
                timestamp=event.timestamp,
                status=event.status.value,
                detail=f"{event.city}, {event.country}" if event.city else event.ip_address,
            )
            for event in self.repository.recent_logins(limit)
        ]
        records.extend(
            ActivityRecord(
                kind="bulk_download",
                ref=alert.alert_id,
                employee_id=alert.employee_id,
                timestamp=alert.timestamp,
                status=alert.risk.level.value,
                detail=f"{alert.total_files} files, {alert.total_size_mb}MB from {alert.folder_path}",
            )
            for alert in self.repository.list_download_alerts(limit=limit)
        )
        records.extend(
            ActivityRecord(
                kind="geo",
                ref=alert.alert_id,
                employee_id=alert.employee_id,
                timestamp=alert.alert_timestamp,
                status=alert.anomaly_type.value,
                detail=f"{alert.previous_location.label} -> {alert.current_location.label}",
            )
            for alert in self.repository.list_geo_alerts(limit=limit)
        )
        records.sort(key=lambda record: record.timestamp, reverse=True)
        return records[:limit]


def create_service_from_env() -> MonitoringService:
    repository = MongoRepository(
        uri=os.getenv("MONGODB_URI", "mongodb://mongo:27017/"),
        database=os.getenv("MONGODB_DATABASE", "insider_threat"),
    )
    folder_watcher = FolderWatcher() if os.getenv("MONITORED_PATHS") else None
    return MonitoringService(repository, config=EngineConfig.from_env(), folder_watcher=folder_watcher)

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .exceptions import InvalidEventError, LoginBlockedError
from .models import (
    ActiveThreat,
    ActivityRecord,
    AnomalyResult,
    AnomalyType,
    BulkDownloadAlert,
    EmployeeRiskSummary,
    GeographicAlert,
    Location,
    LoginOutcome,
    RiskAssessment,
    Session,
    ThreatCategory,
)
from .persistence import details_to_document
from .risk_engine import BulkDownloadRiskInput, GeoRiskInput, LoginRiskInput
from .service import MonitoringService, create_service_from_env
from .tasks import enqueue_geo_analysis


class LoginScoreRequest(BaseModel):
    failed_attempts_count: int = Field(ge=0)
    login_timestamp: datetime
    success: bool
    previous_failed_then_success: bool = False


class BulkDownloadScoreRequest(BaseModel):
    total_files: int = Field(ge=0)
    total_size_mb: float = Field(ge=0)
    timestamp: datetime


class GeoScoreRequest(BaseModel):
    anomaly_type: AnomalyType
    current_country: str = ""
    hours_between: float = Field(default=0.0, ge=0)
    min_travel_hours: float = Field(default=0.0, ge=0)
    timestamp: datetime


class LoginRequest(BaseModel):
    employee_id: str = Field(min_length=1)
    ip_address: str = ""
    login_ref: Optional[str] = None


class FailedLoginRequest(BaseModel):
    employee_id: str = Field(min_length=1)
    ip_address: str = ""


class GeoAnalyzeRequest(BaseModel):
    employee_id: str = Field(min_length=1)
    ip_address: str
    timestamp: datetime


class DownloadTouchRequest(BaseModel):
    employee_id: str = Field(min_length=1)
    path: str = Field(min_length=1)
    size: int = Field(ge=0)
    timestamp: Optional[datetime] = None


class SessionStartRequest(BaseModel):
    employee_id: str = Field(min_length=1)
    login_ref: str = Field(min_length=1)


class GeoVerifyRequest(BaseModel):
    verified: Literal["Yes", "No"]


class AssessmentResponse(BaseModel):
    score: int
    level: str
    reasons: List[str]


class LocationResponse(BaseModel):
    country: str
    city: str
    lat: float
    lon: float


class AnomalyResponse(BaseModel):
    current_location: LocationResponse
    previous_location: LocationResponse
    hours_between: float
    min_travel_hours: float
    anomaly_type: str
    risk: AssessmentResponse


class ThreatResponse(BaseModel):
    threat_id: str
    employee_id: str
    alert_type: str
    risk: AssessmentResponse
    source_event_ref: str
    opened_at: datetime
    last_updated_at: datetime
    solved: bool
    last_reviewed_at: Optional[datetime] = None
    occurrences: int
    details: Dict[str, Any]


class LoginResponse(BaseModel):
    login_ref: str
    assessment: AssessmentResponse
    location: Optional[LocationResponse] = None
    anomaly: Optional[AnomalyResponse] = None
    threats: List[ThreatResponse]


class SessionResponse(BaseModel):
    employee_id: str
    login_ref: str
    login_time: datetime
    last_activity_time: datetime


class TouchResponse(BaseModel):
    accepted: bool


class TaskEnqueueResponse(BaseModel):
    task_id: str
    status: str


class DownloadAlertResponse(BaseModel):
    alert_id: str
    employee_id: str
    timestamp: datetime
    total_files: int
    total_size_mb: float
    folder_path: str
    risk: AssessmentResponse
    status: str
    auto_triggered: bool


class GeoAlertResponse(BaseModel):
    alert_id: str
    employee_id: str
    alert_timestamp: datetime
    current_location: LocationResponse
    previous_location: LocationResponse
    hours_between: float
    min_travel_hours: float
    anomaly_type: str
    risk_level: str
    verified: str


class HighRiskEmployeeResponse(BaseModel):
    employee_id: str
    employee_name: str
    total_risk_score: int
    threat_count: int
    max_risk_score: int
    alert_types: List[str]


class ActivityResponse(BaseModel):
    kind: str
    ref: str
    employee_id: str
    timestamp: datetime
    status: str
    detail: str


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _serialize_assessment(assessment: RiskAssessment) -> AssessmentResponse:
    return AssessmentResponse(score=assessment.score, level=assessment.level.value, reasons=list(assessment.reasons))


def _serialize_location(location: Location) -> LocationResponse:
    return LocationResponse(country=location.country, city=location.city, lat=location.lat, lon=location.lon)


def _serialize_anomaly(anomaly: AnomalyResult) -> AnomalyResponse:
    return AnomalyResponse(
        current_location=_serialize_location(anomaly.current_location),
        previous_location=_serialize_location(anomaly.previous_location),
        hours_between=anomaly.hours_between,
        min_travel_hours=anomaly.min_travel_hours,
        anomaly_type=anomaly.anomaly_type.value,
        risk=_serialize_assessment(anomaly.risk),
    )


def _serialize_threat(threat: ActiveThreat) -> ThreatResponse:
    return ThreatResponse(
        threat_id=threat.threat_id,
        employee_id=threat.employee_id,
        alert_type=threat.category.value,
        risk=_serialize_assessment(threat.risk),
        source_event_ref=threat.source_event_ref,
        opened_at=threat.opened_at,
        last_updated_at=threat.last_updated_at,
        solved=threat.solved,
        last_reviewed_at=threat.last_reviewed_at,
        occurrences=threat.occurrences,
        details=details_to_document(threat.details),
    )


def _serialize_outcome(outcome: LoginOutcome) -> LoginResponse:
    return LoginResponse(
        login_ref=outcome.login_ref,
        assessment=_serialize_assessment(outcome.assessment),
        location=_serialize_location(outcome.location) if outcome.location else None,
        anomaly=_serialize_anomaly(outcome.anomaly) if outcome.anomaly else None,
        threats=[_serialize_threat(threat) for threat in outcome.threats],
    )


def _serialize_session(session: Session) -> SessionResponse:
    return SessionResponse(
        employee_id=session.employee_id,
        login_ref=session.login_ref,
        login_time=session.login_time,
        last_activity_time=session.last_activity_time,
    )


def _serialize_download_alert(alert: BulkDownloadAlert) -> DownloadAlertResponse:
    return DownloadAlertResponse(
        alert_id=alert.alert_id,
        employee_id=alert.employee_id,
        timestamp=alert.timestamp,
        total_files=alert.total_files,
        total_size_mb=alert.total_size_mb,
        folder_path=alert.folder_path,
        risk=_serialize_assessment(alert.risk),
        status=alert.status,
        auto_triggered=alert.auto_triggered,
    )


def _serialize_geo_alert(alert: GeographicAlert) -> GeoAlertResponse:
    return GeoAlertResponse(
        alert_id=alert.alert_id,
        employee_id=alert.employee_id,
        alert_timestamp=alert.alert_timestamp,
        current_location=_serialize_location(alert.current_location),
        previous_location=_serialize_location(alert.previous_location),
        hours_between=alert.hours_between,
        min_travel_hours=alert.min_travel_hours,
        anomaly_type=alert.anomaly_type.value,
        risk_level=alert.risk_level.value,
        verified=alert.verified,
    )


def _serialize_summary(summary: EmployeeRiskSummary) -> HighRiskEmployeeResponse:
    return HighRiskEmployeeResponse(
        employee_id=summary.employee_id,
        employee_name=summary.employee_name,
        total_risk_score=summary.total_risk_score,
        threat_count=summary.threat_count,
        max_risk_score=summary.max_risk_score,
        alert_types=list(summary.alert_types),
    )


def _serialize_activity(record: ActivityRecord) -> ActivityResponse:
    return ActivityResponse(
        kind=record.kind,
        ref=record.ref,
        employee_id=record.employee_id,
        timestamp=record.timestamp,
        status=record.status,
        detail=record.detail,
    )


def create_app(service: MonitoringService | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            app.state.service = create_service_from_env()
        yield
        app.state.service.stop()

    app = FastAPI(title="Insider Threat Monitor API", version="1.0.0", lifespan=lifespan)
    app.state.service = service

    def _service() -> MonitoringService:
        return app.state.service

    @app.exception_handler(InvalidEventError)
    async def invalid_event(request: Request, exc: InvalidEventError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(LoginBlockedError)
    async def login_blocked(request: Request, exc: LoginBlockedError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": exc.reason})

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/score/login", response_model=AssessmentResponse)
    def score_login(request: LoginScoreRequest) -> AssessmentResponse:
        data = LoginRiskInput(
            failed_attempts_count=request.failed_attempts_count,
            login_timestamp=_naive_utc(request.login_timestamp),
            success=request.success,
            previous_failed_then_success=request.previous_failed_then_success,
        )
        return _serialize_assessment(_service().score_login(data))

    @app.post("/score/bulk-download", response_model=AssessmentResponse)
    def score_bulk_download(request: BulkDownloadScoreRequest) -> AssessmentResponse:
        data = BulkDownloadRiskInput(
            total_files=request.total_files,
            total_size_mb=request.total_size_mb,
            timestamp=_naive_utc(request.timestamp),
        )
        return _serialize_assessment(_service().score_bulk_download(data))

    @app.post("/score/geo", response_model=AssessmentResponse)
    def score_geo(request: GeoScoreRequest) -> AssessmentResponse:
        data = GeoRiskInput(
            anomaly_type=request.anomaly_type,
            current_country=request.current_country,
            hours_between=request.hours_between,
            min_travel_hours=request.min_travel_hours,
            timestamp=_naive_utc(request.timestamp),
        )
        return _serialize_assessment(_service().score_geo(data))

    @app.post("/logins", response_model=LoginResponse)
    def login(request: LoginRequest) -> LoginResponse:
        outcome = _service().record_successful_login(request.employee_id, request.ip_address, request.login_ref)
        return _serialize_outcome(outcome)

    @app.post("/logins/failed", response_model=LoginResponse)
    def failed_login(request: FailedLoginRequest) -> LoginResponse:
        return _serialize_outcome(_service().record_failed_login(request.employee_id, request.ip_address))

    @app.post("/geo/analyze", response_model=Optional[AnomalyResponse])
    def analyze_geo(request: GeoAnalyzeRequest) -> Optional[AnomalyResponse]:
        anomaly = _service().resolve_and_analyze_geo(
            request.employee_id, request.ip_address, _naive_utc(request.timestamp)
        )
        return _serialize_anomaly(anomaly) if anomaly else None

    @app.post("/geo/analyze/async", response_model=TaskEnqueueResponse, status_code=202)
    def queue_geo_analysis(request: GeoAnalyzeRequest) -> TaskEnqueueResponse:
        task_id = enqueue_geo_analysis(request.employee_id, request.ip_address, _naive_utc(request.timestamp))
        return TaskEnqueueResponse(task_id=task_id, status="queued")

    @app.post("/downloads", response_model=TouchResponse)
    def record_download(request: DownloadTouchRequest) -> TouchResponse:
        timestamp = _naive_utc(request.timestamp) if request.timestamp else None
        accepted = _service().record_download_touch(request.employee_id, request.path, request.size, timestamp)
        return TouchResponse(accepted=accepted)

    @app.get("/monitoring")
    def monitoring_status() -> Dict[str, Any]:
        employees = _service().downloads.monitored_employees()
        return {"active_monitors": len(employees), "employees": employees}

    @app.post("/sessions", response_model=SessionResponse)
    def start_session(request: SessionStartRequest) -> SessionResponse:
        return _serialize_session(_service().start_session(request.employee_id, request.login_ref))

    @app.get("/sessions", response_model=List[SessionResponse])
    def list_sessions() -> List[SessionResponse]:
        return [_serialize_session(session) for session in _service().sessions.active_sessions()]

    @app.get("/sessions/{employee_id}", response_model=SessionResponse)
    def get_session(employee_id: str) -> SessionResponse:
        session = _service().sessions.get_session(employee_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return _serialize_session(session)

    @app.post("/sessions/{employee_id}/activity", response_model=SessionResponse)
    def touch_activity(employee_id: str) -> SessionResponse:
        if not _service().touch_activity(employee_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return get_session(employee_id)

    @app.delete("/sessions/{employee_id}")
    def end_session(employee_id: str) -> Dict[str, bool]:
        return {"ended": _service().end_session(employee_id)}

    @app.get("/threats", response_model=List[ThreatResponse])
    def list_threats(
        employee_id: Optional[str] = None,
        alert_type: Optional[ThreatCategory] = None,
        solved: Optional[bool] = None,
        limit: int = 50,
    ) -> List[ThreatResponse]:
        threats = _service().threats.list_threats(
            employee_id=employee_id, category=alert_type, solved=solved, limit=limit
        )
        return [_serialize_threat(threat) for threat in threats]

    @app.get("/threats/{threat_id}", response_model=ThreatResponse)
    def get_threat(threat_id: str) -> ThreatResponse:
        threat = _service().threats.get_threat(threat_id)
        if threat is None:
            raise HTTPException(status_code=404, detail="Threat not found")
        return _serialize_threat(threat)

    @app.patch("/threats/{threat_id}/solve", response_model=ThreatResponse)
    def solve_threat(threat_id: str) -> ThreatResponse:
        threat = _service().threats.solve(threat_id)
        if threat is None:
            raise HTTPException(status_code=404, detail="Threat not found")
        return _serialize_threat(threat)

    @app.get("/alerts/downloads", response_model=List[DownloadAlertResponse])
    def list_download_alerts(
        employee_id: Optional[str] = None,
        status: Optional[Literal["New", "Resolved"]] = None,
        limit: int = 50,
    ) -> List[DownloadAlertResponse]:
        alerts = _service().list_download_alerts(employee_id=employee_id, status=status, limit=limit)
        return [_serialize_download_alert(alert) for alert in alerts]

    @app.patch("/alerts/downloads/{alert_id}/resolve", response_model=DownloadAlertResponse)
    def resolve_download_alert(alert_id: str) -> DownloadAlertResponse:
        alert = _service().set_download_alert_status(alert_id, "Resolved")
        if alert is None:
            raise HTTPException(status_code=404, detail="Alert not found")
        return _serialize_download_alert(alert)

    @app.get("/alerts/geo", response_model=List[GeoAlertResponse])
    def list_geo_alerts(
        employee_id: Optional[str] = None,
        anomaly_type: Optional[AnomalyType] = None,
        verified: Optional[Literal["Yes", "No", "Pending"]] = None,
        limit: int = 50,
    ) -> List[GeoAlertResponse]:
        alerts = _service().list_geo_alerts(
            employee_id=employee_id, anomaly_type=anomaly_type, verified=verified, limit=limit
        )
        return [_serialize_geo_alert(alert) for alert in alerts]

    @app.put("/alerts/geo/{alert_id}/verify", response_model=GeoAlertResponse)
    def verify_geo_alert(alert_id: str, request: GeoVerifyRequest) -> GeoAlertResponse:
        alert = _service().verify_geo_alert(alert_id, request.verified)
        if alert is None:
            raise HTTPException(status_code=404, detail="Alert not found")
        return _serialize_geo_alert(alert)

    @app.get("/dashboard/high-risk-employees", response_model=List[HighRiskEmployeeResponse])
    def high_risk_employees(limit: int = 5) -> List[HighRiskEmployeeResponse]:
        return [_serialize_summary(summary) for summary in _service().high_risk_employees(limit)]

    @app.get("/dashboard/recent-activity", response_model=List[ActivityResponse])
    def recent_activity(limit: int = 10) -> List[ActivityResponse]:
        return [_serialize_activity(record) for record in _service().recent_activity(limit)]

    return app


app = create_app()

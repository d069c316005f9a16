from datetime import datetime

import pytest

from insider_threat_monitor import (
    AnomalyType,
    EngineConfig,
    InMemoryRepository,
    InvalidEventError,
    LoginBlockedError,
    MonitoringService,
    RiskAssessment,
    RiskLevel,
    ThreatCategory,
)
from insider_threat_monitor.models import (
    EmployeeProfile,
    GeoThreatDetails,
    LoginStatus,
    LoginThreatDetails,
    VerifiedLocation,
)

from conftest import BEIJING, BOSTON, NEW_YORK


def save_profile(repository, **overrides):
    values = dict(
        employee_id="emp-1",
        name="Dana",
        verified_locations=[VerifiedLocation(country="United States", city="New York")],
        allowed_countries=["United States"],
    )
    values.update(overrides)
    repository.save_employee(EmployeeProfile(**values))


def test_repeated_failed_logins_escalate_once(service, repository, broadcaster):
    outcomes = [service.record_failed_login("emp-1", NEW_YORK.ip) for _ in range(4)]

    assert [o.assessment.score for o in outcomes] == [0, 0, 25, 25]
    assert outcomes[0].threats == []
    assert outcomes[2].threats[0].category is ThreatCategory.LOGIN

    threats = repository.list_threats(employee_id="emp-1", category=ThreatCategory.LOGIN)
    assert len(threats) == 1
    assert threats[0].occurrences == 2
    assert threats[0].details.failed_attempts == 4
    assert broadcaster.events() == ["threat_opened", "threat_updated"]


def test_failures_outside_lookback_are_not_counted(service, clock):
    service.record_failed_login("emp-1")
    service.record_failed_login("emp-1")
    clock.advance(minutes=61)

    outcome = service.record_failed_login("emp-1")

    assert outcome.assessment.score == 0


def test_successful_login_after_failures(service, repository, timers):
    service.record_failed_login("emp-1", NEW_YORK.ip)
    service.record_failed_login("emp-1", NEW_YORK.ip)

    outcome = service.record_successful_login("emp-1", NEW_YORK.ip, login_ref="login-ok")

    assert outcome.assessment.score == 40
    assert outcome.assessment.level is RiskLevel.MEDIUM
    assert outcome.location == NEW_YORK
    assert [t.category for t in outcome.threats] == [ThreatCategory.LOGIN]

    event = repository.logins["login-ok"]
    assert event.status is LoginStatus.SUCCESS
    assert event.failed_attempts_count == 2
    assert event.city == "New York"

    assert service.sessions.get_session("emp-1").login_ref == "login-ok"
    assert service.downloads.is_monitoring("emp-1")
    assert timers.named("idle-check-emp-1").started
    assert timers.named("bulk-scan-emp-1").started


def test_impossible_travel_between_consecutive_logins(service, repository, clock):
    service.record_successful_login("emp-1", NEW_YORK.ip, login_ref="login-ny")
    clock.advance(minutes=10)
    service.end_session("emp-1")
    clock.advance(minutes=20)

    outcome = service.record_successful_login("emp-1", BEIJING.ip, login_ref="login-bj")

    assert outcome.anomaly.anomaly_type is AnomalyType.IMPOSSIBLE_TRAVEL
    assert outcome.anomaly.hours_between == 0.5
    assert outcome.anomaly.risk.score == 60

    geo_alerts = list(repository.geo_alerts.values())
    assert len(geo_alerts) == 1
    assert geo_alerts[0].previous_location == NEW_YORK

    geo_threats = repository.list_threats(category=ThreatCategory.GEO)
    assert len(geo_threats) == 1
    assert geo_threats[0].source_event_ref == geo_alerts[0].alert_id
    assert geo_threats[0].details.previous_location == "New York, United States"


def test_first_login_has_no_geo_anomaly(service):
    outcome = service.record_successful_login("emp-1", BEIJING.ip)
    assert outcome.anomaly is None


def test_unverified_city_in_allowed_country_raises_geo_threat(service, repository):
    save_profile(repository)

    outcome = service.record_successful_login("emp-1", BOSTON.ip, login_ref="login-bos")

    assert outcome.verification.risk_level is RiskLevel.MEDIUM
    geo_threat = [t for t in outcome.threats if t.category is ThreatCategory.GEO][0]
    assert geo_threat.risk.score == 50
    assert "Boston" in geo_threat.details.verification_reason
    assert repository.logins["login-bos"].risk_level is RiskLevel.MEDIUM


def test_strict_mode_blocks_login(service, repository):
    save_profile(repository, strict_mode=True, allowed_countries=[])

    with pytest.raises(LoginBlockedError) as excinfo:
        service.record_successful_login("emp-1", BEIJING.ip, login_ref="login-blocked")

    assert "Beijing, China" in excinfo.value.reason
    event = repository.logins["login-blocked"]
    assert event.status is LoginStatus.FAILED
    assert event.risk_level is RiskLevel.CRITICAL

    threat = repository.list_threats(category=ThreatCategory.GEO)[0]
    assert threat.risk.score == 100
    assert threat.details.blocked
    assert service.sessions.get_session("emp-1") is None


def test_logout_closes_login_and_stops_monitoring(service, repository, clock, timers):
    service.record_successful_login("emp-1", NEW_YORK.ip, login_ref="login-1")
    clock.advance(minutes=15)

    assert service.end_session("emp-1") is True

    assert repository.logins["login-1"].logout_timestamp == clock.now
    assert not service.downloads.is_monitoring("emp-1")
    assert timers.named("bulk-scan-emp-1").cancelled
    assert service.end_session("emp-1") is False


def test_idle_timeout_logs_out(service, repository, clock, timers):
    service.record_successful_login("emp-1", NEW_YORK.ip, login_ref="login-1")
    clock.advance(minutes=31)

    timers.named("idle-check-emp-1").fire()

    assert service.sessions.get_session("emp-1") is None
    assert repository.logins["login-1"].logout_timestamp == clock.now
    assert not service.downloads.is_monitoring("emp-1")


def test_downloads_during_session_raise_bulk_threat(service, repository, timers):
    service.record_successful_login("emp-1", NEW_YORK.ip)
    for index in range(120):
        service.record_download_touch("emp-1", f"/srv/share/reports/r-{index}.xlsx", 1024)

    timers.named("bulk-scan-emp-1").fire()

    threats = repository.list_threats(category=ThreatCategory.BULK)
    assert len(threats) == 1
    assert threats[0].details.total_files == 120
    assert threats[0].details.folder_path == "/srv/share/reports"


def test_blank_employee_is_rejected(service):
    with pytest.raises(InvalidEventError):
        service.record_failed_login("  ")


def test_geo_analysis_rejects_pre_epoch_timestamp(service):
    with pytest.raises(InvalidEventError):
        service.resolve_and_analyze_geo("emp-1", NEW_YORK.ip, datetime(1960, 1, 1))


class LogoutWriteFailsRepository(InMemoryRepository):
    def close_login(self, login_ref, logout_at):
        raise RuntimeError("database unavailable")


@pytest.fixture
def failing_logout_service(resolver, broadcaster, clock, timers):
    monitoring = MonitoringService(
        LogoutWriteFailsRepository(),
        resolver=resolver,
        broadcaster=broadcaster,
        config=EngineConfig(),
        clock=clock,
        timer_factory=timers,
    )
    yield monitoring
    monitoring.stop()


def test_idle_timeout_stops_monitoring_when_logout_write_fails(failing_logout_service, clock, timers):
    failing_logout_service.record_successful_login("emp-1", NEW_YORK.ip, login_ref="login-1")
    clock.advance(minutes=31)

    with pytest.raises(RuntimeError):
        timers.named("idle-check-emp-1").fire()

    assert failing_logout_service.sessions.get_session("emp-1") is None
    assert not failing_logout_service.downloads.is_monitoring("emp-1")
    assert timers.named("bulk-scan-emp-1").cancelled


def test_logout_stops_monitoring_when_logout_write_fails(failing_logout_service, timers):
    failing_logout_service.record_successful_login("emp-1", NEW_YORK.ip, login_ref="login-1")

    with pytest.raises(RuntimeError):
        failing_logout_service.end_session("emp-1")

    assert failing_logout_service.sessions.get_session("emp-1") is None
    assert not failing_logout_service.downloads.is_monitoring("emp-1")
    assert timers.named("bulk-scan-emp-1").cancelled
    assert failing_logout_service.record_download_touch("emp-1", "/srv/a.pdf", 10) is False


def test_replacing_session_survives_failed_logout_write(failing_logout_service):
    failing_logout_service.start_session("emp-1", "login-1")

    session = failing_logout_service.start_session("emp-1", "login-2")

    assert session.login_ref == "login-2"
    assert failing_logout_service.sessions.get_session("emp-1").login_ref == "login-2"
    assert failing_logout_service.downloads.is_monitoring("emp-1")


def travel_to_beijing(service, clock):
    service.record_successful_login("emp-1", NEW_YORK.ip, login_ref="login-ny")
    clock.advance(minutes=10)
    service.end_session("emp-1")
    clock.advance(minutes=20)
    return service.record_successful_login("emp-1", BEIJING.ip, login_ref="login-bj")


def test_verifying_geo_alert_solves_its_threat(service, repository, clock):
    travel_to_beijing(service, clock)
    alert = service.list_geo_alerts(employee_id="emp-1")[0]
    clock.advance(minutes=5)

    verified = service.verify_geo_alert(alert.alert_id, "Yes")

    assert verified.verified == "Yes"
    assert service.list_geo_alerts(verified="No") == []
    threat = repository.list_threats(category=ThreatCategory.GEO)[0]
    assert threat.solved
    assert threat.last_reviewed_at == clock.now


def test_rejecting_geo_alert_keeps_threat_open(service, repository, clock):
    travel_to_beijing(service, clock)
    alert = service.list_geo_alerts()[0]

    assert service.verify_geo_alert(alert.alert_id, "No").verified == "No"
    assert not repository.list_threats(category=ThreatCategory.GEO)[0].solved


def test_geo_verdict_must_be_yes_or_no(service, clock):
    travel_to_beijing(service, clock)
    alert = service.list_geo_alerts()[0]

    with pytest.raises(InvalidEventError):
        service.verify_geo_alert(alert.alert_id, "Pending")
    assert service.verify_geo_alert("missing", "Yes") is None


def test_download_alert_status_changes(service, timers):
    service.record_successful_login("emp-1", NEW_YORK.ip)
    for index in range(40):
        service.record_download_touch("emp-1", f"/srv/share/r-{index}.xlsx", 1024)
    timers.named("bulk-scan-emp-1").fire()
    alert = service.list_download_alerts(status="New")[0]

    resolved = service.set_download_alert_status(alert.alert_id, "Resolved")

    assert resolved.status == "Resolved"
    assert service.list_download_alerts(status="New") == []
    assert service.set_download_alert_status("missing", "Resolved") is None
    with pytest.raises(InvalidEventError):
        service.set_download_alert_status(alert.alert_id, "Closed")


def test_high_risk_employees_rank_open_threats(service, repository, clock):
    save_profile(repository)
    login_details = LoginThreatDetails(failed_attempts=3, login_time=clock.now)
    service.threats.raise_threat(
        "emp-1", ThreatCategory.LOGIN, RiskAssessment(score=50, level=RiskLevel.HIGH), "l-1", login_details
    )
    service.threats.raise_threat(
        "emp-1",
        ThreatCategory.GEO,
        RiskAssessment(score=60, level=RiskLevel.HIGH),
        "g-1",
        GeoThreatDetails(current_location="Beijing, China"),
    )
    other = service.threats.raise_threat(
        "emp-2", ThreatCategory.LOGIN, RiskAssessment(score=30, level=RiskLevel.MEDIUM), "l-2", login_details
    )

    ranked = service.high_risk_employees()

    assert [summary.employee_id for summary in ranked] == ["emp-1", "emp-2"]
    assert ranked[0].employee_name == "Dana"
    assert ranked[0].total_risk_score == 110
    assert ranked[0].threat_count == 2
    assert ranked[0].max_risk_score == 60
    assert ranked[0].alert_types == ["geo", "login"]
    assert ranked[1].employee_name == "Unknown"

    service.threats.solve(other.threat_id)
    assert [summary.employee_id for summary in service.high_risk_employees(limit=1)] == ["emp-1"]


def test_recent_activity_merges_logins_and_alerts(service, clock):
    travel_to_beijing(service, clock)

    activity = service.recent_activity()

    assert [record.kind for record in activity] == ["login", "geo", "login"]
    assert activity[0].ref == "login-bj"
    assert activity[0].detail == "Beijing, China"
    assert activity[1].status == "ImpossibleTravel"
    assert activity[1].detail == "New York, United States -> Beijing, China"
    assert len(service.recent_activity(limit=2)) == 2

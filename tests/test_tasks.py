from datetime import datetime

from insider_threat_monitor import tasks

from conftest import LONDON, NEW_YORK


def test_analyze_geo_login_returns_anomaly_document(service, clock, monkeypatch):
    monkeypatch.setattr(tasks, "_get_service", lambda: service)
    service.record_successful_login("emp-1", NEW_YORK.ip, login_ref="login-ny")
    service.end_session("emp-1")

    document = tasks.analyze_geo_login("emp-1", LONDON.ip, datetime(2024, 3, 5, 16, 0).isoformat())

    assert document["anomaly_type"] == "NewCountry"
    assert document["risk_score"] == 30
    assert document["current_location"]["city"] == "London"
    assert document["time_between_logins_hours"] == 26.0


def test_analyze_geo_login_without_history(service, monkeypatch):
    monkeypatch.setattr(tasks, "_get_service", lambda: service)

    assert tasks.analyze_geo_login("emp-1", LONDON.ip, "2024-03-05T16:00:00") is None


def test_enqueue_geo_analysis_uses_generated_task_id(monkeypatch):
    sent = {}

    def fake_apply_async(args, task_id):
        sent["args"] = args
        sent["task_id"] = task_id

    monkeypatch.setattr(tasks.analyze_geo_login, "apply_async", fake_apply_async)

    task_id = tasks.enqueue_geo_analysis("emp-1", LONDON.ip, datetime(2024, 3, 5, 16, 0))

    assert sent == {"args": ["emp-1", LONDON.ip, "2024-03-05T16:00:00"], "task_id": task_id}

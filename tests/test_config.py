from datetime import timedelta

import httpx

from insider_threat_monitor import EngineConfig
from insider_threat_monitor.broadcaster import LoggingBroadcaster, WebhookBroadcaster, default_broadcaster


def test_defaults():
    config = EngineConfig()

    assert config.threat_threshold("login") == 25
    assert config.threat_threshold("geo") == 25
    assert config.threat_threshold("bulk") == 30
    assert config.dedup_window("bulk") == timedelta(minutes=30)
    assert config.session_timeout == timedelta(minutes=30)
    assert "North Korea" in config.high_risk_countries


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("SESSION_TIMEOUT_MINUTES", "15")
    monkeypatch.setenv("FILE_SCAN_INTERVAL_SECONDS", "10")
    monkeypatch.setenv("IP_API_URL", "http://geo.internal/json")
    monkeypatch.setenv("HIGH_RISK_COUNTRIES", "Atlantis, Lemuria ,")
    monkeypatch.setenv("LOCATION_CACHE_SECONDS", "120")

    config = EngineConfig.from_env()

    assert config.session_timeout == timedelta(minutes=15)
    assert config.scan_interval_seconds == 10
    assert config.location_api_url == "http://geo.internal/json"
    assert config.high_risk_countries == frozenset({"Atlantis", "Lemuria"})
    assert config.location_cache_ttl == timedelta(seconds=120)


def test_default_broadcaster_follows_environment(monkeypatch):
    monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)
    assert isinstance(default_broadcaster(), LoggingBroadcaster)

    monkeypatch.setenv("ALERT_WEBHOOK_URL", "http://hooks.test/alerts")
    broadcaster = default_broadcaster()
    assert isinstance(broadcaster, WebhookBroadcaster)
    assert broadcaster.webhook_url == "http://hooks.test/alerts"


def test_webhook_broadcaster_posts_snapshot(monkeypatch):
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(204)

    transport = httpx.MockTransport(handler)
    real_client = httpx.Client
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: real_client(transport=transport, **kwargs))

    WebhookBroadcaster("http://hooks.test/alerts").publish("bulk", {"event": "threat_opened", "threat": {}})

    assert len(received) == 1
    assert received[0].url == "http://hooks.test/alerts"
    assert b'"category":"bulk"' in received[0].content.replace(b" ", b"")


def test_webhook_failure_is_swallowed(monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    real_client = httpx.Client
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: real_client(transport=transport, **kwargs))

    WebhookBroadcaster("http://hooks.test/alerts").publish("login", {"event": "threat_opened"})

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, FrozenSet


DEFAULT_HIGH_RISK_COUNTRIES = frozenset({"Russia", "North Korea", "Iran", "China", "Pakistan"})


def _default_dedup_windows() -> Dict[str, timedelta]:
    return {
        "login": timedelta(minutes=30),
        "geo": timedelta(minutes=30),
        "bulk": timedelta(minutes=30),
    }


@dataclass(slots=True)
class EngineConfig:
    """Thresholds, windows and timers for the detection engine."""

    # rule engine
    odd_hours_start: int = 22
    odd_hours_end: int = 6
    critical_hours_start: int = 1
    critical_hours_end: int = 3
    high_risk_countries: FrozenSet[str] = DEFAULT_HIGH_RISK_COUNTRIES
    impossible_travel_tolerance: float = 0.8
    flight_speed_kmh: float = 800.0
    transit_overhead_hours: float = 2.0

    # escalation
    login_threat_threshold: int = 25
    geo_threat_threshold: int = 25
    bulk_threat_threshold: int = 30
    dedup_windows: Dict[str, timedelta] = field(default_factory=_default_dedup_windows)
    failed_login_lookback: timedelta = timedelta(hours=1)

    # bulk download aggregation
    bulk_window: timedelta = timedelta(hours=1)
    bulk_file_threshold: int = 30
    bulk_size_threshold_mb: float = 200.0
    scan_interval_seconds: float = 30.0

    # sessions
    session_timeout: timedelta = timedelta(minutes=30)
    idle_check_interval_seconds: float = 60.0

    # location resolution
    location_api_url: str = "http://ip-api.com/json"
    location_cache_ttl: timedelta = timedelta(hours=1)
    location_timeout_seconds: float = 5.0

    def threat_threshold(self, category: str) -> int:
        if category == "bulk":
            return self.bulk_threat_threshold
        if category == "geo":
            return self.geo_threat_threshold
        return self.login_threat_threshold

    def dedup_window(self, category: str) -> timedelta:
        return self.dedup_windows.get(category, timedelta(minutes=30))

    @classmethod
    def from_env(cls) -> "EngineConfig":
        config = cls()
        if os.getenv("SESSION_TIMEOUT_MINUTES"):
            config.session_timeout = timedelta(minutes=float(os.environ["SESSION_TIMEOUT_MINUTES"]))
        if os.getenv("FILE_SCAN_INTERVAL_SECONDS"):
            config.scan_interval_seconds = float(os.environ["FILE_SCAN_INTERVAL_SECONDS"])
        if os.getenv("IP_API_URL"):
            config.location_api_url = os.environ["IP_API_URL"]
        if os.getenv("LOCATION_CACHE_SECONDS"):
            config.location_cache_ttl = timedelta(seconds=float(os.environ["LOCATION_CACHE_SECONDS"]))
        if os.getenv("HIGH_RISK_COUNTRIES"):
            countries = (c.strip() for c in os.environ["HIGH_RISK_COUNTRIES"].split(","))
            config.high_risk_countries = frozenset(c for c in countries if c)
        return config

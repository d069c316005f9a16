"""Rule-based risk scoring for login, bulk download and geographic events.

Every function here is pure: the same inputs always produce the same
assessment and nothing is cached between calls. Scores are additive and are
not clamped, so a sum above 100 is possible in principle.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List

from .config import EngineConfig
from .models import AnomalyType, Location, RiskAssessment, RiskLevel

EARTH_RADIUS_KM = 6371.0

_DEFAULT_CONFIG = EngineConfig()


@dataclass(frozen=True, slots=True)
class LoginRiskInput:
    failed_attempts_count: int
    login_timestamp: datetime
    success: bool
    previous_failed_then_success: bool = False


@dataclass(frozen=True, slots=True)
class BulkDownloadRiskInput:
    total_files: int
    total_size_mb: float
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class GeoRiskInput:
    anomaly_type: AnomalyType
    current_country: str
    hours_between: float
    min_travel_hours: float
    timestamp: datetime


def risk_level(score: int) -> RiskLevel:
    if score >= 75:
        return RiskLevel.CRITICAL
    if score >= 50:
        return RiskLevel.HIGH
    if score >= 25:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def is_odd_hour(hour: int, config: EngineConfig = _DEFAULT_CONFIG) -> bool:
    return hour >= config.odd_hours_start or hour < config.odd_hours_end


def is_critical_hour(hour: int, config: EngineConfig = _DEFAULT_CONFIG) -> bool:
    return config.critical_hours_start <= hour < config.critical_hours_end


def is_high_risk_country(country: str, config: EngineConfig = _DEFAULT_CONFIG) -> bool:
    return country in config.high_risk_countries


def _assessment(score: int, reasons: List[str]) -> RiskAssessment:
    return RiskAssessment(score=score, level=risk_level(score), reasons=reasons)


def score_login(data: LoginRiskInput, config: EngineConfig = _DEFAULT_CONFIG) -> RiskAssessment:
    score = 0
    reasons: List[str] = []

    if data.failed_attempts_count > 10:
        score += 50
        reasons.append("Critical failed login attempts (10+)")
    elif data.failed_attempts_count >= 6:
        score += 35
        reasons.append("High failed login attempts (6-10)")
    elif data.failed_attempts_count >= 3:
        score += 25
        reasons.append("Multiple failed login attempts (3-5)")

    if data.previous_failed_then_success and data.success:
        score += 40
        reasons.append("Successful login after failed attempts")

    hour = data.login_timestamp.hour
    if is_critical_hour(hour, config):
        score += 30
        reasons.append("Login during critical hours (1-3 AM)")
    elif is_odd_hour(hour, config):
        score += 20
        reasons.append("Login during odd hours (10 PM - 6 AM)")

    return _assessment(score, reasons)


def score_bulk_download(data: BulkDownloadRiskInput, config: EngineConfig = _DEFAULT_CONFIG) -> RiskAssessment:
    score = 0
    reasons: List[str] = []

    if data.total_files >= 100:
        score += 40
        reasons.append("Critical file count (100+ files)")
    elif data.total_files >= 50:
        score += 30
        reasons.append("High file count (50+ files)")
    elif data.total_files >= 30:
        score += 20
        reasons.append("Medium file count (30+ files)")

    if data.total_size_mb >= 1000:
        score += 40
        reasons.append("Critical download size (1GB+)")
    elif data.total_size_mb >= 500:
        score += 30
        reasons.append("High download size (500MB+)")
    elif data.total_size_mb >= 200:
        score += 25
        reasons.append("Medium download size (200MB+)")

    if is_odd_hour(data.timestamp.hour, config):
        score += 20
        reasons.append("Activity during odd hours")

    return _assessment(score, reasons)


def score_geo(data: GeoRiskInput, config: EngineConfig = _DEFAULT_CONFIG) -> RiskAssessment:
    score = 0
    reasons: List[str] = []

    if data.anomaly_type is AnomalyType.IMPOSSIBLE_TRAVEL:
        score += 60
        reasons.append(
            f"Impossible travel detected ({data.hours_between}h between logins, "
            f"{data.min_travel_hours}h minimum travel time)"
        )
    elif data.anomaly_type is AnomalyType.RISK_COUNTRY:
        score += 50
        reasons.append(f"Login from high-risk country: {data.current_country}")
    elif data.anomaly_type is AnomalyType.NEW_COUNTRY:
        score += 30
        reasons.append(f"Login from new country: {data.current_country}")
    elif data.anomaly_type is AnomalyType.SAME_COUNTRY:
        score += 15
        reasons.append("Unusual city in same country")

    if is_odd_hour(data.timestamp.hour, config) and data.anomaly_type in (
        AnomalyType.NEW_COUNTRY,
        AnomalyType.RISK_COUNTRY,
    ):
        score += 25
        reasons.append("New location during odd hours")

    return _assessment(score, reasons)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def min_travel_hours(origin: Location, destination: Location, config: EngineConfig = _DEFAULT_CONFIG) -> float:
    """Shortest plausible door-to-door time between two points, one decimal."""
    distance = haversine_km(origin.lat, origin.lon, destination.lat, destination.lon)
    return round(distance / config.flight_speed_kmh + config.transit_overhead_hours, 1)


def classify_anomaly(
    current: Location,
    previous: Location,
    hours_between: float,
    travel_hours: float,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> AnomalyType:
    if travel_hours > 0 and hours_between < travel_hours * config.impossible_travel_tolerance:
        return AnomalyType.IMPOSSIBLE_TRAVEL
    if is_high_risk_country(current.country, config):
        return AnomalyType.RISK_COUNTRY
    if previous.country and current.country != previous.country:
        return AnomalyType.NEW_COUNTRY
    return AnomalyType.SAME_COUNTRY

from __future__ import annotations

import ipaddress
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol, Tuple

import httpx

from .config import EngineConfig
from .models import (
    AnomalyResult,
    EmployeeProfile,
    Location,
    LocationVerification,
    LoginEvent,
    RiskLevel,
    utcnow,
)
from .risk_engine import GeoRiskInput, classify_anomaly, min_travel_hours, score_geo

logger = logging.getLogger(__name__)


class LocationResolver(Protocol):
    def lookup(self, ip: str) -> Location: ...


class IpApiResolver:
    """Resolves IP addresses through an ip-api.com compatible endpoint."""

    def __init__(self, base_url: str = "http://ip-api.com/json", timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def lookup(self, ip: str) -> Location:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.get(f"{self.base_url}/{ip}", params={"fields": "status,country,city,lat,lon,query"})
            response.raise_for_status()
            body = response.json()
        if body.get("status") != "success":
            raise LookupError(f"IP lookup failed for {ip}")
        return Location(
            country=body["country"],
            city=body["city"],
            lat=float(body["lat"]),
            lon=float(body["lon"]),
            ip=body.get("query", ip),
        )


def ip_in_range(ip: str, network: str) -> bool:
    if ip == network:
        return True
    if "/" not in network:
        return False
    try:
        return ipaddress.ip_address(ip) in ipaddress.ip_network(network, strict=False)
    except ValueError:
        logger.debug("Cannot compare %s against range %s", ip, network)
        return False


class GeoAnomalyAnalyzer:
    def __init__(
        self,
        resolver: LocationResolver,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.resolver = resolver
        self.config = config or EngineConfig()
        self.clock = clock
        self._cache: Dict[str, Tuple[Location, datetime]] = {}
        self._cache_lock = threading.Lock()

    def resolve(self, ip: str) -> Location:
        """Best-effort location for ``ip``; the Unknown location when the lookup fails."""
        now = self.clock()
        with self._cache_lock:
            cached = self._cache.get(ip)
        if cached is not None and now - cached[1] < self.config.location_cache_ttl:
            return cached[0]

        try:
            location = self.resolver.lookup(ip)
        except Exception as exc:  # any resolver failure degrades to Unknown
            logger.warning("Location lookup for %s failed, using Unknown: %s", ip, exc)
            return Location.unknown(ip)

        with self._cache_lock:
            self._cache[ip] = (location, now)
        return location

    def analyze(
        self,
        current_ip: str,
        current_time: datetime,
        previous: Optional[LoginEvent],
    ) -> Optional[AnomalyResult]:
        current_location = self.resolve(current_ip)
        if previous is None or not previous.ip_address:
            return None

        previous_location = self.resolve(previous.ip_address)
        if current_location.same_place(previous_location):
            return None

        hours_between = round((current_time - previous.timestamp).total_seconds() / 3600, 1)
        travel_hours = min_travel_hours(previous_location, current_location, self.config)
        anomaly_type = classify_anomaly(
            current_location, previous_location, hours_between, travel_hours, self.config
        )
        risk = score_geo(
            GeoRiskInput(
                anomaly_type=anomaly_type,
                current_country=current_location.country,
                hours_between=hours_between,
                min_travel_hours=travel_hours,
                timestamp=current_time,
            ),
            self.config,
        )
        return AnomalyResult(
            current_location=current_location,
            previous_location=previous_location,
            hours_between=hours_between,
            min_travel_hours=travel_hours,
            anomaly_type=anomaly_type,
            risk=risk,
        )

    def verify_login_location(
        self, ip: str, location: Location, profile: EmployeeProfile
    ) -> LocationVerification:
        """Check a login location against the employee's approved locations.

        Precedence: verified IP range, verified city and country, allowed
        country, strict mode refusal, then allow-but-flag.
        """
        if not profile.location_verification_enabled:
            return LocationVerification(True, RiskLevel.LOW, "Location verification disabled")

        for verified in profile.verified_locations:
            if not verified.verified:
                continue
            if any(ip_in_range(ip, network) for network in verified.ip_ranges):
                return LocationVerification(
                    True, RiskLevel.LOW, f"IP matched verified {verified.location_type} location", verified
                )
            if (
                verified.country.lower() == location.country.lower()
                and verified.city.lower() == location.city.lower()
            ):
                return LocationVerification(
                    True, RiskLevel.LOW, f"Location matched verified {verified.location_type}", verified
                )

        allowed = {country.lower() for country in profile.allowed_countries}
        if location.country.lower() in allowed:
            return LocationVerification(
                True,
                RiskLevel.MEDIUM,
                f"Country {location.country} is in allowed list, but city {location.city} is new",
            )

        if profile.strict_mode:
            return LocationVerification(
                False, RiskLevel.CRITICAL, f"Strict mode enabled: Unverified location {location.label}"
            )

        return LocationVerification(True, RiskLevel.HIGH, f"Unknown location {location.label}")

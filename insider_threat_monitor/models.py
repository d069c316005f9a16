from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, List, Optional, Union


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used throughout the engine."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class AnomalyType(str, Enum):
    IMPOSSIBLE_TRAVEL = "ImpossibleTravel"
    RISK_COUNTRY = "RiskCountry"
    NEW_COUNTRY = "NewCountry"
    SAME_COUNTRY = "SameCountry"


class ThreatCategory(str, Enum):
    LOGIN = "login"
    BULK = "bulk"
    GEO = "geo"


class LoginStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"


@dataclass(slots=True)
class RiskAssessment:
    score: int
    level: RiskLevel
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Location:
    country: str
    city: str
    lat: float
    lon: float
    ip: str = ""

    @classmethod
    def unknown(cls, ip: str = "") -> "Location":
        return cls(country="Unknown", city="Unknown", lat=0.0, lon=0.0, ip=ip)

    @property
    def label(self) -> str:
        return f"{self.city}, {self.country}"

    def same_place(self, other: "Location") -> bool:
        return self.city == other.city and self.country == other.country


@dataclass(frozen=True, slots=True)
class LoginEvent:
    login_ref: str
    employee_id: str
    timestamp: datetime
    status: LoginStatus
    ip_address: str = ""
    city: Optional[str] = None
    country: Optional[str] = None
    failed_attempts_count: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    logout_timestamp: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status is LoginStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class DownloadTouch:
    employee_id: str
    path: str
    size: int
    timestamp: datetime
    folder: str


@dataclass(slots=True)
class AnomalyResult:
    current_location: Location
    previous_location: Location
    hours_between: float
    min_travel_hours: float
    anomaly_type: AnomalyType
    risk: RiskAssessment


@dataclass(slots=True)
class BulkDownloadAlert:
    alert_id: str
    employee_id: str
    timestamp: datetime
    total_files: int
    total_size_mb: float
    folder_path: str
    risk: RiskAssessment
    status: str = "New"
    auto_triggered: bool = True


@dataclass(slots=True)
class GeographicAlert:
    alert_id: str
    employee_id: str
    alert_timestamp: datetime
    current_location: Location
    previous_location: Location
    hours_between: float
    min_travel_hours: float
    anomaly_type: AnomalyType
    risk_level: RiskLevel
    verified: str = "No"


# Threat details: one closed variant per threat category.


@dataclass(slots=True)
class LoginThreatDetails:
    category: ClassVar[ThreatCategory] = ThreatCategory.LOGIN

    failed_attempts: int
    login_time: datetime
    ip_address: str = ""


@dataclass(slots=True)
class BulkThreatDetails:
    category: ClassVar[ThreatCategory] = ThreatCategory.BULK

    total_files: int
    total_size_mb: float
    folder_path: str


@dataclass(slots=True)
class GeoThreatDetails:
    category: ClassVar[ThreatCategory] = ThreatCategory.GEO

    current_location: str
    previous_location: Optional[str] = None
    anomaly_type: Optional[AnomalyType] = None
    ip_address: str = ""
    blocked: bool = False
    verification_reason: Optional[str] = None


ThreatDetails = Union[LoginThreatDetails, BulkThreatDetails, GeoThreatDetails]


@dataclass(slots=True)
class ActiveThreat:
    threat_id: str
    employee_id: str
    category: ThreatCategory
    risk: RiskAssessment
    source_event_ref: str
    opened_at: datetime
    last_updated_at: datetime
    details: ThreatDetails
    solved: bool = False
    last_reviewed_at: Optional[datetime] = None
    occurrences: int = 1


@dataclass(slots=True)
class Session:
    employee_id: str
    login_ref: str
    login_time: datetime
    last_activity_time: datetime


@dataclass(slots=True)
class VerifiedLocation:
    country: str
    city: str
    location_type: str = "Office"
    ip_ranges: List[str] = field(default_factory=list)
    is_primary: bool = False
    verified: bool = True


@dataclass(slots=True)
class EmployeeProfile:
    employee_id: str
    name: str = ""
    verified_locations: List[VerifiedLocation] = field(default_factory=list)
    allowed_countries: List[str] = field(default_factory=list)
    location_verification_enabled: bool = True
    strict_mode: bool = False


@dataclass(slots=True)
class LocationVerification:
    allowed: bool
    risk_level: RiskLevel
    reason: str
    matched_location: Optional[VerifiedLocation] = None


@dataclass(slots=True)
class LoginOutcome:
    login_ref: str
    assessment: RiskAssessment
    location: Optional[Location] = None
    verification: Optional[LocationVerification] = None
    anomaly: Optional[AnomalyResult] = None
    threats: List[ActiveThreat] = field(default_factory=list)


@dataclass(slots=True)
class EmployeeRiskSummary:
    employee_id: str
    total_risk_score: int
    threat_count: int
    max_risk_score: int
    alert_types: List[str] = field(default_factory=list)
    employee_name: str = "Unknown"


@dataclass(slots=True)
class ActivityRecord:
    """One row of the merged recent-activity feed."""

    kind: str
    ref: str
    employee_id: str
    timestamp: datetime
    status: str
    detail: str

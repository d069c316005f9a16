"""Insider Threat Monitoring Engine."""

from .config import EngineConfig
from .exceptions import InvalidEventError, LoginBlockedError
from .models import ActiveThreat, AnomalyType, RiskAssessment, RiskLevel, ThreatCategory
from .persistence import InMemoryRepository, MongoRepository
from .service import MonitoringService

__all__ = [
    "EngineConfig",
    "InvalidEventError",
    "LoginBlockedError",
    "ActiveThreat",
    "AnomalyType",
    "RiskAssessment",
    "RiskLevel",
    "ThreatCategory",
    "InMemoryRepository",
    "MongoRepository",
    "MonitoringService",
]

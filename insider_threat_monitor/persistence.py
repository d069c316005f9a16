from __future__ import annotations

import copy
import dataclasses
import threading
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from pymongo import DESCENDING, MongoClient, ReturnDocument

from .models import (
    ActiveThreat,
    AnomalyResult,
    AnomalyType,
    BulkDownloadAlert,
    BulkThreatDetails,
    EmployeeProfile,
    EmployeeRiskSummary,
    GeographicAlert,
    GeoThreatDetails,
    Location,
    LoginEvent,
    LoginStatus,
    LoginThreatDetails,
    RiskAssessment,
    RiskLevel,
    ThreatCategory,
    ThreatDetails,
    VerifiedLocation,
)


class Repository(Protocol):
    def insert_login(self, event: LoginEvent) -> None: ...

    def close_login(self, login_ref: str, logout_at: datetime) -> None: ...

    def count_failed_logins(self, employee_id: str, since: datetime) -> int: ...

    def latest_completed_login(self, employee_id: str) -> Optional[LoginEvent]: ...

    def insert_download_alert(self, alert: BulkDownloadAlert) -> None: ...

    def insert_geo_alert(self, alert: GeographicAlert) -> None: ...

    def insert_threat(self, threat: ActiveThreat) -> None: ...

    def update_threat(self, threat: ActiveThreat) -> None: ...

    def find_open_threat(
        self, employee_id: str, category: ThreatCategory, opened_since: datetime
    ) -> Optional[ActiveThreat]: ...

    def get_threat(self, threat_id: str) -> Optional[ActiveThreat]: ...

    def list_threats(
        self,
        employee_id: Optional[str] = None,
        category: Optional[ThreatCategory] = None,
        solved: Optional[bool] = None,
        limit: int = 50,
    ) -> List[ActiveThreat]: ...

    def solve_threat(self, threat_id: str, reviewed_at: datetime) -> Optional[ActiveThreat]: ...

    def get_employee(self, employee_id: str) -> Optional[EmployeeProfile]: ...

    def save_employee(self, profile: EmployeeProfile) -> None: ...

    def recent_logins(self, limit: int = 10) -> List[LoginEvent]: ...

    def list_download_alerts(
        self, employee_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50
    ) -> List[BulkDownloadAlert]: ...

    def set_download_alert_status(self, alert_id: str, status: str) -> Optional[BulkDownloadAlert]: ...

    def list_geo_alerts(
        self,
        employee_id: Optional[str] = None,
        anomaly_type: Optional[AnomalyType] = None,
        verified: Optional[str] = None,
        limit: int = 50,
    ) -> List[GeographicAlert]: ...

    def set_geo_alert_verified(self, alert_id: str, verified: str) -> Optional[GeographicAlert]: ...

    def solve_threats_for_source(
        self, category: ThreatCategory, source_event_ref: str, reviewed_at: datetime
    ) -> int: ...

    def open_threat_totals(self, limit: int = 5) -> List[EmployeeRiskSummary]: ...


def location_to_document(location: Location) -> Dict[str, Any]:
    return {"country": location.country, "city": location.city, "lat": location.lat, "lon": location.lon, "ip": location.ip}


def location_from_document(document: Mapping[str, Any]) -> Location:
    return Location(
        country=document["country"],
        city=document["city"],
        lat=float(document["lat"]),
        lon=float(document["lon"]),
        ip=document.get("ip", ""),
    )


def assessment_to_document(assessment: RiskAssessment) -> Dict[str, Any]:
    return {"risk_score": assessment.score, "risk_level": assessment.level.value, "reasons": list(assessment.reasons)}


def assessment_from_document(document: Mapping[str, Any]) -> RiskAssessment:
    return RiskAssessment(
        score=int(document["risk_score"]),
        level=RiskLevel(document["risk_level"]),
        reasons=list(document.get("reasons", [])),
    )


def details_to_document(details: ThreatDetails) -> Dict[str, Any]:
    document = dataclasses.asdict(details)
    if isinstance(details, GeoThreatDetails) and details.anomaly_type is not None:
        document["anomaly_type"] = details.anomaly_type.value
    return document


def details_from_document(category: ThreatCategory, document: Mapping[str, Any]) -> ThreatDetails:
    if category is ThreatCategory.LOGIN:
        return LoginThreatDetails(**document)
    if category is ThreatCategory.BULK:
        return BulkThreatDetails(**document)
    values = dict(document)
    if values.get("anomaly_type") is not None:
        values["anomaly_type"] = AnomalyType(values["anomaly_type"])
    return GeoThreatDetails(**values)


def threat_to_document(threat: ActiveThreat) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "threat_id": threat.threat_id,
        "employee_id": threat.employee_id,
        "alert_type": threat.category.value,
        "source_event_ref": threat.source_event_ref,
        "alert_date_time": threat.opened_at,
        "last_updated_at": threat.last_updated_at,
        "solved": threat.solved,
        "last_reviewed": threat.last_reviewed_at,
        "occurrences": threat.occurrences,
        "details": details_to_document(threat.details),
    }
    document.update(assessment_to_document(threat.risk))
    return document


def threat_from_document(document: Mapping[str, Any]) -> ActiveThreat:
    category = ThreatCategory(document["alert_type"])
    return ActiveThreat(
        threat_id=document["threat_id"],
        employee_id=document["employee_id"],
        category=category,
        risk=assessment_from_document(document),
        source_event_ref=document["source_event_ref"],
        opened_at=document["alert_date_time"],
        last_updated_at=document["last_updated_at"],
        details=details_from_document(category, document.get("details", {})),
        solved=bool(document.get("solved")),
        last_reviewed_at=document.get("last_reviewed"),
        occurrences=int(document.get("occurrences", 1)),
    )


def login_to_document(event: LoginEvent) -> Dict[str, Any]:
    return {
        "login_ref": event.login_ref,
        "employee_id": event.employee_id,
        "login_timestamp": event.timestamp,
        "logout_timestamp": event.logout_timestamp,
        "ip_address": event.ip_address,
        "city": event.city,
        "country": event.country,
        "success_status": event.status.value,
        "failed_attempts_count": event.failed_attempts_count,
        "risk_level": event.risk_level.value,
    }


def login_from_document(document: Mapping[str, Any]) -> LoginEvent:
    return LoginEvent(
        login_ref=document["login_ref"],
        employee_id=document["employee_id"],
        timestamp=document["login_timestamp"],
        status=LoginStatus(document["success_status"]),
        ip_address=document.get("ip_address", ""),
        city=document.get("city"),
        country=document.get("country"),
        failed_attempts_count=int(document.get("failed_attempts_count", 0)),
        risk_level=RiskLevel(document.get("risk_level", RiskLevel.LOW.value)),
        logout_timestamp=document.get("logout_timestamp"),
    )


def employee_from_document(document: Mapping[str, Any]) -> EmployeeProfile:
    return EmployeeProfile(
        employee_id=document["employee_id"],
        name=document.get("name", ""),
        verified_locations=[VerifiedLocation(**loc) for loc in document.get("verified_locations", [])],
        allowed_countries=list(document.get("allowed_countries", [])),
        location_verification_enabled=bool(document.get("location_verification_enabled", True)),
        strict_mode=bool(document.get("strict_mode", False)),
    )


def download_alert_to_document(alert: BulkDownloadAlert) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "alert_id": alert.alert_id,
        "employee_id": alert.employee_id,
        "timestamp": alert.timestamp,
        "total_files": alert.total_files,
        "total_size_mb": alert.total_size_mb,
        "folder_path": alert.folder_path,
        "status": alert.status,
        "auto_triggered": alert.auto_triggered,
    }
    document.update(assessment_to_document(alert.risk))
    return document


def download_alert_from_document(document: Mapping[str, Any]) -> BulkDownloadAlert:
    return BulkDownloadAlert(
        alert_id=document["alert_id"],
        employee_id=document["employee_id"],
        timestamp=document["timestamp"],
        total_files=int(document["total_files"]),
        total_size_mb=float(document["total_size_mb"]),
        folder_path=document.get("folder_path", ""),
        risk=assessment_from_document(document),
        status=document.get("status", "New"),
        auto_triggered=bool(document.get("auto_triggered", True)),
    )


def geo_alert_to_document(alert: GeographicAlert) -> Dict[str, Any]:
    return {
        "alert_id": alert.alert_id,
        "employee_id": alert.employee_id,
        "alert_timestamp": alert.alert_timestamp,
        "current_location": location_to_document(alert.current_location),
        "previous_location": location_to_document(alert.previous_location),
        "time_between_logins_hours": alert.hours_between,
        "minimum_travel_time_hours": alert.min_travel_hours,
        "anomaly_type": alert.anomaly_type.value,
        "risk_level": alert.risk_level.value,
        "verified": alert.verified,
    }


def geo_alert_from_document(document: Mapping[str, Any]) -> GeographicAlert:
    return GeographicAlert(
        alert_id=document["alert_id"],
        employee_id=document["employee_id"],
        alert_timestamp=document["alert_timestamp"],
        current_location=location_from_document(document["current_location"]),
        previous_location=location_from_document(document["previous_location"]),
        hours_between=float(document["time_between_logins_hours"]),
        min_travel_hours=float(document["minimum_travel_time_hours"]),
        anomaly_type=AnomalyType(document["anomaly_type"]),
        risk_level=RiskLevel(document["risk_level"]),
        verified=document.get("verified", "No"),
    )


def _summarize_open_threats(threats: List[ActiveThreat], limit: int) -> List[EmployeeRiskSummary]:
    summaries: Dict[str, EmployeeRiskSummary] = {}
    for threat in threats:
        summary = summaries.get(threat.employee_id)
        if summary is None:
            summary = summaries[threat.employee_id] = EmployeeRiskSummary(
                employee_id=threat.employee_id, total_risk_score=0, threat_count=0, max_risk_score=0
            )
        summary.total_risk_score += threat.risk.score
        summary.threat_count += 1
        summary.max_risk_score = max(summary.max_risk_score, threat.risk.score)
        if threat.category.value not in summary.alert_types:
            summary.alert_types.append(threat.category.value)
            summary.alert_types.sort()
    ranked = sorted(summaries.values(), key=lambda summary: summary.total_risk_score, reverse=True)
    return ranked[:limit]


class MongoRepository:
    """MongoDB-backed store for login events, alerts and active threats."""

    def __init__(self, uri: str, database: str = "insider_threat") -> None:
        self.client = MongoClient(uri)
        self.db = self.client[database]
        self.logins = self.db["login_activity"]
        self.download_alerts = self.db["download_alerts"]
        self.geo_alerts = self.db["geo_alerts"]
        self.threats = self.db["active_threats"]
        self.employees = self.db["employees"]

        self.logins.create_index([("employee_id", 1), ("login_timestamp", DESCENDING)])
        self.download_alerts.create_index([("employee_id", 1), ("timestamp", DESCENDING)])
        self.download_alerts.create_index("status")
        self.geo_alerts.create_index([("employee_id", 1), ("alert_timestamp", DESCENDING)])
        self.geo_alerts.create_index("verified")
        self.threats.create_index([("employee_id", 1), ("solved", 1), ("alert_date_time", DESCENDING)])
        self.threats.create_index([("solved", 1), ("risk_score", DESCENDING)])
        self.employees.create_index("employee_id", unique=True)

    def insert_login(self, event: LoginEvent) -> None:
        document = login_to_document(event)
        document["_id"] = event.login_ref
        self.logins.insert_one(document)

    def close_login(self, login_ref: str, logout_at: datetime) -> None:
        self.logins.update_one({"_id": login_ref}, {"$set": {"logout_timestamp": logout_at}})

    def count_failed_logins(self, employee_id: str, since: datetime) -> int:
        return self.logins.count_documents(
            {
                "employee_id": employee_id,
                "success_status": LoginStatus.FAILED.value,
                "login_timestamp": {"$gte": since},
            }
        )

    def latest_completed_login(self, employee_id: str) -> Optional[LoginEvent]:
        document = self.logins.find_one(
            {
                "employee_id": employee_id,
                "success_status": LoginStatus.SUCCESS.value,
                "logout_timestamp": {"$ne": None},
            },
            sort=[("login_timestamp", DESCENDING)],
        )
        if document is None:
            return None
        return login_from_document(document)

    def recent_logins(self, limit: int = 10) -> List[LoginEvent]:
        cursor = self.logins.find().sort("login_timestamp", DESCENDING).limit(limit)
        return [login_from_document(document) for document in cursor]

    def insert_download_alert(self, alert: BulkDownloadAlert) -> None:
        document = download_alert_to_document(alert)
        document["_id"] = alert.alert_id
        self.download_alerts.insert_one(document)

    def list_download_alerts(
        self, employee_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50
    ) -> List[BulkDownloadAlert]:
        query: Dict[str, Any] = {}
        if employee_id is not None:
            query["employee_id"] = employee_id
        if status is not None:
            query["status"] = status
        cursor = self.download_alerts.find(query).sort("timestamp", DESCENDING).limit(limit)
        return [download_alert_from_document(document) for document in cursor]

    def set_download_alert_status(self, alert_id: str, status: str) -> Optional[BulkDownloadAlert]:
        document = self.download_alerts.find_one_and_update(
            {"_id": alert_id}, {"$set": {"status": status}}, return_document=ReturnDocument.AFTER
        )
        if document is None:
            return None
        return download_alert_from_document(document)

    def insert_geo_alert(self, alert: GeographicAlert) -> None:
        document = geo_alert_to_document(alert)
        document["_id"] = alert.alert_id
        self.geo_alerts.insert_one(document)

    def list_geo_alerts(
        self,
        employee_id: Optional[str] = None,
        anomaly_type: Optional[AnomalyType] = None,
        verified: Optional[str] = None,
        limit: int = 50,
    ) -> List[GeographicAlert]:
        query: Dict[str, Any] = {}
        if employee_id is not None:
            query["employee_id"] = employee_id
        if anomaly_type is not None:
            query["anomaly_type"] = anomaly_type.value
        if verified is not None:
            query["verified"] = verified
        cursor = self.geo_alerts.find(query).sort("alert_timestamp", DESCENDING).limit(limit)
        return [geo_alert_from_document(document) for document in cursor]

    def set_geo_alert_verified(self, alert_id: str, verified: str) -> Optional[GeographicAlert]:
        document = self.geo_alerts.find_one_and_update(
            {"_id": alert_id}, {"$set": {"verified": verified}}, return_document=ReturnDocument.AFTER
        )
        if document is None:
            return None
        return geo_alert_from_document(document)

    def insert_threat(self, threat: ActiveThreat) -> None:
        document = threat_to_document(threat)
        document["_id"] = threat.threat_id
        self.threats.insert_one(document)

    def update_threat(self, threat: ActiveThreat) -> None:
        document = threat_to_document(threat)
        document["_id"] = threat.threat_id
        self.threats.replace_one({"_id": threat.threat_id}, document)

    def find_open_threat(
        self, employee_id: str, category: ThreatCategory, opened_since: datetime
    ) -> Optional[ActiveThreat]:
        document = self.threats.find_one(
            {
                "employee_id": employee_id,
                "alert_type": category.value,
                "solved": False,
                "alert_date_time": {"$gte": opened_since},
            },
            sort=[("alert_date_time", DESCENDING)],
        )
        if document is None:
            return None
        return threat_from_document(document)

    def get_threat(self, threat_id: str) -> Optional[ActiveThreat]:
        document = self.threats.find_one({"_id": threat_id})
        if document is None:
            return None
        return threat_from_document(document)

    def list_threats(
        self,
        employee_id: Optional[str] = None,
        category: Optional[ThreatCategory] = None,
        solved: Optional[bool] = None,
        limit: int = 50,
    ) -> List[ActiveThreat]:
        query: Dict[str, Any] = {}
        if employee_id is not None:
            query["employee_id"] = employee_id
        if category is not None:
            query["alert_type"] = category.value
        if solved is not None:
            query["solved"] = solved
        cursor = self.threats.find(query).sort("alert_date_time", DESCENDING).limit(limit)
        return [threat_from_document(document) for document in cursor]

    def solve_threat(self, threat_id: str, reviewed_at: datetime) -> Optional[ActiveThreat]:
        result = self.threats.update_one({"_id": threat_id}, {"$set": {"solved": True, "last_reviewed": reviewed_at}})
        if result.matched_count == 0:
            return None
        return self.get_threat(threat_id)

    def solve_threats_for_source(
        self, category: ThreatCategory, source_event_ref: str, reviewed_at: datetime
    ) -> int:
        result = self.threats.update_many(
            {"alert_type": category.value, "source_event_ref": source_event_ref, "solved": False},
            {"$set": {"solved": True, "last_reviewed": reviewed_at}},
        )
        return result.modified_count

    def open_threat_totals(self, limit: int = 5) -> List[EmployeeRiskSummary]:
        pipeline = [
            {"$match": {"solved": False}},
            {
                "$group": {
                    "_id": "$employee_id",
                    "total_risk_score": {"$sum": "$risk_score"},
                    "threat_count": {"$sum": 1},
                    "max_risk_score": {"$max": "$risk_score"},
                    "alert_types": {"$addToSet": "$alert_type"},
                }
            },
            {"$sort": {"total_risk_score": DESCENDING}},
            {"$limit": limit},
        ]
        return [
            EmployeeRiskSummary(
                employee_id=row["_id"],
                total_risk_score=int(row["total_risk_score"]),
                threat_count=int(row["threat_count"]),
                max_risk_score=int(row["max_risk_score"]),
                alert_types=sorted(row["alert_types"]),
            )
            for row in self.threats.aggregate(pipeline)
        ]

    def get_employee(self, employee_id: str) -> Optional[EmployeeProfile]:
        document = self.employees.find_one({"employee_id": employee_id})
        if document is None:
            return None
        document.pop("_id", None)
        return employee_from_document(document)

    def save_employee(self, profile: EmployeeProfile) -> None:
        document = dataclasses.asdict(profile)
        self.employees.replace_one({"employee_id": profile.employee_id}, document, upsert=True)


class InMemoryRepository:
    """Process-local store with the same contract as :class:`MongoRepository`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.logins: Dict[str, LoginEvent] = {}
        self.download_alerts: Dict[str, BulkDownloadAlert] = {}
        self.geo_alerts: Dict[str, GeographicAlert] = {}
        self.threats: Dict[str, ActiveThreat] = {}
        self.employees: Dict[str, EmployeeProfile] = {}

    def insert_login(self, event: LoginEvent) -> None:
        with self._lock:
            self.logins[event.login_ref] = event

    def close_login(self, login_ref: str, logout_at: datetime) -> None:
        with self._lock:
            event = self.logins.get(login_ref)
            if event is not None:
                self.logins[login_ref] = dataclasses.replace(event, logout_timestamp=logout_at)

    def count_failed_logins(self, employee_id: str, since: datetime) -> int:
        with self._lock:
            return sum(
                1
                for event in self.logins.values()
                if event.employee_id == employee_id and not event.success and event.timestamp >= since
            )

    def latest_completed_login(self, employee_id: str) -> Optional[LoginEvent]:
        with self._lock:
            completed = [
                event
                for event in self.logins.values()
                if event.employee_id == employee_id and event.success and event.logout_timestamp is not None
            ]
        return max(completed, key=lambda event: event.timestamp, default=None)

    def insert_download_alert(self, alert: BulkDownloadAlert) -> None:
        with self._lock:
            self.download_alerts[alert.alert_id] = copy.deepcopy(alert)

    def insert_geo_alert(self, alert: GeographicAlert) -> None:
        with self._lock:
            self.geo_alerts[alert.alert_id] = copy.deepcopy(alert)

    def insert_threat(self, threat: ActiveThreat) -> None:
        with self._lock:
            self.threats[threat.threat_id] = copy.deepcopy(threat)

    def update_threat(self, threat: ActiveThreat) -> None:
        with self._lock:
            self.threats[threat.threat_id] = copy.deepcopy(threat)

    def find_open_threat(
        self, employee_id: str, category: ThreatCategory, opened_since: datetime
    ) -> Optional[ActiveThreat]:
        with self._lock:
            candidates = [
                threat
                for threat in self.threats.values()
                if threat.employee_id == employee_id
                and threat.category is category
                and not threat.solved
                and threat.opened_at >= opened_since
            ]
            latest = max(candidates, key=lambda threat: threat.opened_at, default=None)
            return copy.deepcopy(latest)

    def get_threat(self, threat_id: str) -> Optional[ActiveThreat]:
        with self._lock:
            return copy.deepcopy(self.threats.get(threat_id))

    def list_threats(
        self,
        employee_id: Optional[str] = None,
        category: Optional[ThreatCategory] = None,
        solved: Optional[bool] = None,
        limit: int = 50,
    ) -> List[ActiveThreat]:
        with self._lock:
            matches = [
                threat
                for threat in self.threats.values()
                if (employee_id is None or threat.employee_id == employee_id)
                and (category is None or threat.category is category)
                and (solved is None or threat.solved == solved)
            ]
            matches.sort(key=lambda threat: threat.opened_at, reverse=True)
            return copy.deepcopy(matches[:limit])

    def solve_threat(self, threat_id: str, reviewed_at: datetime) -> Optional[ActiveThreat]:
        with self._lock:
            threat = self.threats.get(threat_id)
            if threat is None:
                return None
            threat.solved = True
            threat.last_reviewed_at = reviewed_at
            return copy.deepcopy(threat)

    def get_employee(self, employee_id: str) -> Optional[EmployeeProfile]:
        with self._lock:
            return copy.deepcopy(self.employees.get(employee_id))

    def save_employee(self, profile: EmployeeProfile) -> None:
        with self._lock:
            self.employees[profile.employee_id] = copy.deepcopy(profile)

    def recent_logins(self, limit: int = 10) -> List[LoginEvent]:
        with self._lock:
            events = sorted(self.logins.values(), key=lambda event: event.timestamp, reverse=True)
        return events[:limit]

    def list_download_alerts(
        self, employee_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50
    ) -> List[BulkDownloadAlert]:
        with self._lock:
            matches = [
                alert
                for alert in self.download_alerts.values()
                if (employee_id is None or alert.employee_id == employee_id)
                and (status is None or alert.status == status)
            ]
            matches.sort(key=lambda alert: alert.timestamp, reverse=True)
            return copy.deepcopy(matches[:limit])

    def set_download_alert_status(self, alert_id: str, status: str) -> Optional[BulkDownloadAlert]:
        with self._lock:
            alert = self.download_alerts.get(alert_id)
            if alert is None:
                return None
            alert.status = status
            return copy.deepcopy(alert)

    def list_geo_alerts(
        self,
        employee_id: Optional[str] = None,
        anomaly_type: Optional[AnomalyType] = None,
        verified: Optional[str] = None,
        limit: int = 50,
    ) -> List[GeographicAlert]:
        with self._lock:
            matches = [
                alert
                for alert in self.geo_alerts.values()
                if (employee_id is None or alert.employee_id == employee_id)
                and (anomaly_type is None or alert.anomaly_type is anomaly_type)
                and (verified is None or alert.verified == verified)
            ]
            matches.sort(key=lambda alert: alert.alert_timestamp, reverse=True)
            return copy.deepcopy(matches[:limit])

    def set_geo_alert_verified(self, alert_id: str, verified: str) -> Optional[GeographicAlert]:
        with self._lock:
            alert = self.geo_alerts.get(alert_id)
            if alert is None:
                return None
            alert.verified = verified
            return copy.deepcopy(alert)

    def solve_threats_for_source(
        self, category: ThreatCategory, source_event_ref: str, reviewed_at: datetime
    ) -> int:
        solved = 0
        with self._lock:
            for threat in self.threats.values():
                if threat.category is category and threat.source_event_ref == source_event_ref and not threat.solved:
                    threat.solved = True
                    threat.last_reviewed_at = reviewed_at
                    solved += 1
        return solved

    def open_threat_totals(self, limit: int = 5) -> List[EmployeeRiskSummary]:
        with self._lock:
            open_threats = [copy.deepcopy(threat) for threat in self.threats.values() if not threat.solved]
        return _summarize_open_threats(open_threats, limit)


def anomaly_to_document(anomaly: AnomalyResult) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "current_location": location_to_document(anomaly.current_location),
        "previous_location": location_to_document(anomaly.previous_location),
        "time_between_logins_hours": anomaly.hours_between,
        "minimum_travel_time_hours": anomaly.min_travel_hours,
        "anomaly_type": anomaly.anomaly_type.value,
    }
    document.update(assessment_to_document(anomaly.risk))
    return document

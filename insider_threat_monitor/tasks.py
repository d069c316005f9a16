from __future__ import annotations

import os
from datetime import datetime
from typing import Any, MutableMapping, Optional
from uuid import uuid4

from celery import Celery

from .persistence import anomaly_to_document
from .service import MonitoringService, create_service_from_env


def _broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")


def _result_backend() -> str:
    return os.getenv("CELERY_RESULT_BACKEND", _broker_url())


celery_app = Celery("insider_threat_monitor", broker=_broker_url(), backend=_result_backend())
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)

_SERVICE: Optional[MonitoringService] = None


def _get_service() -> MonitoringService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = create_service_from_env()
    return _SERVICE


@celery_app.task(name="insider_threat_monitor.analyze_geo_login")
def analyze_geo_login(employee_id: str, ip_address: str, timestamp: str) -> Optional[MutableMapping[str, Any]]:
    service = _get_service()
    anomaly = service.resolve_and_analyze_geo(employee_id, ip_address, datetime.fromisoformat(timestamp))
    if anomaly is None:
        return None
    return anomaly_to_document(anomaly)


def enqueue_geo_analysis(employee_id: str, ip_address: str, timestamp: datetime) -> str:
    task_id = str(uuid4())
    analyze_geo_login.apply_async(args=[employee_id, ip_address, timestamp.isoformat()], task_id=task_id)
    return task_id

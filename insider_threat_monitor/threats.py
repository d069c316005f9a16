from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

from .broadcaster import AlertBroadcaster, build_alert_payload
from .config import EngineConfig
from .models import ActiveThreat, RiskAssessment, ThreatCategory, ThreatDetails, utcnow
from .persistence import Repository
from .scheduling import KeyedLocks

logger = logging.getLogger(__name__)


class ThreatLifecycleManager:
    """Opens active threats and folds repeat triggers into the open record.

    At most one open threat per employee and category is created inside the
    category's dedup window; later qualifying events inside that window
    overwrite the open record's assessment and timestamp instead.
    """

    def __init__(
        self,
        repository: Repository,
        broadcaster: AlertBroadcaster,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.broadcaster = broadcaster
        self.config = config or EngineConfig()
        self.clock = clock
        self._locks = KeyedLocks()

    def qualifies(self, category: ThreatCategory, risk: RiskAssessment) -> bool:
        return risk.score >= self.config.threat_threshold(category.value)

    def raise_threat(
        self,
        employee_id: str,
        category: ThreatCategory,
        risk: RiskAssessment,
        source_event_ref: str,
        details: ThreatDetails,
    ) -> Optional[ActiveThreat]:
        if not self.qualifies(category, risk):
            return None

        with self._locks(f"{employee_id}:{category.value}"):
            now = self.clock()
            window_start = now - self.config.dedup_window(category.value)
            threat = self.repository.find_open_threat(employee_id, category, window_start)
            if threat is not None:
                threat.risk = risk
                threat.details = details
                threat.source_event_ref = source_event_ref
                threat.last_updated_at = now
                threat.occurrences += 1
                self.repository.update_threat(threat)
                event = "threat_updated"
                logger.info(
                    "Refreshed %s threat %s for %s (score=%s, occurrences=%s)",
                    category.value,
                    threat.threat_id,
                    employee_id,
                    risk.score,
                    threat.occurrences,
                )
            else:
                threat = ActiveThreat(
                    threat_id=str(uuid4()),
                    employee_id=employee_id,
                    category=category,
                    risk=risk,
                    source_event_ref=source_event_ref,
                    opened_at=now,
                    last_updated_at=now,
                    details=details,
                )
                self.repository.insert_threat(threat)
                event = "threat_opened"
                logger.info(
                    "Opened %s threat %s for %s (score=%s, level=%s)",
                    category.value,
                    threat.threat_id,
                    employee_id,
                    risk.score,
                    risk.level.value,
                )

        self._publish(threat, event)
        return threat

    def solve(self, threat_id: str) -> Optional[ActiveThreat]:
        threat = self.repository.solve_threat(threat_id, self.clock())
        if threat is not None:
            logger.info("Threat %s marked solved", threat_id)
        return threat

    def get_threat(self, threat_id: str) -> Optional[ActiveThreat]:
        return self.repository.get_threat(threat_id)

    def list_threats(
        self,
        employee_id: Optional[str] = None,
        category: Optional[ThreatCategory] = None,
        solved: Optional[bool] = None,
        limit: int = 50,
    ) -> List[ActiveThreat]:
        return self.repository.list_threats(employee_id=employee_id, category=category, solved=solved, limit=limit)

    def _publish(self, threat: ActiveThreat, event: str) -> None:
        try:
            self.broadcaster.publish(threat.category.value, build_alert_payload(threat, event=event))
        except Exception:
            logger.exception("Alert broadcast for threat %s failed", threat.threat_id)

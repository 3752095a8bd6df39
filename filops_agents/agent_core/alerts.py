from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .events import EventPublisher, EventType, Topics, build_event
from .repos.interfaces import AlertRepository
from .schemas.domain import Alert, AlertSeverity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertEmitter:
    """Write an alert and announce it on ``filops.alerts``.

    Alerts are write-once; nothing here de-duplicates repeated alerts.
    """

    alerts: AlertRepository
    events: EventPublisher

    async def raise_alert(
        self,
        *,
        project_id: str,
        severity: AlertSeverity,
        summary: str,
        source: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        alert = Alert(
            project_id=project_id,
            severity=severity,
            summary=summary,
            details=dict(details or {}),
            source=source,
        )
        await self.alerts.create(alert)
        await self.events.publish(
            Topics.ALERTS,
            build_event(
                EventType.alert_created,
                source,
                {
                    "alert_id": alert.id,
                    "project_id": project_id,
                    "severity": severity.value,
                    "summary": summary,
                    "details": alert.details,
                },
            ),
        )
        logger.log(
            logging.ERROR if severity == AlertSeverity.critical else logging.WARNING,
            "Alert raised (%s): %s",
            severity.value,
            summary,
        )
        return alert

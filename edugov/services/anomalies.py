from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.errors import ValidationError
from edugov.domain.models import Anomaly, utc_now
from edugov.domain.state import AnomalySeverity, values_of
from edugov.persistence.guards import rows_or_empty, soft_dependency
from edugov.services.notifications import notify_admins


logger = logging.getLogger(__name__)

ANOMALY_SEVERITIES: dict[str, str] = {
    "dashboard_accuracy_low": "high",
    "review_time_exceeded": "high",
    "upload_time_exceeded": "high",
    "outbox_delivery_failed": "medium",
}


def severity_for(anomaly_type: str) -> str:
    return ANOMALY_SEVERITIES.get(anomaly_type, "medium")


async def log_anomaly(
    session: AsyncSession,
    *,
    anomaly_type: str,
    details: dict[str, Any],
    severity: AnomalySeverity | None = None,
    now: datetime | None = None,
) -> None:
    """Record an operational anomaly; high severity also notifies admins.

    Like audit writes, this never fails the caller. The caller commits.
    """
    resolved = severity or severity_for(anomaly_type)
    logger.warning("anomaly_detected type=%s severity=%s details=%s", anomaly_type, resolved, details)
    anomaly = Anomaly(
        anomaly_type=anomaly_type,
        severity=resolved,
        details=details,
        created_at=now or utc_now(),
    )
    async with soft_dependency(session, "anomalies", anomaly_type=anomaly_type):
        session.add(anomaly)
        await session.flush()
    if resolved == "high":
        await notify_admins(
            session,
            kind="anomaly",
            message=f"Anomaly detected: {anomaly_type}",
            related_type="anomaly",
            related_id=anomaly.id,
            payload={"anomaly_type": anomaly_type, "severity": resolved},
        )


async def list_anomalies(
    session: AsyncSession,
    *,
    severity: str | None = None,
    anomaly_type: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Anomaly]:
    if severity is not None and severity not in values_of(AnomalySeverity):
        raise ValidationError(f"Invalid severity: {severity}")
    stmt = select(Anomaly)
    if severity:
        stmt = stmt.where(Anomaly.severity == severity)
    if anomaly_type:
        stmt = stmt.where(Anomaly.anomaly_type == anomaly_type)
    stmt = stmt.order_by(Anomaly.created_at.desc(), Anomaly.id.desc()).offset(offset).limit(limit)
    rows = await rows_or_empty(session, stmt, source="anomalies")
    return [row[0] for row in rows]


def serialize_anomaly(anomaly: Anomaly) -> dict[str, Any]:
    return {
        "id": anomaly.id,
        "anomaly_type": anomaly.anomaly_type,
        "severity": anomaly.severity,
        "details": anomaly.details,
        "created_at": anomaly.created_at.isoformat() if anomaly.created_at else None,
    }

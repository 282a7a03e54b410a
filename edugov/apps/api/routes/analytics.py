from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import Page, get_context, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.services.analytics import export_dataset, get_dashboard, retention_metrics, verify_accuracy
from edugov.services.anomalies import list_anomalies, serialize_anomaly
from edugov.services.audit import RequestContext
from edugov.services.authz import Principal


router = APIRouter(prefix="/admin", tags=["analytics"], responses=DEFAULT_ERROR_RESPONSES)


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive query timestamps are read as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@router.get("/analytics")
async def dashboard_endpoint(
    kind: str = "daily",
    principal: Principal = Depends(require_action("view_analytics")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return success_response(await get_dashboard(db, principal, kind=kind))


@router.get("/accuracy/{snapshot_id}")
async def accuracy_endpoint(
    snapshot_id: int,
    principal: Principal = Depends(require_action("view_analytics")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    return success_response(await verify_accuracy(db, principal, snapshot_id, context=context))


@router.get("/retention")
async def retention_endpoint(
    timeframe: str = "30days",
    principal: Principal = Depends(require_action("view_analytics")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return success_response(await retention_metrics(db, principal, timeframe=timeframe))


@router.get("/anomalies")
async def anomalies_endpoint(
    severity: str | None = None,
    anomaly_type: str | None = None,
    page: Page = Depends(),
    principal: Principal = Depends(require_action("view_analytics")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    anomalies = await list_anomalies(
        db, severity=severity, anomaly_type=anomaly_type, offset=page.offset, limit=page.limit
    )
    return success_response(
        {"items": [serialize_anomaly(anomaly) for anomaly in anomalies], "pagination": page.meta(len(anomalies))}
    )


@router.get("/export")
async def export_endpoint(
    dataset: str,
    start: datetime | None = None,
    end: datetime | None = None,
    principal: Principal = Depends(require_action("export_data")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    payload = await export_dataset(
        db, principal, dataset=dataset, start=_as_utc(start), end=_as_utc(end), context=context
    )
    return success_response(payload, message=f"Exported {payload['metadata']['record_count']} records")

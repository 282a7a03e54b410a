from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
import logging
from typing import Any, Callable

from sqlalchemy import and_, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.config import get_settings
from edugov.core.errors import NotFoundError, ValidationError
from edugov.domain.models import (
    AnalyticsSnapshot,
    AuditEntry,
    Flag,
    ForumPost,
    LearningSession,
    LessonProgress,
    QuotaRow,
    Tenant,
    Upload,
    User,
    utc_now,
)
from edugov.domain.state import ExportDataset, RetentionTimeframe, SnapshotKind, values_of
from edugov.persistence.guards import rows_or_empty, scalar_or_default, soft_dependency
from edugov.services.anomalies import log_anomaly
from edugov.services.audit import RequestContext, audit_entry_payload, log_action
from edugov.services.authz import Principal, enforce
from edugov.services.intake import serialize_upload
from edugov.services.moderation.flags import count_pending_older_than, serialize_flag
from edugov.services.singleflight import SingleFlight


logger = logging.getLogger(__name__)

ACTIVE_WINDOW = timedelta(days=30)
RECENT_WINDOW = timedelta(days=7)
TREND_DAYS = 7
RETENTION_DAYS = {"7days": 7, "30days": 30, "90days": 90}
EXPORT_MAX_ROWS = 10_000

# Snapshot fields recomputed by the accuracy check.
VERIFIED_METRICS: tuple[tuple[str, str], ...] = (
    ("users", "total"),
    ("users", "active"),
    ("content", "new"),
    ("content", "approval_rate"),
    ("engagement", "completion_rate"),
    ("engagement", "forum_posts"),
)

_regeneration: SingleFlight[AnalyticsSnapshot] = SingleFlight()


def get_regeneration_flight() -> SingleFlight[AnalyticsSnapshot]:
    return _regeneration


def _ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return round(float(numerator) / float(denominator), 4)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def engagement_score(*, total_users: int, active_users: int, progressors: int, posters: int) -> float:
    # Mean of activity rate, content consumption and forum participation, each clamped to [0, 1].
    if total_users <= 0:
        return 0.0
    parts = [
        _clamp(active_users / total_users),
        _clamp(progressors / total_users),
        _clamp(posters / total_users),
    ]
    return round(sum(parts) / len(parts), 4)


def build_timeseries_points(
    *,
    start_date: date,
    days: int,
    counts_by_date: dict[date, int],
) -> list[dict[str, Any]]:
    # Fill missing dates so chart consumers receive contiguous series points.
    points: list[dict[str, Any]] = []
    for offset in range(days):
        current = start_date + timedelta(days=offset)
        points.append({"date": current.isoformat(), "value": int(counts_by_date.get(current, 0))})
    return points


def _count(model: Any, *conditions: Any) -> Any:
    return select(func.count()).select_from(model).where(*conditions)


async def compute_metrics(session: AsyncSession, as_of: datetime) -> dict[str, Any]:
    """Headline metrics computed as of a point in time.

    Every figure only counts rows that existed at ``as_of`` so a snapshot can be
    recomputed later for the accuracy check. Missing source tables count as 0.
    """
    active_from = as_of - ACTIVE_WINDOW
    recent_from = as_of - RECENT_WINDOW
    day_start = datetime.combine(as_of.date(), time.min, tzinfo=timezone.utc)

    total_users = await scalar_or_default(session, _count(User, User.created_at <= as_of), source="users")
    active_users = await scalar_or_default(
        session,
        _count(User, User.created_at <= as_of, User.last_login_at > active_from, User.last_login_at <= as_of),
        source="users",
    )
    prior_users = await scalar_or_default(session, _count(User, User.created_at < active_from), source="users")

    new_uploads = await scalar_or_default(
        session, _count(Upload, Upload.created_at > recent_from, Upload.created_at <= as_of), source="uploads"
    )
    uploads_today = await scalar_or_default(
        session, _count(Upload, Upload.created_at >= day_start, Upload.created_at <= as_of), source="uploads"
    )
    uploads_total = await scalar_or_default(session, _count(Upload, Upload.created_at <= as_of), source="uploads")
    # Approval counted by review time so later decisions do not rewrite history.
    uploads_approved = await scalar_or_default(
        session,
        _count(Upload, Upload.created_at <= as_of, Upload.status == "approved", Upload.reviewed_at <= as_of),
        source="uploads",
    )

    forum_posts = await scalar_or_default(
        session,
        _count(ForumPost, ForumPost.created_at > recent_from, ForumPost.created_at <= as_of),
        source="forum_posts",
    )
    progress_total = await scalar_or_default(
        session, _count(LessonProgress, LessonProgress.updated_at <= as_of), source="lesson_progress"
    )
    progress_completed = await scalar_or_default(
        session,
        _count(LessonProgress, LessonProgress.updated_at <= as_of, LessonProgress.completed.is_(True)),
        source="lesson_progress",
    )
    avg_session = await scalar_or_default(
        session,
        select(func.avg(LearningSession.duration_minutes)).where(
            LearningSession.started_at > active_from, LearningSession.started_at <= as_of
        ),
        default=0,
        source="learning_sessions",
    )

    total_users = int(total_users)
    prior_users = int(prior_users)
    return {
        "users": {
            "total": total_users,
            "active": int(active_users),
            "growth": _ratio(total_users - prior_users, prior_users),
        },
        "content": {
            "new": int(new_uploads),
            "uploads_today": int(uploads_today),
            "approval_rate": _ratio(int(uploads_approved), int(uploads_total)),
        },
        "engagement": {
            "forum_posts": int(forum_posts),
            "completion_rate": _ratio(int(progress_completed), int(progress_total)),
            "avg_session_minutes": round(float(avg_session), 2),
        },
    }


async def _per_tenant(session: AsyncSession, stmt: Any, *, source: str) -> dict[int, int]:
    rows = await rows_or_empty(session, stmt, source=source)
    return {int(tenant_id): int(count) for tenant_id, count in rows if tenant_id is not None}


async def compare_tenants(session: AsyncSession, as_of: datetime) -> dict[str, Any]:
    # Keyed by tenant id (as a string, the JSON object key type).
    active_from = as_of - ACTIVE_WINDOW
    recent_from = as_of - RECENT_WINDOW
    totals = await _per_tenant(
        session,
        select(User.tenant_id, func.count())
        .where(User.tenant_id.is_not(None), User.created_at <= as_of)
        .group_by(User.tenant_id),
        source="users",
    )
    active = await _per_tenant(
        session,
        select(User.tenant_id, func.count())
        .where(
            User.tenant_id.is_not(None),
            User.created_at <= as_of,
            User.last_login_at > active_from,
            User.last_login_at <= as_of,
        )
        .group_by(User.tenant_id),
        source="users",
    )
    recent_posts = await _per_tenant(
        session,
        select(User.tenant_id, func.count(ForumPost.id))
        .select_from(ForumPost)
        .join(User, ForumPost.author_id == User.id)
        .where(ForumPost.created_at > recent_from, ForumPost.created_at <= as_of)
        .group_by(User.tenant_id),
        source="forum_posts",
    )
    posters = await _per_tenant(
        session,
        select(User.tenant_id, func.count(distinct(ForumPost.author_id)))
        .select_from(ForumPost)
        .join(User, ForumPost.author_id == User.id)
        .where(ForumPost.created_at > recent_from, ForumPost.created_at <= as_of)
        .group_by(User.tenant_id),
        source="forum_posts",
    )
    progressors = await _per_tenant(
        session,
        select(User.tenant_id, func.count(distinct(LessonProgress.user_id)))
        .select_from(LessonProgress)
        .join(User, LessonProgress.user_id == User.id)
        .where(LessonProgress.updated_at > recent_from, LessonProgress.updated_at <= as_of)
        .group_by(User.tenant_id),
        source="lesson_progress",
    )
    names = {
        int(tenant_id): name
        for tenant_id, name in await rows_or_empty(session, select(Tenant.id, Tenant.name), source="tenants")
    }
    comparison: dict[str, Any] = {}
    for tenant_id in sorted(totals):
        total = totals[tenant_id]
        comparison[str(tenant_id)] = {
            "name": names.get(tenant_id),
            "total_users": total,
            "active_users": active.get(tenant_id, 0),
            "recent_posts": recent_posts.get(tenant_id, 0),
            "engagement_score": engagement_score(
                total_users=total,
                active_users=active.get(tenant_id, 0),
                progressors=progressors.get(tenant_id, 0),
                posters=posters.get(tenant_id, 0),
            ),
        }
    return comparison


async def _daily_counts(session: AsyncSession, column: Any, start: datetime, as_of: datetime, *, source: str) -> dict[date, int]:
    # Bucket in Python so the grouping does not depend on dialect date functions.
    rows = await rows_or_empty(session, select(column).where(column >= start, column <= as_of), source=source)
    counts: dict[date, int] = {}
    for (value,) in rows:
        if value is None:
            continue
        day = value.astimezone(timezone.utc).date()
        counts[day] = counts.get(day, 0) + 1
    return counts


async def compute_trends(session: AsyncSession, as_of: datetime) -> dict[str, Any]:
    start_date = as_of.date() - timedelta(days=TREND_DAYS - 1)
    start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
    new_users = await _daily_counts(session, User.created_at, start, as_of, source="users")
    uploads = await _daily_counts(session, Upload.created_at, start, as_of, source="uploads")
    return {
        "user_growth": build_timeseries_points(start_date=start_date, days=TREND_DAYS, counts_by_date=new_users),
        "upload_trend": build_timeseries_points(start_date=start_date, days=TREND_DAYS, counts_by_date=uploads),
    }


def serialize_snapshot(snapshot: AnalyticsSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "kind": snapshot.kind,
        "as_of": snapshot.as_of.isoformat() if snapshot.as_of else None,
        "metrics": snapshot.metrics,
        "tenant_comparison": snapshot.tenant_comparison,
        "trends": snapshot.trends,
    }


def stale_after(kind: str) -> timedelta:
    base = timedelta(seconds=get_settings().snapshot_stale_after_s)
    return base * 7 if kind == "weekly" else base


def is_stale(snapshot: AnalyticsSnapshot, now: datetime) -> bool:
    return now - snapshot.as_of > stale_after(snapshot.kind)


async def latest_snapshot(session: AsyncSession, kind: str) -> AnalyticsSnapshot | None:
    rows = await rows_or_empty(
        session,
        select(AnalyticsSnapshot)
        .where(AnalyticsSnapshot.kind == kind)
        .order_by(AnalyticsSnapshot.as_of.desc(), AnalyticsSnapshot.id.desc())
        .limit(1),
        source="analytics_snapshots",
    )
    return rows[0][0] if rows else None


async def generate_snapshot(session: AsyncSession, *, kind: str = "daily", now: datetime | None = None) -> AnalyticsSnapshot:
    """Compute and persist a new snapshot.

    A missing snapshot table still yields a (transient) snapshot so the
    dashboard keeps working.
    """
    if kind not in values_of(SnapshotKind):
        raise ValidationError(f"Invalid snapshot kind: {kind}")
    as_of = now or utc_now()
    snapshot = AnalyticsSnapshot(
        kind=kind,
        as_of=as_of,
        metrics=await compute_metrics(session, as_of),
        tenant_comparison=await compare_tenants(session, as_of),
        trends=await compute_trends(session, as_of),
        created_at=utc_now(),
    )
    async with soft_dependency(session, "analytics_snapshots", kind=kind):
        session.add(snapshot)
        await session.flush()
    await session.commit()
    logger.info("analytics_snapshot_generated snapshot_id=%s kind=%s as_of=%s", snapshot.id, kind, as_of.isoformat())
    return snapshot


async def system_alerts(session: AsyncSession, *, now: datetime | None = None) -> list[dict[str, Any]]:
    # Synthesized on read; a missing source table contributes no alerts.
    settings = get_settings()
    current = now or utc_now()
    alerts: list[dict[str, Any]] = []
    quota_rows = await rows_or_empty(
        session,
        select(QuotaRow)
        .where(
            QuotaRow.limit > 0,
            QuotaRow.period_start <= current,
            QuotaRow.period_end > current,
            QuotaRow.usage >= QuotaRow.limit * settings.quota_warning_ratio,
        )
        .order_by(QuotaRow.tenant_id, QuotaRow.media_kind),
        source="quota_rows",
    )
    for (row,) in quota_rows:
        percent = round(row.usage / row.limit * 100)
        alerts.append(
            {
                "type": "quota_warning",
                "severity": "warning",
                "message": f"Tenant {row.tenant_id} is at {percent}% of its {row.media_kind} quota",
                "tenant_id": row.tenant_id,
                "media_kind": row.media_kind,
            }
        )
    cutoff = current - timedelta(seconds=settings.flag_review_slo_s)
    pending = await count_pending_older_than(session, cutoff)
    if pending:
        hours = settings.flag_review_slo_s / 3600
        alerts.append(
            {
                "type": "pending_flags",
                "severity": "warning",
                "message": f"{pending} flagged items pending review for over {hours:g} hours",
                "count": pending,
            }
        )
    return alerts


async def get_dashboard(
    session: AsyncSession,
    principal: Principal | None,
    *,
    kind: str = "daily",
    now: datetime | None = None,
) -> dict[str, Any]:
    """Serve the latest snapshot, regenerating it when missing or stale.

    Regeneration is single-flight per kind: concurrent callers share one
    in-flight computation instead of each writing a snapshot.
    """
    enforce(principal, "view_analytics")
    if kind not in values_of(SnapshotKind):
        raise ValidationError(f"Invalid snapshot kind: {kind}")
    current = now or utc_now()
    snapshot = await latest_snapshot(session, kind)
    if snapshot is None or is_stale(snapshot, current):
        snapshot = await _regeneration.do(kind, lambda: generate_snapshot(session, kind=kind, now=current))
    view = serialize_snapshot(snapshot)
    view["alerts"] = await system_alerts(session, now=current)
    return view


def _within_tolerance(stored: float, recomputed: float, tolerance: float) -> bool:
    return abs(stored - recomputed) <= tolerance * max(abs(stored), abs(recomputed))


async def verify_accuracy(
    session: AsyncSession,
    principal: Principal | None,
    snapshot_id: int,
    *,
    context: RequestContext | None = None,
) -> dict[str, Any]:
    # Recompute the checked metrics at the snapshot's as-of and compare within relative tolerance.
    principal = enforce(principal, "view_analytics")
    settings = get_settings()
    snapshot = await session.get(AnalyticsSnapshot, snapshot_id)
    if snapshot is None:
        raise NotFoundError("Snapshot not found")
    recomputed = await compute_metrics(session, snapshot.as_of)
    checks = []
    for section, name in VERIFIED_METRICS:
        stored_value = float((snapshot.metrics or {}).get(section, {}).get(name, 0) or 0)
        fresh_value = float(recomputed[section][name])
        checks.append(
            {
                "metric": f"{section}.{name}",
                "stored": stored_value,
                "recomputed": fresh_value,
                "within_tolerance": _within_tolerance(stored_value, fresh_value, settings.accuracy_tolerance),
            }
        )
    matched = sum(1 for check in checks if check["within_tolerance"])
    accuracy = round(matched / len(checks), 4)
    passed = accuracy >= settings.accuracy_threshold
    if not passed:
        await log_anomaly(
            session,
            anomaly_type="dashboard_accuracy_low",
            details={"snapshot_id": snapshot.id, "accuracy": accuracy, "threshold": settings.accuracy_threshold},
        )
    result = {
        "snapshot_id": snapshot.id,
        "accuracy": accuracy,
        "threshold": settings.accuracy_threshold,
        "passed": passed,
        "checks": checks,
    }
    await log_action(
        session,
        actor_id=principal.id,
        action_type="snapshot_verify",
        target_type="analytics_snapshot",
        target_id=snapshot.id,
        detail=f"Accuracy {accuracy:.2%}",
        after={"accuracy": accuracy, "passed": passed},
        context=context,
    )
    await session.commit()
    logger.info("snapshot_verified snapshot_id=%s accuracy=%s passed=%s", snapshot.id, accuracy, passed)
    return result


async def retention_metrics(
    session: AsyncSession,
    principal: Principal | None,
    *,
    timeframe: str = "30days",
    now: datetime | None = None,
) -> dict[str, Any]:
    # Users who joined in the window and logged in during the last week count as retained.
    enforce(principal, "view_analytics")
    if timeframe not in values_of(RetentionTimeframe):
        raise ValidationError(f"Invalid timeframe: {timeframe}", details={"allowed": sorted(RETENTION_DAYS)})
    current = now or utc_now()
    window_start = current - timedelta(days=RETENTION_DAYS[timeframe])
    joined = and_(User.created_at >= window_start, User.created_at <= current)
    new_users = int(await scalar_or_default(session, _count(User, joined), source="users"))
    retained = int(
        await scalar_or_default(
            session,
            _count(User, joined, User.last_login_at >= current - RECENT_WINDOW),
            source="users",
        )
    )
    return {
        "timeframe": timeframe,
        "new_users": new_users,
        "retained_users": retained,
        "retention_rate": _ratio(retained, new_users),
    }


_EXPORTERS: dict[str, tuple[Any, Any, Callable[[Any], dict[str, Any]]]] = {
    "uploads": (Upload, Upload.created_at, serialize_upload),
    "flags": (Flag, Flag.created_at, serialize_flag),
    "audit": (AuditEntry, AuditEntry.created_at, audit_entry_payload),
}
assert set(_EXPORTERS) == values_of(ExportDataset)


async def export_dataset(
    session: AsyncSession,
    principal: Principal | None,
    *,
    dataset: str,
    start: datetime | None = None,
    end: datetime | None = None,
    context: RequestContext | None = None,
) -> dict[str, Any]:
    principal = enforce(principal, "export_data")
    exporter = _EXPORTERS.get(dataset)
    if exporter is None:
        raise ValidationError(f"Invalid dataset: {dataset}", details={"allowed": sorted(_EXPORTERS)})
    model, created_column, serialize = exporter
    end = end or utc_now()
    start = start or end - ACTIVE_WINDOW
    if start > end:
        raise ValidationError("start must be before end")
    rows = await rows_or_empty(
        session,
        select(model)
        .where(created_column >= start, created_column <= end)
        .order_by(created_column.asc(), model.id.asc())
        .limit(EXPORT_MAX_ROWS),
        source=model.__tablename__,
    )
    records = [serialize(row[0]) for row in rows]
    await log_action(
        session,
        actor_id=principal.id,
        action_type="data_export",
        target_type="system",
        detail=f"Exported {len(records)} {dataset} records from {start.isoformat()} to {end.isoformat()}",
        context=context,
    )
    await session.commit()
    logger.info("data_exported dataset=%s records=%s", dataset, len(records))
    return {
        "dataset": dataset,
        "records": records,
        "metadata": {
            "record_count": len(records),
            "start": start.isoformat(),
            "end": end.isoformat(),
            "generated_at": utc_now().isoformat(),
            "truncated": len(records) >= EXPORT_MAX_ROWS,
        },
    }

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.config import get_settings
from edugov.core.errors import QuotaExceededError, ValidationError
from edugov.domain.models import QuotaRow, utc_now
from edugov.domain.state import MEDIA_KINDS
from edugov.persistence.guards import is_missing_table_error
from edugov.services.audit import RequestContext, log_action
from edugov.services.authz import Principal, enforce
from edugov.services.tenants import resolve_tenant


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaSnapshot:
    # Limit and usage for one (tenant, kind, month); limit 0 means unlimited.
    tenant_id: int
    media_kind: str
    limit: int
    usage: int
    period_start: datetime | None
    period_end: datetime | None

    @property
    def unlimited(self) -> bool:
        return self.limit == 0

    @property
    def exhausted(self) -> bool:
        return self.limit > 0 and self.usage >= self.limit

    @property
    def remaining(self) -> int | None:
        if self.unlimited:
            return None
        return max(0, self.limit - self.usage)


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    # Calendar month in UTC; the end bound is the next month's start (exclusive).
    now = now.astimezone(timezone.utc)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def _validate_kind(kind: str) -> None:
    if kind not in MEDIA_KINDS:
        raise ValidationError(f"Unsupported media kind: {kind}")


def _unlimited(tenant_id: int, kind: str) -> QuotaSnapshot:
    return QuotaSnapshot(
        tenant_id=tenant_id,
        media_kind=kind,
        limit=0,
        usage=0,
        period_start=None,
        period_end=None,
    )


def _snapshot(row: QuotaRow) -> QuotaSnapshot:
    return QuotaSnapshot(
        tenant_id=row.tenant_id,
        media_kind=row.media_kind,
        limit=int(row.limit or 0),
        usage=int(row.usage or 0),
        period_start=row.period_start,
        period_end=row.period_end,
    )


async def _select_row(
    session: AsyncSession, tenant_id: int, kind: str, period_start: datetime
) -> QuotaRow | None:
    result = await session.execute(
        select(QuotaRow).where(
            QuotaRow.tenant_id == tenant_id,
            QuotaRow.media_kind == kind,
            QuotaRow.period_start == period_start,
        )
    )
    return result.scalar_one_or_none()


async def _get_or_create_row(session: AsyncSession, tenant_id: int, kind: str, now: datetime) -> QuotaRow:
    # Lazily open the month's row with the per-kind default limit.
    period_start, period_end = month_bounds(now)
    row = await _select_row(session, tenant_id, kind, period_start)
    if row is not None:
        return row
    row = QuotaRow(
        tenant_id=tenant_id,
        media_kind=kind,
        period_start=period_start,
        period_end=period_end,
        limit=get_settings().default_quota_for(kind),
        usage=0,
        updated_at=now,
    )
    try:
        async with session.begin_nested():
            session.add(row)
    except IntegrityError:
        # A concurrent caller created the row first; reuse it.
        existing = await _select_row(session, tenant_id, kind, period_start)
        if existing is None:
            raise
        return existing
    return row


class QuotaService:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or utc_now

    def now(self) -> datetime:
        return self._time_provider()

    async def check(self, session: AsyncSession, *, tenant_id: int, kind: str) -> QuotaSnapshot:
        """Return the current month's limit and usage, creating the row if needed.

        A missing quota table reports unlimited so intake degrades open.
        """
        _validate_kind(kind)
        try:
            async with session.begin_nested():
                row = await _get_or_create_row(session, tenant_id, kind, self.now())
        except SQLAlchemyError as exc:
            if not is_missing_table_error(exc):
                raise
            logger.warning("quota_table_missing tenant_id=%s kind=%s op=check", tenant_id, kind)
            return _unlimited(tenant_id, kind)
        return _snapshot(row)

    async def increment(self, session: AsyncSession, *, tenant_id: int, kind: str) -> QuotaSnapshot:
        """Consume one unit with a single conditional UPDATE.

        The usage precondition lives in the WHERE clause, so concurrent callers
        at ``usage == limit - 1`` get exactly one success; the others see zero
        updated rows and raise ``QuotaExceededError``. The caller commits.
        """
        _validate_kind(kind)
        now = self.now()
        period_start, _period_end = month_bounds(now)
        try:
            async with session.begin_nested():
                await _get_or_create_row(session, tenant_id, kind, now)
                result = await session.execute(
                    update(QuotaRow)
                    .where(
                        QuotaRow.tenant_id == tenant_id,
                        QuotaRow.media_kind == kind,
                        QuotaRow.period_start == period_start,
                        or_(QuotaRow.limit == 0, QuotaRow.usage < QuotaRow.limit),
                    )
                    .values(usage=QuotaRow.usage + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as exc:
            if not is_missing_table_error(exc):
                raise
            logger.warning("quota_table_missing tenant_id=%s kind=%s op=increment", tenant_id, kind)
            return _unlimited(tenant_id, kind)
        if result.rowcount == 0:
            raise QuotaExceededError(
                f"Upload quota exceeded for {kind} this month",
                details={"tenant_id": tenant_id, "media_kind": kind},
            )
        row = await _select_row(session, tenant_id, kind, period_start)
        if row is not None:
            await session.refresh(row)
            return _snapshot(row)
        return _unlimited(tenant_id, kind)

    async def list_rows(self, session: AsyncSession, *, tenant_id: int) -> list[QuotaSnapshot]:
        # One snapshot per media kind for the current month (rows are created lazily).
        return [await self.check(session, tenant_id=tenant_id, kind=kind) for kind in MEDIA_KINDS]

    async def set_limit(self, session: AsyncSession, *, tenant_id: int, kind: str, limit: int) -> tuple[QuotaSnapshot, QuotaSnapshot]:
        # Adjust this month's limit; usage is never rewritten.
        if limit < 0:
            raise ValidationError("Quota limit must be >= 0")
        _validate_kind(kind)
        row = await _get_or_create_row(session, tenant_id, kind, self.now())
        before = _snapshot(row)
        row.limit = limit
        row.updated_at = self.now()
        await session.flush()
        return before, _snapshot(row)


_quota_service: QuotaService | None = None


def get_quota_service() -> QuotaService:
    global _quota_service
    if _quota_service is None:
        _quota_service = QuotaService()
    return _quota_service


def reset_quota_service() -> None:
    global _quota_service
    _quota_service = None


def serialize_quota(snapshot: QuotaSnapshot) -> dict[str, Any]:
    return {
        "tenant_id": snapshot.tenant_id,
        "media_kind": snapshot.media_kind,
        "limit": snapshot.limit,
        "usage": snapshot.usage,
        "remaining": snapshot.remaining,
        "unlimited": snapshot.unlimited,
        "period_start": snapshot.period_start.isoformat() if snapshot.period_start else None,
        "period_end": snapshot.period_end.isoformat() if snapshot.period_end else None,
    }


async def tenant_quotas(
    session: AsyncSession,
    principal: Principal | None,
    tenant: int | str | None,
    *,
    quota: QuotaService | None = None,
) -> list[QuotaSnapshot]:
    principal = enforce(principal, "manage_quota")
    resolved = await resolve_tenant(session, tenant if tenant not in (None, "") else principal.tenant_id)
    snapshots = await (quota or get_quota_service()).list_rows(session, tenant_id=resolved.id)
    # Lazily created rows are worth keeping.
    await session.commit()
    return snapshots


async def update_quota_limit(
    session: AsyncSession,
    principal: Principal | None,
    *,
    tenant: int | str | None,
    kind: str,
    limit: int,
    quota: QuotaService | None = None,
    context: RequestContext | None = None,
) -> QuotaSnapshot:
    principal = enforce(principal, "manage_quota")
    resolved = await resolve_tenant(session, tenant if tenant not in (None, "") else principal.tenant_id)
    before, after = await (quota or get_quota_service()).set_limit(
        session, tenant_id=resolved.id, kind=kind, limit=limit
    )
    await log_action(
        session,
        actor_id=principal.id,
        action_type="quota_update",
        target_type="quota",
        target_id=f"{resolved.id}:{kind}",
        detail=f"Limit changed from {before.limit} to {after.limit}",
        before=serialize_quota(before),
        after=serialize_quota(after),
        context=context,
    )
    await session.commit()
    logger.info("quota_limit_updated tenant_id=%s kind=%s limit=%s", resolved.id, kind, after.limit)
    return after

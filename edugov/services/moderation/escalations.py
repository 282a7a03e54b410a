from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.errors import AlreadyProcessedError, NotFoundError, ValidationError
from edugov.domain.models import Escalation, ModeratedItem, utc_now
from edugov.domain.state import PRIORITY_ORDER, EscalationOutcome, EscalationPriority, values_of
from edugov.persistence.guards import rows_or_empty
from edugov.services import outbox
from edugov.services.audit import RequestContext, log_action
from edugov.services.authz import Principal, enforce
from edugov.services.notifications import mark_related_read


logger = logging.getLogger(__name__)

_OUTCOME_STATUS = {
    "approve": "approved",
    "reject": "rejected",
}
assert set(_OUTCOME_STATUS) == values_of(EscalationOutcome)


def serialize_escalation(escalation: Escalation) -> dict[str, Any]:
    return {
        "id": escalation.id,
        "moderated_item_id": escalation.moderated_item_id,
        "priority": escalation.priority,
        "status": escalation.status,
        "reason": escalation.reason,
        "escalated_by": escalation.escalated_by,
        "resolution": escalation.resolution,
        "reviewer_id": escalation.reviewer_id,
        "created_at": escalation.created_at.isoformat() if escalation.created_at else None,
        "resolved_at": escalation.resolved_at.isoformat() if escalation.resolved_at else None,
    }


async def list_escalations(
    session: AsyncSession,
    *,
    status: str | None = "pending",
    priority: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Escalation]:
    # High priority first, then oldest within a priority.
    if priority is not None and priority not in values_of(EscalationPriority):
        raise ValidationError(f"Invalid priority: {priority}")
    stmt = select(Escalation)
    if status:
        stmt = stmt.where(Escalation.status == status)
    if priority:
        stmt = stmt.where(Escalation.priority == priority)
    rank = case(PRIORITY_ORDER, value=Escalation.priority, else_=len(PRIORITY_ORDER))
    stmt = stmt.order_by(rank, Escalation.created_at.asc(), Escalation.id.asc()).offset(offset).limit(limit)
    rows = await rows_or_empty(session, stmt, source="escalations")
    return [row[0] for row in rows]


async def resolve_escalation(
    session: AsyncSession,
    principal: Principal | None,
    escalation_id: int,
    outcome: EscalationOutcome,
    *,
    resolution: str,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Escalation:
    """Close an escalation and settle its source moderation item.

    Both rows change in one transaction; resolving an already resolved
    escalation is a conflict.
    """
    principal = enforce(principal, "resolve_escalation")
    item_status = _OUTCOME_STATUS.get(outcome)
    if item_status is None:
        raise ValidationError(f"Invalid outcome: {outcome}")
    cleaned = (resolution or "").strip()
    if not cleaned:
        raise ValidationError("Resolution text is required")

    escalation = await session.get(Escalation, escalation_id)
    if escalation is None:
        raise NotFoundError("Escalation not found")
    before = serialize_escalation(escalation)
    resolved_at = now or utc_now()
    result = await session.execute(
        update(Escalation)
        .where(Escalation.id == escalation_id, Escalation.status == "pending")
        .values(status="resolved", resolution=cleaned, reviewer_id=principal.id, resolved_at=resolved_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise AlreadyProcessedError("Escalation already resolved")
    await session.refresh(escalation)

    item_result = await session.execute(
        update(ModeratedItem)
        .where(ModeratedItem.id == escalation.moderated_item_id, ModeratedItem.status == "escalated")
        .values(status=item_status, action_taken=item_status, reviewer_id=principal.id, reviewed_at=resolved_at)
        .execution_options(synchronize_session=False)
    )
    if item_result.rowcount == 0:
        logger.warning(
            "escalation_source_not_escalated escalation_id=%s moderated_item_id=%s",
            escalation.id,
            escalation.moderated_item_id,
        )
    await mark_related_read(session, related_type="escalation", related_id=escalation.id, now=resolved_at)

    after = serialize_escalation(escalation)
    after["outcome"] = outcome
    await log_action(
        session,
        actor_id=principal.id,
        action_type="escalation_resolve",
        target_type="escalation",
        target_id=escalation.id,
        detail=cleaned,
        before=before,
        after=after,
        context=context,
    )
    await outbox.enqueue(
        session,
        kind="escalation",
        subject_id=escalation.escalated_by or principal.id,
        payload={"escalation_id": escalation.id, "outcome": outcome, "moderated_item_id": escalation.moderated_item_id},
    )
    await session.commit()
    logger.info("escalation_resolved escalation_id=%s outcome=%s", escalation.id, outcome)
    return escalation

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import re
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.config import get_settings
from edugov.core.errors import AlreadyProcessedError, NotFoundError, ValidationError
from edugov.domain.models import Escalation, ModeratedItem, utc_now
from edugov.domain.state import ModerationAction, values_of
from edugov.persistence.guards import rows_or_empty, scalar_or_default
from edugov.services.audit import RequestContext, log_action
from edugov.services.authz import Principal, enforce
from edugov.services import outbox
from edugov.services.moderation.targets import TargetRef, load_target, target_author_id, targets_content
from edugov.services.notifications import notify_admins


logger = logging.getLogger(__name__)

SENSITIVE_TOPICS = (
    "controversy", "heresy", "schism", "political", "ecumenical",
    "protestant", "catholic", "islam", "jewish", "other faiths",
    "social issues", "modern society", "traditional vs modern",
    "abortion", "contraception", "gender", "sexuality",
    "violence", "war", "death penalty", "euthanasia",
    "divorce", "remarriage", "priesthood", "celibacy",
)
PROBLEMATIC_PHRASES = (
    "what about", "why not", "is it wrong", "is it sin",
    "compare to", "different from", "orthodox view on",
    "versus", "vs", "against", "contradict",
    "better than", "worse than", "superior to",
)
ALIGNED_TOPICS = (
    "abune", "liqawint", "tabot", "qesoch", "debrezeit",
    "ethiopian orthodox", "tewahedo", "geez", "fidel",
    "kidane mehret", "trinity", "incarnation",
    "eucharist", "baptism", "prayer", "fasting",
    "liturgy", "scripture", "bible", "old testament",
    "new testament", "apostles", "saints", "martyrs",
    "commandments", "ten commandments", "love", "mercy",
    "repentance", "salvation", "heaven", "hell",
    "angels", "demons", "satan", "creation",
)
_QUESTION_WORDS = ("why", "how", "what", "when", "where", "who")
MAX_CONTENT_CHARS = 10_000


@dataclass(frozen=True)
class ContentScore:
    score: int
    flags: list[str] = field(default_factory=list)

    @property
    def needs_review(self) -> bool:
        return bool(self.flags) or self.score < 1

    @property
    def is_aligned(self) -> bool:
        return self.score >= 2


def _contains(text: str, term: str) -> bool:
    # Whole-word match so "war" does not fire on "toward".
    return re.search(rf"\b{re.escape(term)}\b", text) is not None


def _slug(term: str) -> str:
    return re.sub(r"\s+", "_", term)


def score_content(text: str) -> ContentScore:
    """Keyword scoring used to route text into the AI review queue.

    The score counts faith-aligned topics; sensitive topics and problematic
    phrases become detected flags.
    """
    lowered = text.lower()
    flags = [f"sensitive_topic_{_slug(topic)}" for topic in SENSITIVE_TOPICS if _contains(lowered, topic)]
    flags.extend(
        f"problematic_phrase_{_slug(phrase)}" for phrase in PROBLEMATIC_PHRASES if _contains(lowered, phrase)
    )
    score = sum(1 for topic in ALIGNED_TOPICS if _contains(lowered, topic))
    if len(text.split()) < 3:
        flags.append("too_short")
    question_words = [word for word in _QUESTION_WORDS if _contains(lowered, word)]
    if len(question_words) > 2 and score < 2:
        flags.append("potentially_off_topic")
    return ContentScore(score=score, flags=flags)


def priority_for_score(score: int) -> str:
    settings = get_settings()
    if score >= settings.escalation_high_score:
        return "high"
    if score >= settings.escalation_medium_score:
        return "medium"
    return "low"


def serialize_item(item: ModeratedItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "content_type": item.content_type,
        "content_id": item.content_id,
        "tenant_id": item.tenant_id,
        "content_text": item.content_text,
        "score": item.score,
        "detected_flags": list(item.detected_flags or []),
        "status": item.status,
        "reviewer_id": item.reviewer_id,
        "notes": item.notes,
        "action_taken": item.action_taken,
        "created_at": item.created_at.isoformat() if item.created_at else None,
        "reviewed_at": item.reviewed_at.isoformat() if item.reviewed_at else None,
    }


async def submit_for_review(
    session: AsyncSession,
    principal: Principal | None,
    *,
    content_type: str,
    text: str,
    content_id: int | None = None,
    tenant_id: int | None = None,
) -> tuple[ContentScore, ModeratedItem | None]:
    # Only content that needs a human look is queued.
    principal = enforce(principal, "submit_ai_review")
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValidationError("Content text is required")
    if len(cleaned) > MAX_CONTENT_CHARS:
        raise ValidationError(f"Content text must be at most {MAX_CONTENT_CHARS} characters")
    if not (content_type or "").strip():
        raise ValidationError("Content type is required")
    result = score_content(cleaned)
    if not result.needs_review:
        logger.info("ai_review_skipped content_type=%s score=%s", content_type, result.score)
        return result, None
    item = ModeratedItem(
        content_type=content_type.strip(),
        content_id=content_id,
        tenant_id=tenant_id if tenant_id is not None else principal.tenant_id,
        content_text=cleaned,
        score=result.score,
        detected_flags=result.flags,
        status="pending",
    )
    session.add(item)
    await session.commit()
    logger.info("ai_review_queued item_id=%s score=%s flags=%s", item.id, item.score, len(result.flags))
    return result, item


@dataclass(frozen=True)
class ItemResolution:
    status: str
    action_taken: str


_REQUESTED_STATUS = {
    "approve": "approved",
    "reject": "rejected",
    "escalate": "escalated",
}
assert set(_REQUESTED_STATUS) == values_of(ModerationAction)


async def _escalate(
    session: AsyncSession, item: ModeratedItem, principal: Principal, notes: str | None, now: datetime
) -> Escalation:
    escalation = Escalation(
        moderated_item_id=item.id,
        priority=priority_for_score(item.score),
        status="pending",
        reason=notes,
        escalated_by=principal.id,
        created_at=now,
    )
    session.add(escalation)
    await session.flush()
    await notify_admins(
        session,
        kind="escalation",
        message=f"Moderation item {item.id} escalated ({escalation.priority} priority)",
        related_type="escalation",
        related_id=escalation.id,
        tenant_id=item.tenant_id,
        payload={"moderated_item_id": item.id, "priority": escalation.priority},
    )
    return escalation


async def review_item(
    session: AsyncSession,
    principal: Principal | None,
    item_id: int,
    action: ModerationAction,
    *,
    notes: str | None = None,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> tuple[ModeratedItem, Escalation | None]:
    """Approve, reject or escalate a pending AI-scored item.

    When the item points at content that no longer exists it closes with its
    requested terminal status and ``no_op``; an escalation of such an item
    closes as rejected and creates no Escalation row.
    """
    principal = enforce(principal, "review_ai")
    requested = _REQUESTED_STATUS.get(action)
    if requested is None:
        raise ValidationError(f"Invalid action: {action}")
    cleaned_notes = (notes or "").strip() or None

    item = await session.get(ModeratedItem, item_id)
    if item is None:
        raise NotFoundError("Moderation item not found")
    if item.status != "pending":
        raise AlreadyProcessedError("Moderation item already processed", details={"status": item.status})
    before = serialize_item(item)

    target = None
    target_missing = False
    if item.content_id is not None and targets_content(item.content_type):
        target = await load_target(session, TargetRef(item.content_type, item.content_id))
        target_missing = target is None
    if target_missing:
        resolution = ItemResolution(status="rejected" if requested == "escalated" else requested, action_taken="no_op")
    else:
        resolution = ItemResolution(status=requested, action_taken=requested)

    reviewed_at = now or utc_now()
    result = await session.execute(
        update(ModeratedItem)
        .where(ModeratedItem.id == item_id, ModeratedItem.status == "pending")
        .values(
            status=resolution.status,
            action_taken=resolution.action_taken,
            reviewer_id=principal.id,
            notes=cleaned_notes,
            reviewed_at=reviewed_at,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise AlreadyProcessedError("Moderation item already processed")
    await session.refresh(item)

    escalation = None
    if resolution.status == "escalated":
        escalation = await _escalate(session, item, principal, cleaned_notes, reviewed_at)
    after = serialize_item(item)
    if escalation is not None:
        after["escalation_id"] = escalation.id
        after["priority"] = escalation.priority
    await log_action(
        session,
        actor_id=principal.id,
        action_type="ai_moderation",
        target_type="moderated_item",
        target_id=item.id,
        detail=f"AI moderation item {resolution.action_taken}",
        before=before,
        after=after,
        context=context,
    )
    # The content author hears about the outcome; orphaned items notify the reviewer.
    subject_id = (target_author_id(target) if target is not None else None) or principal.id
    await outbox.enqueue(
        session,
        kind="moderation",
        subject_id=subject_id,
        payload={"moderated_item_id": item.id, "status": item.status, "action_taken": item.action_taken},
    )
    await session.commit()
    logger.info(
        "ai_item_reviewed item_id=%s action=%s status=%s outcome=%s",
        item.id,
        action,
        resolution.status,
        resolution.action_taken,
    )
    return item, escalation


async def list_items(
    session: AsyncSession,
    *,
    status: str | None = "pending",
    offset: int = 0,
    limit: int = 50,
) -> list[ModeratedItem]:
    stmt = select(ModeratedItem)
    if status:
        stmt = stmt.where(ModeratedItem.status == status)
    stmt = stmt.order_by(ModeratedItem.created_at.asc(), ModeratedItem.id.asc()).offset(offset).limit(limit)
    rows = await rows_or_empty(session, stmt, source="moderated_items")
    return [row[0] for row in rows]


async def moderation_stats(session: AsyncSession) -> dict[str, Any]:
    by_status = await rows_or_empty(
        session,
        select(ModeratedItem.status, func.count()).group_by(ModeratedItem.status),
        source="moderated_items",
    )
    avg_score = await scalar_or_default(
        session, select(func.avg(ModeratedItem.score)), default=None, source="moderated_items"
    )
    counts = {str(status): int(count) for status, count in by_status}
    return {
        "by_status": counts,
        "total": sum(counts.values()),
        "avg_score": float(avg_score) if avg_score is not None else None,
    }

from __future__ import annotations

from typing import Literal, get_args


Role = Literal["member", "instructor", "admin"]
MediaKind = Literal["video", "document", "image", "other"]

UploadStatus = Literal["pending", "approved", "rejected", "failed"]
UploadDecision = Literal["approve", "reject"]

FlagStatus = Literal["pending", "dismissed", "action_taken"]
FlagAction = Literal["dismiss", "remove", "warn"]
FlagOutcome = Literal["dismissed", "removed", "warned", "no_op"]
FlagTargetType = Literal["forum_post", "resource"]

ModerationStatus = Literal["pending", "approved", "rejected", "escalated"]
ModerationAction = Literal["approve", "reject", "escalate"]
ModerationOutcome = Literal["approved", "rejected", "escalated", "no_op"]

EscalationPriority = Literal["low", "medium", "high"]
EscalationStatus = Literal["pending", "resolved"]
EscalationOutcome = Literal["approve", "reject"]

BanTargetType = Literal["user", "post"]
EditableContentType = Literal["upload", "forum_post", "resource", "course"]

ApplicationStatus = Literal["pending", "approved", "rejected"]
ApplicationDecision = Literal["approve", "reject"]

OutboxStatus = Literal["pending", "delivered", "failed"]
AnomalySeverity = Literal["low", "medium", "high"]
RetentionTimeframe = Literal["7days", "30days", "90days"]
ExportDataset = Literal["uploads", "flags", "audit"]

SnapshotKind = Literal["daily", "weekly"]


ROLES: tuple[str, ...] = get_args(Role)
MEDIA_KINDS: tuple[str, ...] = get_args(MediaKind)
TERMINAL_UPLOAD_STATUSES = frozenset({"approved", "rejected"})
TERMINAL_MODERATION_STATUSES = frozenset({"approved", "rejected"})
PRIORITY_ORDER: dict[str, int] = {"high": 0, "medium": 1, "low": 2}


def values_of(alias: object) -> frozenset[str]:
    # Expose Literal members for runtime validation and dispatch-table checks.
    return frozenset(get_args(alias))

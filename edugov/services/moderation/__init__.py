from __future__ import annotations

# Re-export moderation services for centralized imports.

from edugov.services.moderation.ai_review import (
    ContentScore,
    list_items,
    moderation_stats,
    review_item,
    score_content,
    submit_for_review,
)
from edugov.services.moderation.enforcement import (
    ban_post,
    ban_user,
    edit_content,
    expire_bans,
    list_bans,
    unban_post,
    unban_user,
)
from edugov.services.moderation.escalations import list_escalations, resolve_escalation
from edugov.services.moderation.flags import create_flag, flag_stats, list_flags, review_flag
from edugov.services.moderation.review import list_uploads, review_upload

__all__ = [
    "ContentScore",
    "ban_post",
    "ban_user",
    "create_flag",
    "edit_content",
    "expire_bans",
    "flag_stats",
    "list_bans",
    "list_escalations",
    "list_flags",
    "list_items",
    "list_uploads",
    "moderation_stats",
    "resolve_escalation",
    "review_flag",
    "review_item",
    "review_upload",
    "score_content",
    "submit_for_review",
    "unban_post",
    "unban_user",
]

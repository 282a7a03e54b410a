from __future__ import annotations

from edugov.domain.state import ROLES


# Role names used by the identity facade and older token issuers.
_ROLE_ALIASES: dict[str, str] = {
    "student": "member",
    "learner": "member",
    "teacher": "instructor",
    "chapter_admin": "admin",
    "platform_admin": "admin",
    "super_admin": "admin",
    "admin_user": "admin",
}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    normalized = _ROLE_ALIASES.get(normalized, normalized)
    if normalized not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict

from edugov.core.errors import ForbiddenError, UnauthenticatedError


logger = logging.getLogger(__name__)


Action = Literal[
    "read_own",
    "read_tenant",
    "file_flag",
    "apply_instructor",
    "submit_upload",
    "review_upload",
    "retry_upload",
    "review_flag",
    "submit_ai_review",
    "review_ai",
    "resolve_escalation",
    "edit_content",
    "ban_user",
    "ban_post",
    "manage_users",
    "change_role",
    "deactivate_user",
    "review_application",
    "manage_quota",
    "view_analytics",
    "view_audit",
    "export_data",
]

_MEMBER_ACTIONS = frozenset({"read_own", "file_flag", "apply_instructor"})
_INSTRUCTOR_ACTIONS = _MEMBER_ACTIONS | {"read_tenant", "submit_upload"}

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "member": _MEMBER_ACTIONS,
    "instructor": _INSTRUCTOR_ACTIONS,
}

# Actions a principal may never perform on itself, whatever its role.
SELF_TARGET_ACTIONS = frozenset({"change_role", "deactivate_user", "ban_user"})


class Principal(BaseModel):
    # Authenticated identity handed to the core by the identity facade.
    model_config = ConfigDict(frozen=True)

    id: str
    role: str
    tenant_id: int | None = None
    auth_method: str = "session"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class AuthzTarget:
    tenant_id: int | None = None
    principal_id: str | None = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None


def decide(principal: Principal | None, action: Action, target: AuthzTarget | None = None) -> Decision:
    """Single authorization decision shared by every handler.

    Checks run in a fixed order: authentication, self-targeting, the role
    matrix, then tenant scope for non-admins.
    """
    if principal is None:
        return Decision(False, "unauthenticated")
    if (
        target is not None
        and action in SELF_TARGET_ACTIONS
        and target.principal_id is not None
        and target.principal_id == principal.id
    ):
        return Decision(False, "self_target")
    if principal.role == "admin":
        return Decision(True)
    allowed = ROLE_PERMISSIONS.get(principal.role, frozenset())
    if action not in allowed:
        return Decision(False, "role")
    if target is not None and target.tenant_id is not None and target.tenant_id != principal.tenant_id:
        return Decision(False, "tenant_mismatch")
    return Decision(True)


_DENY_MESSAGES = {
    "self_target": "You cannot perform this action on your own account",
    "role": "Insufficient role for this action",
    "tenant_mismatch": "Action not permitted outside your tenant",
}


def enforce(principal: Principal | None, action: Action, target: AuthzTarget | None = None) -> Principal:
    # Raise the taxonomy error matching the decision so handlers stay linear.
    decision = decide(principal, action, target)
    if decision.allowed:
        return principal  # type: ignore[return-value]
    logger.info(
        "authz_denied action=%s reason=%s principal_id=%s",
        action,
        decision.reason,
        principal.id if principal else None,
    )
    if decision.reason == "unauthenticated":
        raise UnauthenticatedError("Authentication required")
    raise ForbiddenError(
        _DENY_MESSAGES.get(decision.reason or "", "Forbidden"),
        details={"reason": decision.reason, "action": action},
    )

from __future__ import annotations

import pytest

from edugov.core.errors import ForbiddenError, UnauthenticatedError
from edugov.services.auth.roles import normalize_role
from edugov.services.authz import AuthzTarget, Principal, decide, enforce


def _principal(role: str, *, tenant_id: int | None = 1, user_id: str = "u1") -> Principal:
    return Principal(id=user_id, role=role, tenant_id=tenant_id)


def test_unauthenticated_is_denied() -> None:
    decision = decide(None, "read_own")
    assert not decision.allowed
    assert decision.reason == "unauthenticated"
    with pytest.raises(UnauthenticatedError):
        enforce(None, "read_own")


def test_member_role_matrix() -> None:
    member = _principal("member")
    assert decide(member, "read_own").allowed
    assert decide(member, "file_flag").allowed
    assert decide(member, "apply_instructor").allowed
    denied = decide(member, "submit_upload")
    assert not denied.allowed
    assert denied.reason == "role"


def test_instructor_can_upload_within_own_tenant_only() -> None:
    instructor = _principal("instructor", tenant_id=3)
    assert decide(instructor, "submit_upload", AuthzTarget(tenant_id=3)).allowed
    mismatch = decide(instructor, "submit_upload", AuthzTarget(tenant_id=4))
    assert mismatch.reason == "tenant_mismatch"
    assert not decide(instructor, "review_upload").allowed


def test_admin_is_allowed_everything_but_self_targets() -> None:
    admin = _principal("admin", tenant_id=None, user_id="admin-1")
    assert decide(admin, "review_upload").allowed
    assert decide(admin, "submit_upload", AuthzTarget(tenant_id=99)).allowed
    for action in ("change_role", "deactivate_user", "ban_user"):
        decision = decide(admin, action, AuthzTarget(principal_id="admin-1"))
        assert decision.reason == "self_target"
    assert decide(admin, "ban_user", AuthzTarget(principal_id="someone-else")).allowed


def test_enforce_raises_forbidden_with_reason() -> None:
    with pytest.raises(ForbiddenError) as excinfo:
        enforce(_principal("member"), "view_audit")
    assert excinfo.value.status_code == 403
    assert excinfo.value.details == {"reason": "role", "action": "view_audit"}


def test_legacy_role_names_are_normalized() -> None:
    assert normalize_role("Student") == "member"
    assert normalize_role("teacher") == "instructor"
    assert normalize_role("chapter_admin") == "admin"
    with pytest.raises(ValueError):
        normalize_role("owner")

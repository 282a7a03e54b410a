from __future__ import annotations

from edugov.services.auth.tokens import issue_session_token
from edugov.services.authz import Principal


def principal_for(user_id: str, role: str, tenant_id: int | None = None) -> Principal:
    return Principal(id=user_id, role=role, tenant_id=tenant_id)


def auth_headers(user_id: str, role: str, tenant_id: int | None = None) -> dict[str, str]:
    # Session tokens signed with the test secret set in conftest.
    token = issue_session_token(subject_id=user_id, role=role, tenant_id=tenant_id)
    return {"Authorization": f"Bearer {token}"}

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from edugov.core.config import Settings, get_settings
from edugov.services.auth.roles import normalize_role


@dataclass(frozen=True)
class SessionClaims:
    subject_id: str
    role: str
    tenant_id: int | None


def issue_session_token(
    *,
    subject_id: str,
    role: str,
    tenant_id: int | None,
    settings: Settings | None = None,
    ttl_s: int | None = None,
    now: datetime | None = None,
) -> str:
    # Mint HS256 session tokens for scripts and tests; production tokens come from the identity facade.
    resolved = settings or get_settings()
    issued_at = now or datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": subject_id,
        "role": normalize_role(role),
        "tenant_id": tenant_id,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=ttl_s or resolved.session_ttl_s)).timestamp()),
    }
    if resolved.session_issuer:
        claims["iss"] = resolved.session_issuer
    return jwt.encode(claims, resolved.resolved_session_secret(), algorithm=resolved.session_algorithm)


def decode_session_token(token: str, *, settings: Settings | None = None) -> SessionClaims:
    # Validate signature, expiry and optional issuer; raise ValueError on any mismatch.
    resolved = settings or get_settings()
    options = {"require": ["sub", "exp"]}
    try:
        claims = jwt.decode(
            token,
            resolved.resolved_session_secret(),
            algorithms=[resolved.session_algorithm],
            issuer=resolved.session_issuer,
            options=options,
        )
    except jwt.PyJWTError as exc:
        raise ValueError(f"Invalid session token: {exc}") from exc
    raw_tenant = claims.get("tenant_id")
    try:
        tenant_id = int(raw_tenant) if raw_tenant is not None else None
    except (TypeError, ValueError) as exc:
        raise ValueError("Invalid tenant claim") from exc
    return SessionClaims(
        subject_id=str(claims["sub"]),
        role=normalize_role(str(claims.get("role") or "member")),
        tenant_id=tenant_id,
    )

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.errors import ValidationError
from edugov.domain.models import Tenant, TenantAlias


logger = logging.getLogger(__name__)


def _as_tenant_id(ref: int | str) -> int | None:
    if isinstance(ref, bool):
        return None
    if isinstance(ref, int):
        return ref
    stripped = ref.strip()
    if stripped.isdigit():
        return int(stripped)
    return None


async def resolve_tenant(session: AsyncSession, ref: int | str | None) -> Tenant:
    """Resolve a tenant reference to one active tenant.

    Accepts a numeric id or a display name. Names resolve by exact match,
    then case-insensitive match, then the alias table. Anything unresolved is
    a validation error.
    """
    if ref is None or (isinstance(ref, str) and not ref.strip()):
        raise ValidationError("Tenant is required")

    tenant_id = _as_tenant_id(ref)
    if tenant_id is not None:
        tenant = await session.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            raise ValidationError(f"Unknown tenant: {ref}")
        return tenant

    name = str(ref).strip()
    exact = (
        await session.execute(select(Tenant).where(Tenant.name == name, Tenant.is_active.is_(True)))
    ).scalar_one_or_none()
    if exact is not None:
        return exact

    folded = (
        await session.execute(
            select(Tenant).where(func.lower(Tenant.name) == name.lower(), Tenant.is_active.is_(True))
        )
    ).scalars().all()
    if len(folded) == 1:
        return folded[0]
    if len(folded) > 1:
        raise ValidationError(f"Ambiguous tenant name: {ref}")

    aliased = (
        await session.execute(
            select(Tenant)
            .join(TenantAlias, TenantAlias.tenant_id == Tenant.id)
            .where(TenantAlias.alias == name.lower(), Tenant.is_active.is_(True))
        )
    ).scalar_one_or_none()
    if aliased is not None:
        logger.debug("tenant_resolved_by_alias alias=%s tenant_id=%s", name, aliased.id)
        return aliased
    raise ValidationError(f"Unknown tenant: {ref}")

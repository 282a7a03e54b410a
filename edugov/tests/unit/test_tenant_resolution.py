from __future__ import annotations

import pytest

from edugov.core.errors import ValidationError
from edugov.services.tenants import resolve_tenant
from edugov.tests.utils.seed import create_tenant


@pytest.mark.asyncio
async def test_tenant_resolves_by_id_name_and_alias(database) -> None:
    tenant_id = await create_tenant(database, "Toronto", aliases=("Toronto Chapter", "yyz"))
    await create_tenant(database, "Ottawa")

    async with database.session() as session:
        assert (await resolve_tenant(session, tenant_id)).id == tenant_id
        assert (await resolve_tenant(session, str(tenant_id))).id == tenant_id
        assert (await resolve_tenant(session, "Toronto")).id == tenant_id
        assert (await resolve_tenant(session, "  toronto ")).id == tenant_id
        assert (await resolve_tenant(session, "YYZ")).id == tenant_id
        assert (await resolve_tenant(session, "toronto chapter")).id == tenant_id


@pytest.mark.asyncio
@pytest.mark.parametrize("ref", [None, "", "Montreal", 9999])
async def test_unresolved_tenant_is_a_validation_error(database, ref) -> None:
    await create_tenant(database, "Toronto")
    with pytest.raises(ValidationError):
        async with database.session() as session:
            await resolve_tenant(session, ref)

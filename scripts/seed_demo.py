from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

from sqlalchemy import select

from edugov.domain.models import Tenant, TenantAlias, User
from edugov.persistence.db import Database
from edugov.services.auth.passwords import hash_password


DEMO_PASSWORD = "demo-password"


@dataclass(frozen=True)
class DemoPrincipal:
    # Fixed ids keep the seed idempotent and make tokens easy to mint.
    id: str
    first_name: str
    last_name: str
    email: str
    role: str
    tenant_name: str | None


DEMO_TENANTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Toronto", ("yyz", "toronto chapter")),
    ("Ottawa", ("yow",)),
)

DEMO_PRINCIPALS: tuple[DemoPrincipal, ...] = (
    DemoPrincipal("demo-admin", "Ada", "Admin", "admin@example.org", "admin", None),
    DemoPrincipal("demo-instructor", "Ines", "Instructor", "instructor@example.org", "instructor", "Toronto"),
    DemoPrincipal("demo-member", "Max", "Member", "member@example.org", "member", "Toronto"),
)


async def _tenant(session, name: str, aliases: tuple[str, ...]) -> Tenant:
    tenant = (await session.execute(select(Tenant).where(Tenant.name == name))).scalar_one_or_none()
    if tenant is None:
        tenant = Tenant(name=name, is_active=True)
        session.add(tenant)
        await session.flush()
    for alias in aliases:
        existing = (await session.execute(select(TenantAlias).where(TenantAlias.alias == alias))).scalar_one_or_none()
        if existing is None:
            session.add(TenantAlias(alias=alias, tenant_id=tenant.id))
    return tenant


async def seed_demo() -> int:
    database = Database()
    try:
        await database.create_all()
        async with database.session() as session:
            tenants = {name: await _tenant(session, name, aliases) for name, aliases in DEMO_TENANTS}
            created = 0
            for principal in DEMO_PRINCIPALS:
                if await session.get(User, principal.id) is not None:
                    continue
                session.add(
                    User(
                        id=principal.id,
                        first_name=principal.first_name,
                        last_name=principal.last_name,
                        email=principal.email,
                        password_hash=hash_password(DEMO_PASSWORD),
                        role=principal.role,
                        tenant_id=tenants[principal.tenant_name].id if principal.tenant_name else None,
                        is_active=True,
                    )
                )
                created += 1
            await session.commit()
            for name, tenant in tenants.items():
                print(f"tenant {name}: id={tenant.id}")
        print(f"Seeded {created} demo principals.")
        return 0
    finally:
        await database.dispose()


def main() -> int:
    # Surface clear failures and exit non-zero so dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

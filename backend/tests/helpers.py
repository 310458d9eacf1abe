"""Shared test helpers (imported by conftest and test modules)."""
from datetime import datetime, timedelta, timezone

from rolecore.permissions.entities import Actor
from rolecore.permissions.flags import Permission
from rolecore.permissions.schemas import RoleCreate
from rolecore.permissions.service import RoleService

OWNER_ID = 1


class FakeClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


async def create_role(service: RoleService, tenant_id: int, name: str, *permissions: Permission, **fields):
    """Create a role as the tenant owner."""
    data = RoleCreate(name=name, permissions=[p.name for p in permissions], **fields)
    return await service.create_role(Actor.user(OWNER_ID), tenant_id, data)


async def add_member(service: RoleService, tenant_id: int, user_id: int, *role_ids: int):
    """Join a user to the tenant and give them `role_ids` as the owner."""
    await service.member_joined(tenant_id, user_id)
    for role_id in role_ids:
        await service.assign_role(OWNER_ID, tenant_id, user_id, role_id)

import os
from dataclasses import dataclass

import pytest

# Default DATABASE_URL (not used by tests that use the per-fixture engine)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from rolecore.db.database import create_tables, make_engine, make_session_factory
from rolecore.permissions.flags import Permission, PermissionSet
from rolecore.permissions.locks import LocalTenantLocks
from rolecore.permissions.repository import (
    SqlAssignmentRepository,
    SqlMembershipDirectory,
    SqlRoleRepository,
    SqlTenantRepository,
)
from rolecore.permissions.service import RoleService

from helpers import OWNER_ID, FakeClock


@dataclass
class Repos:
    roles: SqlRoleRepository
    assignments: SqlAssignmentRepository
    tenants: SqlTenantRepository
    memberships: SqlMembershipDirectory


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def test_engine(tmp_path):
    # On-disk SQLite per test so concurrent sessions see the same database.
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'rolecore.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return make_session_factory(test_engine)


@pytest.fixture
def repos(session_factory) -> Repos:
    return Repos(
        roles=SqlRoleRepository(session_factory),
        assignments=SqlAssignmentRepository(session_factory),
        tenants=SqlTenantRepository(session_factory),
        memberships=SqlMembershipDirectory(session_factory),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(repos, clock) -> RoleService:
    return RoleService(
        roles=repos.roles,
        assignments=repos.assignments,
        ownership=repos.tenants,
        memberships=repos.memberships,
        locks=LocalTenantLocks(),
        clock=clock,
    )


@pytest.fixture
async def tenant_id(repos, service) -> int:
    """A tenant owned by OWNER_ID whose default role grants VIEW_CHANNEL only."""
    tid = await repos.tenants.create_tenant("Test Tenant", OWNER_ID)
    await service.initialize_tenant(tid, PermissionSet.of(Permission.VIEW_CHANNEL))
    return tid


"""SQLAlchemy (async) implementations of the role engine's repositories.

Each method opens its own short-lived session; methods that change more than
one row do so inside a single transaction.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rolecore.db import models
from .entities import (
    AssignmentAction,
    AssignmentEvent,
    AssignmentSource,
    AutoAssignmentRule,
    AutoTrigger,
    ChannelOverride,
    Membership,
    MemberRoles,
    Role,
    RoleAssignment,
    RoleStatistics,
    TemporaryGrant,
)
from .exceptions import AlreadyAssigned, RoleNotFound, TenantNotFound
from .flags import PermissionSet
from .graph import RoleGraph


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------- mappers ----------------------

def _row_to_role(row: models.Role) -> Role:
    auto = None
    if row.auto_trigger:
        trigger = AutoTrigger(row.auto_trigger)
        auto = AutoAssignmentRule(
            trigger,
            elapsed=timedelta(seconds=row.auto_elapsed_seconds) if trigger == AutoTrigger.after_elapsed else None,
            threshold=row.auto_threshold if trigger == AutoTrigger.activity_threshold else None,
        )
    temporary = None
    if row.temporary_seconds:
        temporary = TemporaryGrant(
            duration=timedelta(seconds=row.temporary_seconds),
            auto_remove=row.temporary_auto_remove,
        )
    return Role(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        position=row.position,
        permissions=PermissionSet(row.permissions),
        color=row.color,
        icon=row.icon,
        unicode_emoji=row.unicode_emoji,
        is_default=row.is_default,
        hoist=row.hoist,
        mentionable=row.mentionable,
        managed=row.managed,
        can_manage_below=row.can_manage_below,
        channel_overrides={
            o.channel_id: ChannelOverride(o.channel_id, PermissionSet(o.allow), PermissionSet(o.deny))
            for o in row.channel_overrides
        },
        auto_assignment=auto,
        temporary=temporary,
        created_at=_as_utc(row.created_at),
    )


def _role_columns(role: Role) -> dict:
    auto = role.auto_assignment
    temporary = role.temporary
    return {
        "name": role.name,
        "color": role.color,
        "icon": role.icon,
        "unicode_emoji": role.unicode_emoji,
        "position": role.position,
        "permissions": role.permissions.value,
        "is_default": role.is_default,
        "hoist": role.hoist,
        "mentionable": role.mentionable,
        "managed": role.managed,
        "can_manage_below": role.can_manage_below,
        "auto_trigger": auto.trigger.value if auto else None,
        "auto_elapsed_seconds": int(auto.elapsed.total_seconds()) if auto and auto.elapsed else None,
        "auto_threshold": auto.threshold if auto else None,
        "temporary_seconds": int(temporary.duration.total_seconds()) if temporary else None,
        "temporary_auto_remove": temporary.auto_remove if temporary else True,
    }


def _row_to_assignment(row: models.MemberRole) -> RoleAssignment:
    return RoleAssignment(
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        role_id=row.role_id,
        assigned_at=_as_utc(row.assigned_at),
        assigned_by=row.assigned_by,
        source=AssignmentSource(row.source),
        expires_at=_as_utc(row.expires_at),
    )


def _row_to_event(row: models.RoleAssignmentEvent) -> AssignmentEvent:
    return AssignmentEvent(
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        role_id=row.role_id,
        action=AssignmentAction(row.action),
        source=AssignmentSource(row.source),
        actor_id=row.actor_id,
        occurred_at=_as_utc(row.occurred_at),
    )


async def _write_positions(session: AsyncSession, tenant_id: int, roles: list[Role]) -> None:
    for role in roles:
        await session.execute(
            update(models.Role)
            .where(models.Role.id == role.id, models.Role.tenant_id == tenant_id)
            .values(position=role.position)
        )


# ---------------------- repositories ----------------------

class SqlRoleRepository:

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def load_graph(self, tenant_id: int) -> RoleGraph:
        async with self._session_factory() as session:
            tenant = await session.get(models.Tenant, tenant_id)
            if tenant is None:
                raise TenantNotFound(tenant_id)
            result = await session.execute(
                select(models.Role)
                .where(models.Role.tenant_id == tenant_id)
                .order_by(models.Role.position)
            )
            return RoleGraph(tenant_id, [_row_to_role(r) for r in result.scalars().all()])

    async def add_role(self, role: Role, shifted: list[Role]) -> Role:
        if role.created_at is None:
            role.created_at = utcnow()
        async with self._session_factory() as session, session.begin():
            await _write_positions(session, role.tenant_id, shifted)
            row = models.Role(tenant_id=role.tenant_id, created_at=role.created_at, **_role_columns(role))
            row.channel_overrides = [
                models.RoleChannelOverride(channel_id=o.channel_id, allow=o.allow.value, deny=o.deny.value)
                for o in role.channel_overrides.values()
            ]
            session.add(row)
            await session.flush()
            role.id = row.id
        return role

    async def update_role(self, role: Role, shifted: Sequence[Role] = ()) -> None:
        async with self._session_factory() as session, session.begin():
            row = await session.get(models.Role, role.id)
            if row is None or row.tenant_id != role.tenant_id:
                raise RoleNotFound(role.id)
            await _write_positions(session, role.tenant_id, [r for r in shifted if r.id != role.id])
            for column, value in _role_columns(role).items():
                setattr(row, column, value)

            # Diff the overrides so the (role, channel) unique key never clashes mid-flush
            existing = {o.channel_id: o for o in row.channel_overrides}
            for channel_id, override_row in existing.items():
                if channel_id not in role.channel_overrides:
                    row.channel_overrides.remove(override_row)
            for channel_id, override in role.channel_overrides.items():
                override_row = existing.get(channel_id)
                if override_row is None:
                    row.channel_overrides.append(
                        models.RoleChannelOverride(
                            channel_id=channel_id, allow=override.allow.value, deny=override.deny.value
                        )
                    )
                else:
                    override_row.allow = override.allow.value
                    override_row.deny = override.deny.value

    async def save_positions(self, tenant_id: int, roles: list[Role]) -> None:
        async with self._session_factory() as session, session.begin():
            await _write_positions(session, tenant_id, roles)

    async def delete_role(
        self, tenant_id: int, role_id: int, shifted: list[Role], actor_id: Optional[int]
    ) -> list[int]:
        now = utcnow()
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                select(models.MemberRole).where(
                    models.MemberRole.tenant_id == tenant_id,
                    models.MemberRole.role_id == role_id,
                )
            )
            holders = result.scalars().all()
            for holder in holders:
                session.add(models.RoleAssignmentEvent(
                    tenant_id=tenant_id,
                    user_id=holder.user_id,
                    role_id=role_id,
                    action=AssignmentAction.cascaded.value,
                    source=holder.source,
                    actor_id=actor_id,
                    occurred_at=now,
                ))
            await session.execute(
                delete(models.MemberRole).where(
                    models.MemberRole.tenant_id == tenant_id,
                    models.MemberRole.role_id == role_id,
                )
            )
            await session.execute(
                delete(models.RoleChannelOverride).where(models.RoleChannelOverride.role_id == role_id)
            )
            await session.execute(
                delete(models.Role).where(models.Role.id == role_id, models.Role.tenant_id == tenant_id)
            )
            await _write_positions(session, tenant_id, shifted)
            return [h.user_id for h in holders]

    async def list_tenant_ids(self) -> list[int]:
        async with self._session_factory() as session:
            result = await session.execute(select(models.Tenant.id).order_by(models.Tenant.id))
            return list(result.scalars().all())


class SqlAssignmentRepository:

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get_member_roles(self, tenant_id: int, user_id: int) -> MemberRoles:
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.MemberRole).where(
                    models.MemberRole.tenant_id == tenant_id,
                    models.MemberRole.user_id == user_id,
                )
            )
            assignments = [_row_to_assignment(r) for r in result.scalars().all()]
        return MemberRoles(tenant_id, user_id, {a.role_id: a for a in assignments})

    async def add(self, assignment: RoleAssignment) -> None:
        async with self._session_factory() as session, session.begin():
            existing = await session.get(
                models.MemberRole,
                {"tenant_id": assignment.tenant_id, "user_id": assignment.user_id, "role_id": assignment.role_id},
            )
            if existing is not None:
                raise AlreadyAssigned(assignment.user_id, assignment.role_id)
            session.add(models.MemberRole(
                tenant_id=assignment.tenant_id,
                user_id=assignment.user_id,
                role_id=assignment.role_id,
                assigned_at=assignment.assigned_at,
                assigned_by=assignment.assigned_by,
                source=assignment.source.value,
                expires_at=assignment.expires_at,
            ))
            session.add(models.RoleAssignmentEvent(
                tenant_id=assignment.tenant_id,
                user_id=assignment.user_id,
                role_id=assignment.role_id,
                action=AssignmentAction.assigned.value,
                source=assignment.source.value,
                actor_id=assignment.assigned_by,
                occurred_at=assignment.assigned_at,
            ))

    async def remove(
        self,
        tenant_id: int,
        user_id: int,
        role_id: int,
        *,
        action: AssignmentAction,
        actor_id: Optional[int],
        source: AssignmentSource = AssignmentSource.manual,
    ) -> bool:
        async with self._session_factory() as session, session.begin():
            row = await session.get(
                models.MemberRole, {"tenant_id": tenant_id, "user_id": user_id, "role_id": role_id}
            )
            if row is None:
                return False
            await session.delete(row)
            session.add(models.RoleAssignmentEvent(
                tenant_id=tenant_id,
                user_id=user_id,
                role_id=role_id,
                action=action.value,
                source=source.value,
                actor_id=actor_id,
                occurred_at=utcnow(),
            ))
            return True

    async def remove_all(self, tenant_id: int, user_id: int, *, actor_id: Optional[int]) -> list[int]:
        now = utcnow()
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                select(models.MemberRole).where(
                    models.MemberRole.tenant_id == tenant_id,
                    models.MemberRole.user_id == user_id,
                )
            )
            rows = result.scalars().all()
            for row in rows:
                await session.delete(row)
                session.add(models.RoleAssignmentEvent(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    role_id=row.role_id,
                    action=AssignmentAction.cascaded.value,
                    source=row.source,
                    actor_id=actor_id,
                    occurred_at=now,
                ))
            return [r.role_id for r in rows]

    async def list_assignments(self, tenant_id: int, role_ids: Optional[list[int]] = None) -> list[RoleAssignment]:
        query = select(models.MemberRole).where(models.MemberRole.tenant_id == tenant_id)
        if role_ids is not None:
            if not role_ids:
                return []
            query = query.where(models.MemberRole.role_id.in_(role_ids))
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(models.MemberRole.assigned_at))
            return [_row_to_assignment(r) for r in result.scalars().all()]

    async def members_with_role(self, tenant_id: int, role_id: int, limit: int) -> list[RoleAssignment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.MemberRole)
                .where(models.MemberRole.tenant_id == tenant_id, models.MemberRole.role_id == role_id)
                .order_by(models.MemberRole.assigned_at.desc())
                .limit(limit)
            )
            return [_row_to_assignment(r) for r in result.scalars().all()]

    async def count_members(self, tenant_id: int, role_id: int) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(models.MemberRole)
                .where(models.MemberRole.tenant_id == tenant_id, models.MemberRole.role_id == role_id)
            )
            return count or 0

    async def auto_granted_since(self, tenant_id: int, user_id: int, role_id: int, since: datetime) -> bool:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(models.RoleAssignmentEvent)
                .where(
                    models.RoleAssignmentEvent.tenant_id == tenant_id,
                    models.RoleAssignmentEvent.user_id == user_id,
                    models.RoleAssignmentEvent.role_id == role_id,
                    models.RoleAssignmentEvent.action == AssignmentAction.assigned.value,
                    models.RoleAssignmentEvent.source == AssignmentSource.auto.value,
                    models.RoleAssignmentEvent.occurred_at >= since,
                )
            )
            return bool(count)

    async def assignment_statistics(self, tenant_id: int) -> dict[int, RoleStatistics]:
        event = models.RoleAssignmentEvent
        async with self._session_factory() as session:
            result = await session.execute(
                select(event.role_id, func.count(), func.max(event.occurred_at))
                .where(event.tenant_id == tenant_id, event.action == AssignmentAction.assigned.value)
                .group_by(event.role_id)
            )
            return {
                role_id: RoleStatistics(assigned_count=count, last_assigned=_as_utc(last))
                for role_id, count, last in result.all()
            }

    async def history(
        self, tenant_id: int, *, user_id: Optional[int] = None, role_id: Optional[int] = None
    ) -> list[AssignmentEvent]:
        query = select(models.RoleAssignmentEvent).where(models.RoleAssignmentEvent.tenant_id == tenant_id)
        if user_id is not None:
            query = query.where(models.RoleAssignmentEvent.user_id == user_id)
        if role_id is not None:
            query = query.where(models.RoleAssignmentEvent.role_id == role_id)
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(models.RoleAssignmentEvent.id))
            return [_row_to_event(r) for r in result.scalars().all()]


class SqlTenantRepository:
    """Tenant rows: ownership lookups and creation."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create_tenant(self, name: str, owner_id: int) -> int:
        async with self._session_factory() as session, session.begin():
            tenant = models.Tenant(name=name, owner_id=owner_id, created_at=utcnow())
            session.add(tenant)
            await session.flush()
            return tenant.id

    async def is_owner(self, user_id: int, tenant_id: int) -> bool:
        async with self._session_factory() as session:
            tenant = await session.get(models.Tenant, tenant_id)
            if tenant is None:
                raise TenantNotFound(tenant_id)
            return tenant.owner_id == user_id


class SqlMembershipDirectory:

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def add_member(self, tenant_id: int, user_id: int, joined_at: datetime) -> tuple[Membership, bool]:
        async with self._session_factory() as session, session.begin():
            row = await session.get(models.TenantMember, {"tenant_id": tenant_id, "user_id": user_id})
            created = row is None
            if created:
                row = models.TenantMember(tenant_id=tenant_id, user_id=user_id, joined_at=joined_at)
                session.add(row)
            return Membership(tenant_id, user_id, _as_utc(row.joined_at)), created

    async def remove_member(self, tenant_id: int, user_id: int) -> bool:
        async with self._session_factory() as session, session.begin():
            row = await session.get(models.TenantMember, {"tenant_id": tenant_id, "user_id": user_id})
            if row is None:
                return False
            await session.delete(row)
            return True

    async def get_membership(self, tenant_id: int, user_id: int) -> Optional[Membership]:
        async with self._session_factory() as session:
            row = await session.get(models.TenantMember, {"tenant_id": tenant_id, "user_id": user_id})
            if row is None:
                return None
            return Membership(tenant_id, user_id, _as_utc(row.joined_at))

    async def list_members(self, tenant_id: int) -> list[Membership]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.TenantMember)
                .where(models.TenantMember.tenant_id == tenant_id)
                .order_by(models.TenantMember.joined_at)
            )
            return [Membership(r.tenant_id, r.user_id, _as_utc(r.joined_at)) for r in result.scalars().all()]

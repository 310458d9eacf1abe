"""
RoleService: the entry point other subsystems call.

Reads (resolve_permissions, can_manage_role, listings) take no lock. Every
mutation runs inside the tenant's mutation scope and re-reads the role graph
after acquiring it, so hierarchy checks always see the latest positions.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from rolecore.core.config import settings
from rolecore.core.logging import log_operation, roles_logger
from .entities import (
    Actor,
    AssignmentAction,
    AssignmentEvent,
    AssignmentSource,
    ChannelOverride,
    Membership,
    Role,
    RoleAssignment,
    RoleStatistics,
)
from .exceptions import (
    AlreadyAssigned,
    DefaultRoleImmutable,
    HierarchyViolation,
    InvalidRoleConfiguration,
    NotAMember,
    NotAssigned,
    PermissionsError,
)
from .flags import DEFAULT_ROLE_PERMISSIONS, Permission, PermissionSet
from .graph import RoleGraph
from .locks import TenantLocks
from .ports import AssignmentRepository, MembershipDirectory, RoleRepository, TenantOwnership
from .repository import utcnow
from .resolver import PermissionResolver, ResolvedPermissions, permission_resolver
from .schemas import RoleCreate, RoleUpdate

ActorLike = Union[Actor, int]


@dataclass
class ActorContext:
    """What the engine knows about an actor inside one tenant."""
    actor: Actor
    is_owner: bool = False
    highest: Optional[Role] = None
    permissions: Optional[ResolvedPermissions] = None


@dataclass(frozen=True)
class RoleSummary:
    role: Role
    member_count: int
    statistics: RoleStatistics = RoleStatistics()


def _as_actor(actor: ActorLike) -> Actor:
    return actor if isinstance(actor, Actor) else Actor.user(actor)


def is_expired(role: Role, assignment: RoleAssignment, now: datetime) -> bool:
    """True when a temporary grant has run its course and should be removed."""
    temporary = role.temporary
    if temporary is None or not temporary.auto_remove:
        return False
    return now >= assignment.assigned_at + temporary.duration


class RoleService:

    def __init__(
        self,
        roles: RoleRepository,
        assignments: AssignmentRepository,
        ownership: TenantOwnership,
        memberships: MembershipDirectory,
        locks: TenantLocks,
        resolver: PermissionResolver = permission_resolver,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.roles = roles
        self.assignments = assignments
        self.ownership = ownership
        self.memberships = memberships
        self.locks = locks
        self.resolver = resolver
        self.clock = clock

    # ---------------------- Resolution ----------------------

    async def resolve_permissions(
        self, user_id: int, tenant_id: int, channel_id: Optional[int] = None
    ) -> ResolvedPermissions:
        """Effective permissions of a user in a tenant, optionally in one channel."""
        if await self.ownership.is_owner(user_id, tenant_id):
            return ResolvedPermissions(PermissionSet.all(), is_owner=True)
        graph = await self.roles.load_graph(tenant_id)
        member = await self.assignments.get_member_roles(tenant_id, user_id)
        return self.resolver.resolve(graph, member.role_ids, channel_id=channel_id)

    async def has_permission(
        self, user_id: int, tenant_id: int, permission: Permission, channel_id: Optional[int] = None
    ) -> bool:
        resolved = await self.resolve_permissions(user_id, tenant_id, channel_id)
        return resolved.has(permission)

    async def can_manage_role(self, acting_user_id: int, tenant_id: int, target_role_id: int) -> bool:
        graph = await self.roles.load_graph(tenant_id)
        target = graph.get(target_role_id)
        ctx = await self._actor_context(Actor.user(acting_user_id), graph)
        try:
            self._check_can_manage(ctx, graph, target)
        except HierarchyViolation:
            return False
        return True

    # ---------------------- Hierarchy checks ----------------------

    async def _actor_context(self, actor: Actor, graph: RoleGraph) -> ActorContext:
        if actor.is_system:
            return ActorContext(actor)
        if await self.ownership.is_owner(actor.user_id, graph.tenant_id):
            return ActorContext(actor, is_owner=True)
        member = await self.assignments.get_member_roles(graph.tenant_id, actor.user_id)
        return ActorContext(
            actor,
            highest=graph.highest_role(member.role_ids),
            permissions=self.resolver.resolve(graph, member.role_ids),
        )

    def _deny(self, ctx: ActorContext, graph: RoleGraph, detail: str, **extra) -> HierarchyViolation:
        roles_logger.info(
            f"[PERMS_DENIED] tenant_id={graph.tenant_id} actor={ctx.actor.user_id} {detail}", **extra
        )
        return HierarchyViolation(detail)

    def _check_manages_roles(self, ctx: ActorContext, graph: RoleGraph) -> None:
        """A member needs MANAGE_ROLES, and a top role that may manage others."""
        if not ctx.permissions.has(Permission.MANAGE_ROLES):
            raise self._deny(ctx, graph, "Missing permission: MANAGE_ROLES")
        if not ctx.highest.can_manage_below:
            raise self._deny(
                ctx, graph, f"Role {ctx.highest.name} is not allowed to manage other roles", role_id=ctx.highest.id
            )

    def _check_can_manage(self, ctx: ActorContext, graph: RoleGraph, target: Role) -> None:
        if ctx.is_owner:
            return
        if ctx.actor.is_system:
            rank = graph.automation_rank()
            if rank is None or rank > target.position:
                return
            raise self._deny(
                ctx, graph, f"Automation rank {rank} cannot manage role {target.id}", role_position=target.position
            )
        self._check_manages_roles(ctx, graph)
        if not graph.can_manage(ctx.highest, target):
            raise self._deny(
                ctx,
                graph,
                "Cannot manage roles at or above your hierarchy level",
                role_id=target.id,
                role_position=target.position,
                actor_position=ctx.highest.position,
            )

    def _check_grantable(self, ctx: ActorContext, graph: RoleGraph, permissions: PermissionSet) -> None:
        """Members can only hand out flags they hold themselves."""
        if ctx.is_owner or ctx.actor.is_system:
            return
        if not ctx.permissions.has_all(permissions):
            missing = permissions - ctx.permissions.permissions
            raise self._deny(ctx, graph, f"Cannot grant permissions you do not have: {', '.join(missing.names())}")

    def _check_position_below_actor(
        self, ctx: ActorContext, graph: RoleGraph, position: int, *, inserting: bool = False
    ) -> None:
        """Members may only place roles strictly below their own highest role.

        Inserting at the actor's own position is allowed: it pushes the actor's role up by one.
        """
        if ctx.is_owner or ctx.actor.is_system:
            return
        limit = ctx.highest.position + 1 if inserting else ctx.highest.position
        if position >= limit:
            raise self._deny(ctx, graph, f"Cannot place a role at or above your own position ({position})")

    # ---------------------- Tenant bootstrap ----------------------

    @log_operation("initialize_tenant", roles_logger)
    async def initialize_tenant(self, tenant_id: int, permissions: Optional[PermissionSet] = None) -> Role:
        """Create the tenant's default role; returns the existing one if present."""
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            existing = [r for r in graph if r.is_default]
            if existing:
                return existing[0]
            role = Role(
                tenant_id=tenant_id,
                name=settings.DEFAULT_ROLE_NAME,
                position=0,
                permissions=permissions if permissions is not None else DEFAULT_ROLE_PERMISSIONS,
                color=settings.DEFAULT_ROLE_COLOR,
                is_default=True,
            )
            graph.insert(role)
            return await self.roles.add_role(role, [])

    # ---------------------- Role CRUD ----------------------

    async def create_role(self, acting_user_id: ActorLike, tenant_id: int, data: RoleCreate) -> Role:
        actor = _as_actor(acting_user_id)
        role = data.to_role(tenant_id)
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            ctx = await self._actor_context(actor, graph)
            if not (ctx.is_owner or actor.is_system):
                self._check_manages_roles(ctx, graph)
            self._check_grantable(ctx, graph, role.permissions)
            for override in role.channel_overrides.values():
                self._check_grantable(ctx, graph, override.allow)
            position = data.position
            if not (ctx.is_owner or actor.is_system):
                # Members without an explicit position get the slot right below their own top role
                if position is None:
                    position = ctx.highest.position
                self._check_position_below_actor(ctx, graph, position, inserting=True)

            shifted = graph.insert(role, position)
            graph.check_invariants()
            role = await self.roles.add_role(role, shifted)

        roles_logger.info(
            f"[Roles] Role {role.id} created in tenant {tenant_id}: {role.name}",
            position=role.position,
            actor=actor.user_id,
        )
        return role

    async def update_role(
        self, acting_user_id: ActorLike, tenant_id: int, role_id: int, data: RoleUpdate
    ) -> Role:
        actor = _as_actor(acting_user_id)
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            target = graph.get(role_id)
            ctx = await self._actor_context(actor, graph)
            self._check_can_manage(ctx, graph, target)

            sent = data.model_fields_set
            if target.is_default:
                if "name" in sent or "hoist" in sent:
                    raise DefaultRoleImmutable("Cannot modify core properties of the default role")
                if data.auto_assignment is not None or data.temporary is not None:
                    raise InvalidRoleConfiguration("The default role is held implicitly and cannot be auto-assigned or temporary")

            updated = data.apply(target)
            if updated.name != target.name:
                graph.ensure_name_available(updated.name, exclude_role_id=target.id)
            if updated.permissions != target.permissions:
                self._check_grantable(ctx, graph, updated.permissions - target.permissions)
            for channel_id, override in updated.channel_overrides.items():
                previous = target.override_for(channel_id)
                newly_allowed = override.allow - previous.allow if previous else override.allow
                self._check_grantable(ctx, graph, newly_allowed)

            shifted: list[Role] = []
            if "position" in sent and data.position is not None and data.position != target.position:
                self._check_position_below_actor(ctx, graph, data.position)
                shifted = graph.reorder(role_id, data.position)
                updated.position = target.position
                graph.check_invariants()

            await self.roles.update_role(updated, shifted)

        roles_logger.info(f"[Roles] Role {role_id} updated in tenant {tenant_id}", fields=sorted(sent))
        return updated

    @log_operation("delete_role", roles_logger, expected=(PermissionsError,))
    async def delete_role(self, acting_user_id: ActorLike, tenant_id: int, role_id: int) -> list[int]:
        """Delete a role, cascading to every member holding it.

        Returns the ids of the users who lost the role.
        """
        actor = _as_actor(acting_user_id)
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            target = graph.get(role_id)
            RoleGraph.ensure_not_default(target, "delete")
            ctx = await self._actor_context(actor, graph)
            self._check_can_manage(ctx, graph, target)

            _, shifted = graph.remove(role_id)
            holders = await self.roles.delete_role(tenant_id, role_id, shifted, actor.user_id)

        roles_logger.info(
            f"[Roles] Role {role_id} deleted from tenant {tenant_id}",
            members_affected=len(holders),
        )
        return holders

    async def reorder_role(
        self, acting_user_id: ActorLike, tenant_id: int, role_id: int, new_position: int
    ) -> list[Role]:
        """Move a role and return the tenant's roles in ascending position order."""
        actor = _as_actor(acting_user_id)
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            target = graph.get(role_id)
            ctx = await self._actor_context(actor, graph)
            if not target.is_default:
                self._check_can_manage(ctx, graph, target)
                self._check_position_below_actor(ctx, graph, new_position)
            shifted = graph.reorder(role_id, new_position)
            if shifted:
                graph.check_invariants()
                await self.roles.save_positions(tenant_id, shifted)
            return graph.ordered()

    async def set_channel_override(
        self,
        acting_user_id: ActorLike,
        tenant_id: int,
        role_id: int,
        channel_id: int,
        allow: PermissionSet = PermissionSet.none(),
        deny: PermissionSet = PermissionSet.none(),
    ) -> Role:
        actor = _as_actor(acting_user_id)
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            target = graph.get(role_id)
            ctx = await self._actor_context(actor, graph)
            self._check_can_manage(ctx, graph, target)
            self._check_grantable(ctx, graph, allow)

            updated = target.copy()
            updated.channel_overrides[channel_id] = ChannelOverride(channel_id, allow, deny)
            await self.roles.update_role(updated)
        return updated

    async def remove_channel_override(
        self, acting_user_id: ActorLike, tenant_id: int, role_id: int, channel_id: int
    ) -> Role:
        actor = _as_actor(acting_user_id)
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            target = graph.get(role_id)
            ctx = await self._actor_context(actor, graph)
            self._check_can_manage(ctx, graph, target)

            updated = target.copy()
            if updated.channel_overrides.pop(channel_id, None) is not None:
                await self.roles.update_role(updated)
        return updated

    # ---------------------- Assignment state machine ----------------------

    async def assign_role(
        self,
        acting_user_id: ActorLike,
        tenant_id: int,
        user_id: int,
        role_id: int,
        *,
        if_absent: bool = False,
    ) -> Optional[RoleAssignment]:
        """unassigned -> assigned.

        With `if_absent` an existing assignment is returned instead of raising
        AlreadyAssigned (None for the implicitly held default role).
        """
        actor = _as_actor(acting_user_id)
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            target = graph.get(role_id)
            if target.is_default:
                if if_absent:
                    return None
                raise AlreadyAssigned(user_id, role_id)

            ctx = await self._actor_context(actor, graph)
            self._check_can_manage(ctx, graph, target)

            if await self.memberships.get_membership(tenant_id, user_id) is None:
                raise NotAMember(user_id, tenant_id)

            member = await self.assignments.get_member_roles(tenant_id, user_id)
            existing = member.assignments.get(role_id)
            if existing is not None:
                if if_absent:
                    return existing
                raise AlreadyAssigned(user_id, role_id)

            now = self.clock()
            assignment = RoleAssignment(
                tenant_id=tenant_id,
                user_id=user_id,
                role_id=role_id,
                assigned_at=now,
                assigned_by=actor.user_id,
                source=AssignmentSource.auto if actor.is_system else AssignmentSource.manual,
                expires_at=now + target.temporary.duration if target.temporary else None,
            )
            await self.assignments.add(assignment)

        roles_logger.info(
            f"[Roles] Role {role_id} assigned to user {user_id} in tenant {tenant_id}",
            source=assignment.source.value,
            actor=actor.user_id,
        )
        return assignment

    async def revoke_role(self, acting_user_id: ActorLike, tenant_id: int, user_id: int, role_id: int) -> None:
        """assigned -> revoked."""
        actor = _as_actor(acting_user_id)
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            target = graph.get(role_id)
            if target.is_default:
                raise DefaultRoleImmutable("The default role cannot be revoked")
            ctx = await self._actor_context(actor, graph)
            self._check_can_manage(ctx, graph, target)

            removed = await self.assignments.remove(
                tenant_id,
                user_id,
                role_id,
                action=AssignmentAction.revoked,
                actor_id=actor.user_id,
                source=AssignmentSource.auto if actor.is_system else AssignmentSource.manual,
            )
            if not removed:
                raise NotAssigned(user_id, role_id)

        roles_logger.info(
            f"[Roles] Role {role_id} revoked from user {user_id} in tenant {tenant_id}", actor=actor.user_id
        )

    async def expire_role(
        self, tenant_id: int, user_id: int, role_id: int, now: Optional[datetime] = None
    ) -> bool:
        """assigned -> expired, driven by the automation only.

        Re-checks under the tenant lock that the grant still exists and is due,
        so a concurrent manual revoke simply makes this a no-op.
        """
        now = now or self.clock()
        async with self.locks.hold(tenant_id):
            graph = await self.roles.load_graph(tenant_id)
            target = graph.find(role_id)
            if target is None:
                return False
            member = await self.assignments.get_member_roles(tenant_id, user_id)
            assignment = member.assignments.get(role_id)
            if assignment is None or not is_expired(target, assignment, now):
                return False

            ctx = await self._actor_context(Actor.system(), graph)
            self._check_can_manage(ctx, graph, target)

            removed = await self.assignments.remove(
                tenant_id,
                user_id,
                role_id,
                action=AssignmentAction.expired,
                actor_id=None,
                source=AssignmentSource.auto,
            )

        if removed:
            roles_logger.info(f"[Roles] Temporary role {role_id} expired for user {user_id} in tenant {tenant_id}")
        return removed

    # ---------------------- Membership ----------------------

    async def member_joined(
        self, tenant_id: int, user_id: int, joined_at: Optional[datetime] = None
    ) -> tuple[Membership, bool]:
        """Record a join; returns the membership and whether it is new."""
        async with self.locks.hold(tenant_id):
            return await self.memberships.add_member(tenant_id, user_id, joined_at or self.clock())

    async def member_left(self, tenant_id: int, user_id: int) -> list[int]:
        """Drop every assignment of a departing member; returns the role ids removed."""
        async with self.locks.hold(tenant_id):
            removed = await self.assignments.remove_all(tenant_id, user_id, actor_id=None)
            await self.memberships.remove_member(tenant_id, user_id)
        return removed

    # ---------------------- Queries ----------------------

    async def get_role(self, tenant_id: int, role_id: int) -> Role:
        graph = await self.roles.load_graph(tenant_id)
        return graph.get(role_id)

    async def list_roles(self, tenant_id: int) -> list[Role]:
        """Tenant roles, most senior first."""
        graph = await self.roles.load_graph(tenant_id)
        return list(reversed(graph.ordered()))

    async def role_hierarchy(self, tenant_id: int) -> list[RoleSummary]:
        """Non-default roles, most senior first, with live holder counts and assignment statistics."""
        roles = await self.list_roles(tenant_id)
        statistics = await self.assignments.assignment_statistics(tenant_id)
        return [
            RoleSummary(
                role,
                await self.assignments.count_members(tenant_id, role.id),
                statistics.get(role.id, RoleStatistics()),
            )
            for role in roles
            if not role.is_default
        ]

    async def list_auto_assignable_roles(self, acting_user_id: int, tenant_id: int) -> list[Role]:
        graph = await self.roles.load_graph(tenant_id)
        ctx = await self._actor_context(Actor.user(acting_user_id), graph)
        if not ctx.is_owner and not ctx.permissions.has(Permission.MANAGE_ROLES):
            raise self._deny(ctx, graph, "Missing permission: MANAGE_ROLES")
        return graph.auto_assignable()

    async def list_role_members(self, tenant_id: int, role_id: int, limit: int = 50) -> list[RoleAssignment]:
        graph = await self.roles.load_graph(tenant_id)
        graph.get(role_id)
        limit = max(1, min(limit, settings.ROLE_MEMBERS_PAGE_LIMIT))
        return await self.assignments.members_with_role(tenant_id, role_id, limit)

    async def member_roles(self, tenant_id: int, user_id: int) -> list[Role]:
        """Roles a member holds, default role included, most senior first."""
        graph = await self.roles.load_graph(tenant_id)
        member = await self.assignments.get_member_roles(tenant_id, user_id)
        return list(reversed(self.resolver.held_roles(graph, member.role_ids)))

    async def assignment_history(
        self, tenant_id: int, *, user_id: Optional[int] = None, role_id: Optional[int] = None
    ) -> list[AssignmentEvent]:
        return await self.assignments.history(tenant_id, user_id=user_id, role_id=role_id)

"""
PermissionResolver: merges a member's roles into one effective PermissionSet.

Order of evaluation:
  1. tenant owner -> every flag
  2. held roles = explicit assignments + the default role
  3. base = union of the held roles' permissions
  4. ADMINISTRATOR in base -> every flag, whatever the channel
  5. no channel -> base
  6. channel -> apply each held role's override for it, lowest position
     first; inside one override deny beats allow
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from .entities import Role
from .flags import Permission, PermissionSet
from .graph import RoleGraph


@dataclass(frozen=True)
class ChannelOverrideContext:
    """Resolved (allow, deny) for one role on one channel."""
    channel_id: int
    role_id: int
    position: int
    allow: PermissionSet
    deny: PermissionSet


@dataclass(frozen=True)
class ResolvedPermissions:
    permissions: PermissionSet
    is_owner: bool = False
    is_administrator: bool = False

    def has(self, flag: Permission) -> bool:
        if self.is_owner or self.is_administrator:
            return True
        if self.permissions.contains(Permission.ADMINISTRATOR):
            return True
        return self.permissions.contains(flag)

    def has_all(self, mask: PermissionSet) -> bool:
        if self.is_owner or self.is_administrator:
            return True
        return self.permissions.contains_all(mask)


class PermissionResolver:
    """Stateless; safe to share between concurrent requests."""

    def resolve(
        self,
        graph: RoleGraph,
        role_ids: Iterable[int],
        *,
        is_owner: bool = False,
        channel_id: Optional[int] = None,
    ) -> ResolvedPermissions:
        if is_owner:
            return ResolvedPermissions(PermissionSet.all(), is_owner=True)

        roles = self.held_roles(graph, role_ids)

        base = PermissionSet.none()
        for role in roles:
            base = base | role.permissions

        if base.contains(Permission.ADMINISTRATOR):
            return ResolvedPermissions(PermissionSet.all(), is_administrator=True)

        if channel_id is None:
            return ResolvedPermissions(base)

        return ResolvedPermissions(
            self.apply_overrides(base, self.channel_overrides(roles, channel_id))
        )

    @staticmethod
    def held_roles(graph: RoleGraph, role_ids: Iterable[int]) -> list[Role]:
        """The default role plus every assigned role, ascending by position.

        Raises MissingDefaultRole when the tenant has no default role and
        RoleNotFound when an assignment points at a role that does not exist.
        """
        default = graph.default_role
        held = {default.id: default}
        for role_id in role_ids:
            if role_id not in held:
                held[role_id] = graph.get(role_id)
        return sorted(held.values(), key=lambda r: r.position)

    @staticmethod
    def channel_overrides(roles: Iterable[Role], channel_id: int) -> list[ChannelOverrideContext]:
        contexts = []
        for role in sorted(roles, key=lambda r: r.position):
            override = role.override_for(channel_id)
            if override is None:
                continue
            contexts.append(
                ChannelOverrideContext(
                    channel_id=channel_id,
                    role_id=role.id,
                    position=role.position,
                    allow=override.allow,
                    deny=override.deny,
                )
            )
        return contexts

    @staticmethod
    def apply_overrides(base: PermissionSet, contexts: Iterable[ChannelOverrideContext]) -> PermissionSet:
        mask = base
        for ctx in sorted(contexts, key=lambda c: c.position):
            mask = (mask | ctx.allow) - ctx.deny
        return mask


permission_resolver = PermissionResolver()

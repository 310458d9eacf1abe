"""Interfaces the role engine consumes from its collaborators."""
from abc import abstractmethod
from datetime import datetime
from typing import Optional, Protocol, Sequence

from .entities import (
    AssignmentAction,
    AssignmentEvent,
    AssignmentSource,
    Membership,
    MemberRoles,
    Role,
    RoleAssignment,
    RoleStatistics,
)
from .graph import RoleGraph


class RoleRepository(Protocol):
    """Persistence of a tenant's roles."""

    @abstractmethod
    async def load_graph(self, tenant_id: int) -> RoleGraph:
        """Load every role of a tenant. Raises TenantNotFound."""
        ...

    @abstractmethod
    async def add_role(self, role: Role, shifted: list[Role]) -> Role:
        """Insert `role` and persist the new positions of `shifted` atomically."""
        ...

    @abstractmethod
    async def update_role(self, role: Role, shifted: Sequence[Role] = ()) -> None:
        """Persist `role` and the new positions of `shifted` atomically."""
        ...

    @abstractmethod
    async def save_positions(self, tenant_id: int, roles: list[Role]) -> None:
        """Renumber `roles` in a single transaction."""
        ...

    @abstractmethod
    async def delete_role(
        self, tenant_id: int, role_id: int, shifted: list[Role], actor_id: Optional[int]
    ) -> list[int]:
        """Delete a role with its assignments and overrides, close the position gap.

        Returns the ids of the users who held the role.
        """
        ...

    @abstractmethod
    async def list_tenant_ids(self) -> list[int]:
        ...


class AssignmentRepository(Protocol):
    """Persistence of member role assignments and their audit trail."""

    @abstractmethod
    async def get_member_roles(self, tenant_id: int, user_id: int) -> MemberRoles:
        ...

    @abstractmethod
    async def add(self, assignment: RoleAssignment) -> None:
        """Store an assignment and its `assigned` event. Raises AlreadyAssigned."""
        ...

    @abstractmethod
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
        """Delete an assignment and record `action`. False if it did not exist."""
        ...

    @abstractmethod
    async def remove_all(self, tenant_id: int, user_id: int, *, actor_id: Optional[int]) -> list[int]:
        ...

    @abstractmethod
    async def list_assignments(self, tenant_id: int, role_ids: Optional[list[int]] = None) -> list[RoleAssignment]:
        ...

    @abstractmethod
    async def members_with_role(self, tenant_id: int, role_id: int, limit: int) -> list[RoleAssignment]:
        ...

    @abstractmethod
    async def count_members(self, tenant_id: int, role_id: int) -> int:
        ...

    @abstractmethod
    async def auto_granted_since(self, tenant_id: int, user_id: int, role_id: int, since: datetime) -> bool:
        """True if automation assigned the role to the user at or after `since`."""
        ...

    @abstractmethod
    async def assignment_statistics(self, tenant_id: int) -> dict[int, RoleStatistics]:
        """Per role: how many times it was assigned and when it last was."""
        ...

    @abstractmethod
    async def history(
        self, tenant_id: int, *, user_id: Optional[int] = None, role_id: Optional[int] = None
    ) -> list[AssignmentEvent]:
        ...


class TenantOwnership(Protocol):

    @abstractmethod
    async def is_owner(self, user_id: int, tenant_id: int) -> bool:
        ...


class MembershipDirectory(Protocol):
    """Tenant membership as seen by the role engine (join time only)."""

    @abstractmethod
    async def add_member(self, tenant_id: int, user_id: int, joined_at: datetime) -> tuple[Membership, bool]:
        """Idempotent join; the flag is True only when the membership is new."""
        ...

    @abstractmethod
    async def remove_member(self, tenant_id: int, user_id: int) -> bool:
        ...

    @abstractmethod
    async def get_membership(self, tenant_id: int, user_id: int) -> Optional[Membership]:
        ...

    @abstractmethod
    async def list_members(self, tenant_id: int) -> list[Membership]:
        ...


class ActivityMetrics(Protocol):
    """Monotonic per-member activity counter (e.g. messages sent)."""

    @abstractmethod
    async def counter_for(self, user_id: int, tenant_id: int) -> int:
        ...

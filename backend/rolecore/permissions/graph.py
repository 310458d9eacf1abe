"""
RoleGraph: one tenant's roles ordered by position.

Positions are unique per tenant and strictly increase with seniority. The
default role sits at position 0 and never moves. Mutating methods change the
in-memory graph and return the roles whose positions moved so the caller can
persist them in one transaction.
"""
from typing import Iterable, Optional

from .entities import AutoTrigger, Role
from .exceptions import (
    CannotDeleteDefaultRole,
    DefaultRoleImmutable,
    DuplicateName,
    InvalidPosition,
    MissingDefaultRole,
    RoleNotFound,
)


class RoleGraph:

    def __init__(self, tenant_id: int, roles: Iterable[Role]):
        self.tenant_id = tenant_id
        self._roles: list[Role] = sorted(roles, key=lambda r: r.position)

    # ---------------------- queries ----------------------

    def ordered(self) -> list[Role]:
        """Roles in ascending position order (default role first)."""
        return list(self._roles)

    def __len__(self) -> int:
        return len(self._roles)

    def __iter__(self):
        return iter(self._roles)

    def find(self, role_id: int) -> Optional[Role]:
        for role in self._roles:
            if role.id == role_id:
                return role
        return None

    def get(self, role_id: int) -> Role:
        role = self.find(role_id)
        if role is None:
            raise RoleNotFound(role_id)
        return role

    def find_by_name(self, name: str) -> Optional[Role]:
        for role in self._roles:
            if role.name == name:
                return role
        return None

    @property
    def default_role(self) -> Role:
        defaults = [r for r in self._roles if r.is_default]
        if not defaults:
            raise MissingDefaultRole(self.tenant_id)
        if len(defaults) > 1:
            raise MissingDefaultRole(
                self.tenant_id,
                f"Tenant {self.tenant_id} has {len(defaults)} default roles configured",
            )
        return defaults[0]

    @property
    def top_position(self) -> int:
        return self._roles[-1].position if self._roles else 0

    def highest_role(self, role_ids: Iterable[int]) -> Role:
        """Most senior role among `role_ids`; the default role if none given."""
        roles = [self.get(role_id) for role_id in role_ids]
        if not roles:
            return self.default_role
        return max(roles, key=lambda r: r.position)

    def can_manage(self, acting_highest: Optional[Role], target: Role, *, is_owner: bool = False) -> bool:
        if is_owner:
            return True
        if acting_highest is None or not acting_highest.can_manage_below:
            return False
        return acting_highest.hierarchy_level > target.hierarchy_level

    def automation_rank(self) -> Optional[int]:
        """Rank the automation acts with: its highest managed role.

        None means the tenant has no managed role and the automation may
        manage every role.
        """
        managed = [r.position for r in self._roles if r.managed]
        return max(managed) if managed else None

    def auto_assignable(self, trigger: Optional[AutoTrigger] = None) -> list[Role]:
        roles = [r for r in self._roles if r.auto_assignment is not None and not r.is_default]
        if trigger is not None:
            roles = [r for r in roles if r.auto_assignment.trigger == trigger]
        return roles

    def check_invariants(self) -> None:
        """Raise if the graph breaks a structural invariant."""
        default = self.default_role
        if default.position != 0:
            raise InvalidPosition(f"Default role must sit at position 0, found {default.position}")
        positions = [r.position for r in self._roles]
        if len(set(positions)) != len(positions):
            raise InvalidPosition(f"Duplicate role positions in tenant {self.tenant_id}")
        names = [r.name for r in self._roles]
        for name in names:
            if names.count(name) > 1:
                raise DuplicateName(name)

    def ensure_name_available(self, name: str, exclude_role_id: Optional[int] = None) -> None:
        existing = self.find_by_name(name)
        if existing is not None and (exclude_role_id is None or existing.id != exclude_role_id):
            raise DuplicateName(name)

    # ---------------------- mutations ----------------------

    def insert(self, role: Role, position: Optional[int] = None) -> list[Role]:
        """Add `role` on top, or at `position` shifting the roles above up by one.

        Returns the existing roles whose position changed.
        """
        if role.tenant_id != self.tenant_id:
            raise InvalidPosition(f"Role belongs to tenant {role.tenant_id}, not {self.tenant_id}")
        self.ensure_name_available(role.name)

        if role.is_default:
            if any(r.is_default for r in self._roles):
                raise InvalidPosition(f"Tenant {self.tenant_id} already has a default role")
            if self._roles and self._roles[0].position == 0:
                raise InvalidPosition("Position 0 is reserved for the default role")
            role.position = 0
            self._roles.insert(0, role)
            return []

        if position is None:
            role.position = self.top_position + 1
            self._roles.append(role)
            return []

        if position < 1 or position > self.top_position + 1:
            raise InvalidPosition(
                f"Position must be between 1 and {self.top_position + 1}, got {position}"
            )
        moved = []
        for existing in self._roles:
            if existing.position >= position:
                existing.position += 1
                moved.append(existing)
        role.position = position
        self._roles.append(role)
        self._roles.sort(key=lambda r: r.position)
        return moved

    def reorder(self, role_id: int, new_position: int) -> list[Role]:
        """Move a role to `new_position`, shifting the roles in between by one.

        Returns every role whose position changed, the moved role included.
        """
        role = self.get(role_id)
        if role.is_default:
            if new_position != 0:
                raise InvalidPosition("The default role cannot be moved away from position 0")
            return []
        if new_position < 1:
            raise InvalidPosition("Position 0 is reserved for the default role")
        if new_position > self.top_position:
            raise InvalidPosition(
                f"Position must be between 1 and {self.top_position}, got {new_position}"
            )

        old_position = role.position
        if new_position == old_position:
            return []

        moved = []
        for other in self._roles:
            if other is role:
                continue
            if new_position < old_position and new_position <= other.position < old_position:
                other.position += 1
                moved.append(other)
            elif old_position < new_position and old_position < other.position <= new_position:
                other.position -= 1
                moved.append(other)
        role.position = new_position
        moved.append(role)
        self._roles.sort(key=lambda r: r.position)
        return moved

    def remove(self, role_id: int) -> tuple[Role, list[Role]]:
        """Drop a role and close the position gap it leaves.

        Returns the removed role and the roles whose position changed.
        """
        role = self.get(role_id)
        if role.is_default:
            raise CannotDeleteDefaultRole()
        self._roles.remove(role)
        moved = []
        for other in self._roles:
            if other.position > role.position:
                other.position -= 1
                moved.append(other)
        return role, moved

    @staticmethod
    def ensure_not_default(role: Role, operation: str) -> None:
        if role.is_default:
            if operation == "delete":
                raise CannotDeleteDefaultRole()
            raise DefaultRoleImmutable(f"Cannot {operation} the default role")

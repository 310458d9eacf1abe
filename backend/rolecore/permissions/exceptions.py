"""Error taxonomy for the role engine.

Structural errors (DuplicateName, InvalidPosition, default-role violations,
MissingDefaultRole) must surface to the caller unchanged. HierarchyViolation,
AlreadyAssigned and NotAssigned are expected outcomes that callers present as
permission or validation errors.
"""
from typing import Iterable, Optional


class PermissionsError(Exception):
    code = "permissions_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class HierarchyViolation(PermissionsError):
    code = "hierarchy_violation"

    def __init__(self, detail: str = "Cannot manage roles at or above your hierarchy level"):
        super().__init__(detail)


class DuplicateName(PermissionsError):
    code = "duplicate_name"

    def __init__(self, name: str):
        super().__init__(f"Role name already exists in this tenant: {name!r}")
        self.name = name


class InvalidPosition(PermissionsError):
    code = "invalid_position"


class DefaultRoleImmutable(PermissionsError):
    code = "default_role_immutable"


class CannotDeleteDefaultRole(DefaultRoleImmutable):
    code = "cannot_delete_default_role"

    def __init__(self, detail: str = "The default role cannot be deleted"):
        super().__init__(detail)


class AlreadyAssigned(PermissionsError):
    code = "already_assigned"

    def __init__(self, user_id: int, role_id: int):
        super().__init__(f"User {user_id} already has role {role_id}")
        self.user_id = user_id
        self.role_id = role_id


class NotAssigned(PermissionsError):
    code = "not_assigned"

    def __init__(self, user_id: int, role_id: int):
        super().__init__(f"User {user_id} does not have role {role_id}")
        self.user_id = user_id
        self.role_id = role_id


class MissingDefaultRole(PermissionsError):
    code = "missing_default_role"

    def __init__(self, tenant_id: int, detail: Optional[str] = None):
        super().__init__(detail or f"Tenant {tenant_id} has no default role configured")
        self.tenant_id = tenant_id


class RoleNotFound(PermissionsError):
    code = "role_not_found"

    def __init__(self, role_id: int):
        super().__init__(f"Role not found: {role_id}")
        self.role_id = role_id


class TenantNotFound(PermissionsError):
    code = "tenant_not_found"

    def __init__(self, tenant_id: int):
        super().__init__(f"Tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class UnknownPermission(PermissionsError):
    code = "unknown_permission"

    def __init__(self, names: Iterable[str]):
        self.names = list(names)
        super().__init__(f"Invalid permissions: {', '.join(self.names)}")


class InvalidRoleConfiguration(PermissionsError):
    code = "invalid_role_configuration"


class NotAMember(PermissionsError):
    code = "not_a_member"

    def __init__(self, user_id: int, tenant_id: int):
        super().__init__(f"User {user_id} is not a member of tenant {tenant_id}")
        self.user_id = user_id
        self.tenant_id = tenant_id

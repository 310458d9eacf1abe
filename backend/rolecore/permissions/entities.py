"""
Domain entities of the role engine.

Entities only hold ids (tenant_id, channel_id, user_id); related objects are
always resolved through the repositories.
"""
import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional

from .exceptions import InvalidRoleConfiguration
from .flags import PermissionSet


class AutoTrigger(str, enum.Enum):
    on_join = "on_join"
    after_elapsed = "after_elapsed"
    activity_threshold = "activity_threshold"


class AssignmentSource(str, enum.Enum):
    manual = "manual"
    auto = "auto"


class AssignmentAction(str, enum.Enum):
    assigned = "assigned"
    revoked = "revoked"
    expired = "expired"
    cascaded = "cascaded"  # role deleted or member left


@dataclass(frozen=True)
class AutoAssignmentRule:
    """A single auto-assignment trigger. Only one trigger kind per rule."""
    trigger: AutoTrigger
    elapsed: Optional[timedelta] = None
    threshold: Optional[int] = None

    def __post_init__(self):
        if self.trigger == AutoTrigger.after_elapsed:
            if self.elapsed is None or self.elapsed <= timedelta(0):
                raise InvalidRoleConfiguration("after_elapsed rules need a positive duration")
            if self.threshold is not None:
                raise InvalidRoleConfiguration("after_elapsed rules cannot carry an activity threshold")
        elif self.trigger == AutoTrigger.activity_threshold:
            if self.threshold is None or self.threshold < 0:
                raise InvalidRoleConfiguration("activity_threshold rules need a non-negative threshold")
            if self.elapsed is not None:
                raise InvalidRoleConfiguration("activity_threshold rules cannot carry a duration")
        elif self.elapsed is not None or self.threshold is not None:
            raise InvalidRoleConfiguration("on_join rules take no duration or threshold")

    @classmethod
    def on_join(cls) -> "AutoAssignmentRule":
        return cls(AutoTrigger.on_join)

    @classmethod
    def after_elapsed(cls, duration: timedelta) -> "AutoAssignmentRule":
        return cls(AutoTrigger.after_elapsed, elapsed=duration)

    @classmethod
    def activity_threshold(cls, threshold: int) -> "AutoAssignmentRule":
        return cls(AutoTrigger.activity_threshold, threshold=threshold)


@dataclass(frozen=True)
class TemporaryGrant:
    """Marks grants of a role as self-expiring after `duration`."""
    duration: timedelta
    auto_remove: bool = True

    def __post_init__(self):
        if self.duration <= timedelta(0):
            raise InvalidRoleConfiguration("temporary role duration must be positive")


@dataclass(frozen=True)
class ChannelOverride:
    channel_id: int
    allow: PermissionSet = field(default_factory=PermissionSet.none)
    deny: PermissionSet = field(default_factory=PermissionSet.none)


@dataclass
class Role:
    tenant_id: int
    name: str
    position: int
    permissions: PermissionSet = field(default_factory=PermissionSet.none)
    id: Optional[int] = None
    color: int = 0
    icon: Optional[str] = None
    unicode_emoji: Optional[str] = None
    is_default: bool = False
    hoist: bool = False
    mentionable: bool = False
    managed: bool = False
    # False stops holders of this role from managing any role, even lower ones
    can_manage_below: bool = True
    # keyed by channel id, insertion ordered
    channel_overrides: dict[int, ChannelOverride] = field(default_factory=dict)
    auto_assignment: Optional[AutoAssignmentRule] = None
    temporary: Optional[TemporaryGrant] = None
    created_at: Optional[datetime] = None

    @property
    def hierarchy_level(self) -> int:
        # Positions are unique per tenant, so the level is the position.
        return self.position

    @property
    def hex_color(self) -> str:
        return '#' + format(self.color, '06x')

    def override_for(self, channel_id: int) -> Optional[ChannelOverride]:
        return self.channel_overrides.get(channel_id)

    def copy(self) -> "Role":
        return replace(self, channel_overrides=dict(self.channel_overrides))


@dataclass(frozen=True)
class RoleAssignment:
    tenant_id: int
    user_id: int
    role_id: int
    assigned_at: datetime
    assigned_by: Optional[int] = None  # None for the system actor
    source: AssignmentSource = AssignmentSource.manual
    expires_at: Optional[datetime] = None


@dataclass
class MemberRoles:
    """The explicit role assignments of one user in one tenant.

    The tenant's default role is held implicitly and never appears here.
    """
    tenant_id: int
    user_id: int
    assignments: dict[int, RoleAssignment] = field(default_factory=dict)

    @property
    def role_ids(self) -> set[int]:
        return set(self.assignments)


@dataclass(frozen=True)
class Membership:
    tenant_id: int
    user_id: int
    joined_at: datetime


@dataclass(frozen=True)
class Actor:
    """Who performs a mutation: a tenant member or the automation."""
    user_id: Optional[int]
    is_system: bool = False

    @classmethod
    def user(cls, user_id: int) -> "Actor":
        return cls(user_id=user_id)

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, is_system=True)


SYSTEM_ACTOR = Actor.system()


@dataclass(frozen=True)
class AssignmentEvent:
    """Audit record of one assignment transition."""
    tenant_id: int
    user_id: int
    role_id: int
    action: AssignmentAction
    source: AssignmentSource
    actor_id: Optional[int]
    occurred_at: datetime


@dataclass(frozen=True)
class RoleStatistics:
    """Lifetime assignment counters of a role, derived from the event log."""
    assigned_count: int = 0
    last_assigned: Optional[datetime] = None

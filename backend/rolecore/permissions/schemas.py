"""
Pydantic schemas for role create/update input.
"""
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from rolecore.core.config import settings
from .entities import AutoAssignmentRule, AutoTrigger, ChannelOverride, Role, TemporaryGrant
from .flags import PermissionSet

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


def parse_color(value: Optional[str]) -> int:
    if value is None:
        return settings.DEFAULT_ROLE_COLOR
    return int(value[1:], 16)


# ---------------------- Nested Schemas ----------------------

class AutoAssignmentInput(BaseModel):
    """Exactly one trigger; the matching parameter is required."""
    trigger: AutoTrigger
    elapsed_seconds: Optional[int] = Field(None, gt=0)
    threshold: Optional[int] = Field(None, ge=0)

    def to_rule(self) -> AutoAssignmentRule:
        return AutoAssignmentRule(
            self.trigger,
            elapsed=timedelta(seconds=self.elapsed_seconds) if self.elapsed_seconds is not None else None,
            threshold=self.threshold,
        )


class TemporaryRoleInput(BaseModel):
    duration_seconds: int = Field(..., gt=0)
    auto_remove: bool = True

    def to_grant(self) -> TemporaryGrant:
        return TemporaryGrant(timedelta(seconds=self.duration_seconds), self.auto_remove)


class ChannelOverrideInput(BaseModel):
    channel_id: int
    allow: list[str] = []
    deny: list[str] = []

    def to_override(self) -> ChannelOverride:
        return ChannelOverride(
            channel_id=self.channel_id,
            allow=PermissionSet.from_names(self.allow),
            deny=PermissionSet.from_names(self.deny),
        )


def _overrides(items: list[ChannelOverrideInput]) -> dict[int, ChannelOverride]:
    return {item.channel_id: item.to_override() for item in items}


def _unique_channels(items: Optional[list[ChannelOverrideInput]]):
    if items:
        channels = [item.channel_id for item in items]
        if len(set(channels)) != len(channels):
            raise ValueError("At most one override per channel")
    return items


def _strip_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not value:
        raise ValueError("Role name must not be blank")
    return value


# ---------------------- Role Schemas ----------------------

class RoleCreate(BaseModel):
    """Schema for creating a role"""
    name: str = Field(..., min_length=1, max_length=settings.MAX_ROLE_NAME_LENGTH)
    color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    permissions: list[str] = []
    position: Optional[int] = Field(None, ge=1)
    hoist: bool = False
    mentionable: bool = True
    managed: bool = False
    can_manage_below: bool = True
    icon: Optional[str] = None
    unicode_emoji: Optional[str] = None
    channel_overrides: list[ChannelOverrideInput] = []
    auto_assignment: Optional[AutoAssignmentInput] = None
    temporary: Optional[TemporaryRoleInput] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value):
        return _strip_name(value)

    @field_validator("channel_overrides")
    @classmethod
    def one_override_per_channel(cls, value):
        return _unique_channels(value)

    def to_role(self, tenant_id: int) -> Role:
        return Role(
            tenant_id=tenant_id,
            name=self.name,
            position=self.position or 0,
            permissions=PermissionSet.from_names(self.permissions),
            color=parse_color(self.color),
            icon=self.icon,
            unicode_emoji=self.unicode_emoji,
            hoist=self.hoist,
            mentionable=self.mentionable,
            managed=self.managed,
            can_manage_below=self.can_manage_below,
            channel_overrides=_overrides(self.channel_overrides),
            auto_assignment=self.auto_assignment.to_rule() if self.auto_assignment else None,
            temporary=self.temporary.to_grant() if self.temporary else None,
        )


class RoleUpdate(BaseModel):
    """Schema for updating a role; only fields that were sent are applied.

    Sending `auto_assignment` or `temporary` as null clears it.
    """
    name: Optional[str] = Field(None, min_length=1, max_length=settings.MAX_ROLE_NAME_LENGTH)
    color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    permissions: Optional[list[str]] = None
    position: Optional[int] = Field(None, ge=0)
    hoist: Optional[bool] = None
    mentionable: Optional[bool] = None
    managed: Optional[bool] = None
    can_manage_below: Optional[bool] = None
    icon: Optional[str] = None
    unicode_emoji: Optional[str] = None
    channel_overrides: Optional[list[ChannelOverrideInput]] = None
    auto_assignment: Optional[AutoAssignmentInput] = None
    temporary: Optional[TemporaryRoleInput] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value):
        return _strip_name(value)

    @field_validator("channel_overrides")
    @classmethod
    def one_override_per_channel(cls, value):
        return _unique_channels(value)

    def apply(self, role: Role) -> Role:
        """Return a copy of `role` with the sent fields applied (position excluded)."""
        updated = role.copy()
        sent = self.model_fields_set
        if "name" in sent and self.name is not None:
            updated.name = self.name
        if "color" in sent:
            updated.color = parse_color(self.color)
        if "permissions" in sent and self.permissions is not None:
            updated.permissions = PermissionSet.from_names(self.permissions)
        if "hoist" in sent and self.hoist is not None:
            updated.hoist = self.hoist
        if "mentionable" in sent and self.mentionable is not None:
            updated.mentionable = self.mentionable
        if "managed" in sent and self.managed is not None:
            updated.managed = self.managed
        if "can_manage_below" in sent and self.can_manage_below is not None:
            updated.can_manage_below = self.can_manage_below
        if "icon" in sent:
            updated.icon = self.icon
        if "unicode_emoji" in sent:
            updated.unicode_emoji = self.unicode_emoji
        if "channel_overrides" in sent:
            updated.channel_overrides = _overrides(self.channel_overrides or [])
        if "auto_assignment" in sent:
            updated.auto_assignment = self.auto_assignment.to_rule() if self.auto_assignment else None
        if "temporary" in sent:
            updated.temporary = self.temporary.to_grant() if self.temporary else None
        return updated

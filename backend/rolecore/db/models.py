from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from rolecore.db.database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    owner_id = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    roles = relationship("Role", back_populates="tenant", cascade="all, delete-orphan")


class TenantMember(Base):
    __tablename__ = "tenant_members"

    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, primary_key=True)
    joined_at = Column(DateTime(timezone=True), nullable=False)


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_role_tenant_name"),
        Index("ix_roles_tenant_position", "tenant_id", "position"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    color = Column(Integer, nullable=False, default=0)
    icon = Column(String, nullable=True)
    unicode_emoji = Column(String, nullable=True)
    position = Column(Integer, nullable=False)
    permissions = Column(BigInteger, nullable=False, default=0)
    is_default = Column(Boolean, nullable=False, default=False)
    hoist = Column(Boolean, nullable=False, default=False)
    mentionable = Column(Boolean, nullable=False, default=False)
    managed = Column(Boolean, nullable=False, default=False)
    can_manage_below = Column(Boolean, nullable=False, default=True)

    # Auto-assignment: at most one trigger
    auto_trigger = Column(String(32), nullable=True)  # on_join | after_elapsed | activity_threshold
    auto_elapsed_seconds = Column(Integer, nullable=True)
    auto_threshold = Column(Integer, nullable=True)

    # Temporary grants
    temporary_seconds = Column(Integer, nullable=True)
    temporary_auto_remove = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    tenant = relationship("Tenant", back_populates="roles")
    channel_overrides = relationship(
        "RoleChannelOverride",
        back_populates="role",
        cascade="all, delete-orphan",
        order_by="RoleChannelOverride.id",
        lazy="selectin",
    )


class RoleChannelOverride(Base):
    __tablename__ = "role_channel_overrides"
    __table_args__ = (
        UniqueConstraint("role_id", "channel_id", name="uq_role_channel_override"),
    )

    id = Column(Integer, primary_key=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    channel_id = Column(Integer, nullable=False)
    allow = Column(BigInteger, nullable=False, default=0)
    deny = Column(BigInteger, nullable=False, default=0)

    role = relationship("Role", back_populates="channel_overrides")


class MemberRole(Base):
    __tablename__ = "member_roles"
    __table_args__ = (
        Index("ix_member_roles_tenant_user", "tenant_id", "user_id"),
    )

    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, primary_key=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    assigned_at = Column(DateTime(timezone=True), nullable=False)
    assigned_by = Column(Integer, nullable=True)  # NULL for the automation
    source = Column(String(16), nullable=False, default="manual")
    expires_at = Column(DateTime(timezone=True), nullable=True)


class RoleAssignmentEvent(Base):
    """Append-only audit trail; keeps rows for deleted roles."""
    __tablename__ = "role_assignment_events"
    __table_args__ = (
        Index("ix_role_events_tenant_user_role", "tenant_id", "user_id", "role_id"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=False)
    role_id = Column(Integer, nullable=False)
    action = Column(String(16), nullable=False)  # assigned | revoked | expired | cascaded
    source = Column(String(16), nullable=False)
    actor_id = Column(Integer, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

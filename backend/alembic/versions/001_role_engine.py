"""Role engine tables

Tenants, tenant membership, roles with channel overrides, member role
assignments and the assignment audit trail.

Revision ID: 001_role_engine
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '001_role_engine'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'tenant_members',
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('user_id', sa.Integer(), primary_key=True),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False),
    )

    # No unique index on (tenant_id, position); rows are renumbered one at a time.
    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('color', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('icon', sa.String(), nullable=True),
        sa.Column('unicode_emoji', sa.String(), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('permissions', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('hoist', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('mentionable', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('managed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('can_manage_below', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('auto_trigger', sa.String(32), nullable=True),
        sa.Column('auto_elapsed_seconds', sa.Integer(), nullable=True),
        sa.Column('auto_threshold', sa.Integer(), nullable=True),
        sa.Column('temporary_seconds', sa.Integer(), nullable=True),
        sa.Column('temporary_auto_remove', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_role_tenant_name'),
    )
    op.create_index('ix_roles_tenant_position', 'roles', ['tenant_id', 'position'])

    op.create_table(
        'role_channel_overrides',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('channel_id', sa.Integer(), nullable=False),
        sa.Column('allow', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('deny', sa.BigInteger(), nullable=False, server_default='0'),
        sa.UniqueConstraint('role_id', 'channel_id', name='uq_role_channel_override'),
    )

    op.create_table(
        'member_roles',
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('user_id', sa.Integer(), primary_key=True),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('assigned_by', sa.Integer(), nullable=True),
        sa.Column('source', sa.String(16), nullable=False, server_default='manual'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_member_roles_tenant_user', 'member_roles', ['tenant_id', 'user_id'])

    op.create_table(
        'role_assignment_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('role_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(16), nullable=False),
        sa.Column('source', sa.String(16), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        'ix_role_events_tenant_user_role',
        'role_assignment_events',
        ['tenant_id', 'user_id', 'role_id'],
    )


def downgrade() -> None:
    op.drop_index('ix_role_events_tenant_user_role', table_name='role_assignment_events')
    op.drop_table('role_assignment_events')
    op.drop_index('ix_member_roles_tenant_user', table_name='member_roles')
    op.drop_table('member_roles')
    op.drop_table('role_channel_overrides')
    op.drop_index('ix_roles_tenant_position', table_name='roles')
    op.drop_table('roles')
    op.drop_table('tenant_members')
    op.drop_table('tenants')

"""
Tests for RoleService: role CRUD, hierarchy enforcement and the assignment state machine.
Runs against an on-disk SQLite database per test.
"""
import asyncio
import logging

import pytest

from rolecore.permissions.entities import AssignmentAction, AssignmentSource
from rolecore.permissions.exceptions import (
    AlreadyAssigned,
    CannotDeleteDefaultRole,
    DefaultRoleImmutable,
    DuplicateName,
    HierarchyViolation,
    InvalidPosition,
    InvalidRoleConfiguration,
    NotAMember,
    NotAssigned,
    RoleNotFound,
    TenantNotFound,
    UnknownPermission,
)
from rolecore.permissions.flags import Permission, PermissionSet
from rolecore.permissions.schemas import AutoAssignmentInput, RoleCreate, RoleUpdate, TemporaryRoleInput

from helpers import OWNER_ID, add_member, create_role

VIEW = Permission.VIEW_CHANNEL
SEND = Permission.SEND_MESSAGES
MANAGE_ROLES = Permission.MANAGE_ROLES

USER = 10
OTHER = 12
MEMBER_ACTOR = 11
MOD_ACTOR = 13


@pytest.fixture
async def scenario(service, tenant_id):
    """@everyone(0, VIEW), Member(1, VIEW+SEND), Mod(2, VIEW+SEND+MANAGE_ROLES)."""
    member = await create_role(service, tenant_id, "Member", VIEW, SEND)
    mod = await create_role(service, tenant_id, "Mod", VIEW, SEND, MANAGE_ROLES)
    await add_member(service, tenant_id, USER, member.id)
    await add_member(service, tenant_id, MEMBER_ACTOR, member.id)
    await add_member(service, tenant_id, MOD_ACTOR, mod.id)
    await add_member(service, tenant_id, OTHER)
    return {"member": member, "mod": mod}


# ---------------------- resolution ----------------------

@pytest.mark.anyio
async def test_initialize_tenant_creates_default_role(service, tenant_id):
    roles = await service.list_roles(tenant_id)

    assert len(roles) == 1
    default = roles[0]
    assert default.is_default
    assert default.position == 0
    assert default.name == "@everyone"
    # Idempotent
    again = await service.initialize_tenant(tenant_id)
    assert again.id == default.id


@pytest.mark.anyio
async def test_member_permissions_in_scenario(service, tenant_id, scenario):
    assert scenario["member"].position == 1
    assert scenario["mod"].position == 2

    resolved = await service.resolve_permissions(USER, tenant_id)
    assert resolved.permissions == PermissionSet.of(VIEW, SEND)

    # Users with no explicit roles still hold @everyone
    resolved = await service.resolve_permissions(OTHER, tenant_id)
    assert resolved.permissions == PermissionSet.of(VIEW)


@pytest.mark.anyio
async def test_owner_bypass(service, tenant_id):
    resolved = await service.resolve_permissions(OWNER_ID, tenant_id)

    assert resolved.is_owner
    assert resolved.permissions == PermissionSet.all()


@pytest.mark.anyio
async def test_owner_bypass_survives_role_edits(service, tenant_id):
    default = (await service.list_roles(tenant_id))[-1]
    await service.update_role(OWNER_ID, tenant_id, default.id, RoleUpdate(permissions=[]))

    resolved = await service.resolve_permissions(OWNER_ID, tenant_id)
    assert resolved.permissions == PermissionSet.all()


@pytest.mark.anyio
async def test_unknown_tenant(service):
    with pytest.raises(TenantNotFound):
        await service.resolve_permissions(USER, 999)


@pytest.mark.anyio
async def test_has_permission_with_channel_override(service, tenant_id, scenario):
    member = scenario["member"]
    await service.set_channel_override(
        OWNER_ID, tenant_id, member.id, 500, deny=PermissionSet.of(SEND)
    )

    assert await service.has_permission(USER, tenant_id, SEND)
    assert not await service.has_permission(USER, tenant_id, SEND, channel_id=500)
    assert await service.has_permission(USER, tenant_id, SEND, channel_id=501)

    await service.remove_channel_override(OWNER_ID, tenant_id, member.id, 500)
    assert await service.has_permission(USER, tenant_id, SEND, channel_id=500)


# ---------------------- hierarchy ----------------------

@pytest.mark.anyio
async def test_member_cannot_assign_mod(service, tenant_id, scenario):
    with pytest.raises(HierarchyViolation):
        await service.assign_role(MEMBER_ACTOR, tenant_id, OTHER, scenario["mod"].id)


@pytest.mark.anyio
async def test_mod_assigns_below_but_not_at_own_level(service, tenant_id, scenario):
    assignment = await service.assign_role(MOD_ACTOR, tenant_id, OTHER, scenario["member"].id)

    assert assignment.assigned_by == MOD_ACTOR
    assert assignment.source == AssignmentSource.manual

    with pytest.raises(HierarchyViolation):
        await service.assign_role(MOD_ACTOR, tenant_id, OTHER, scenario["mod"].id)


@pytest.mark.anyio
async def test_hierarchy_for_every_role_at_or_above_actor(service, tenant_id, scenario):
    senior = await create_role(service, tenant_id, "Senior", VIEW)

    assert await service.can_manage_role(MOD_ACTOR, tenant_id, scenario["member"].id)
    assert not await service.can_manage_role(MOD_ACTOR, tenant_id, scenario["mod"].id)
    assert not await service.can_manage_role(MOD_ACTOR, tenant_id, senior.id)
    assert await service.can_manage_role(OWNER_ID, tenant_id, senior.id)

    for role_id in (scenario["mod"].id, senior.id):
        with pytest.raises(HierarchyViolation):
            await service.assign_role(MOD_ACTOR, tenant_id, OTHER, role_id)


@pytest.mark.anyio
async def test_administrator_does_not_bypass_hierarchy(service, tenant_id, scenario):
    admin = await create_role(service, tenant_id, "Admin", Permission.ADMINISTRATOR)
    owner_only = await create_role(service, tenant_id, "Founders", VIEW)
    await add_member(service, tenant_id, 20, admin.id)

    resolved = await service.resolve_permissions(20, tenant_id, channel_id=500)
    assert resolved.is_administrator
    assert resolved.permissions == PermissionSet.all()

    await service.assign_role(20, tenant_id, OTHER, scenario["mod"].id)
    with pytest.raises(HierarchyViolation):
        await service.delete_role(20, tenant_id, owner_only.id)


@pytest.mark.anyio
async def test_role_that_cannot_manage_below(service, tenant_id, scenario):
    gatekeeper = await create_role(service, tenant_id, "Gatekeeper", VIEW, MANAGE_ROLES, can_manage_below=False)
    await add_member(service, tenant_id, 14, gatekeeper.id)

    assert gatekeeper.can_manage_below is False
    assert not await service.can_manage_role(14, tenant_id, scenario["member"].id)
    with pytest.raises(HierarchyViolation):
        await service.assign_role(14, tenant_id, OTHER, scenario["member"].id)
    with pytest.raises(HierarchyViolation):
        await service.create_role(14, tenant_id, RoleCreate(name="Helpers"))

    await service.update_role(OWNER_ID, tenant_id, gatekeeper.id, RoleUpdate(can_manage_below=True))

    assert await service.can_manage_role(14, tenant_id, scenario["member"].id)
    await service.assign_role(14, tenant_id, OTHER, scenario["member"].id)


# ---------------------- role CRUD ----------------------

@pytest.mark.anyio
async def test_create_role_on_top_and_at_position(service, tenant_id, scenario):
    top = await create_role(service, tenant_id, "Top", VIEW)
    helper = await create_role(service, tenant_id, "Helper", VIEW, position=2)

    assert top.position == 3
    assert helper.position == 2
    names = [r.name for r in await service.list_roles(tenant_id)]
    assert names == ["Top", "Mod", "Helper", "Member", "@everyone"]


@pytest.mark.anyio
async def test_concurrent_creates_never_duplicate_positions(service, tenant_id):
    await asyncio.gather(*(create_role(service, tenant_id, f"Role {i}", VIEW) for i in range(5)))

    positions = sorted(r.position for r in await service.list_roles(tenant_id))
    assert positions == [0, 1, 2, 3, 4, 5]


@pytest.mark.anyio
async def test_mod_created_role_lands_below_mod(service, tenant_id, scenario):
    role = await service.create_role(MOD_ACTOR, tenant_id, RoleCreate(name="Helper", permissions=["SEND_MESSAGES"]))

    assert role.position == 2
    roles = {r.name: r.position for r in await service.list_roles(tenant_id)}
    assert roles["Mod"] == 3

    with pytest.raises(HierarchyViolation):
        await service.create_role(MOD_ACTOR, tenant_id, RoleCreate(name="Above", position=4))


@pytest.mark.anyio
async def test_cannot_grant_permissions_you_lack(service, tenant_id, scenario):
    with pytest.raises(HierarchyViolation):
        await service.create_role(
            MOD_ACTOR, tenant_id, RoleCreate(name="Sneaky", permissions=["ADMINISTRATOR"])
        )
    with pytest.raises(HierarchyViolation):
        await service.update_role(
            MOD_ACTOR, tenant_id, scenario["member"].id, RoleUpdate(permissions=["SEND_MESSAGES", "BAN_MEMBERS"])
        )


@pytest.mark.anyio
async def test_member_without_manage_roles_cannot_create(service, tenant_id, scenario):
    with pytest.raises(HierarchyViolation):
        await service.create_role(MEMBER_ACTOR, tenant_id, RoleCreate(name="Nope"))


@pytest.mark.anyio
async def test_duplicate_name_rejected(service, tenant_id, scenario):
    with pytest.raises(DuplicateName):
        await create_role(service, tenant_id, "Member")

    with pytest.raises(DuplicateName):
        await service.update_role(OWNER_ID, tenant_id, scenario["mod"].id, RoleUpdate(name="Member"))


@pytest.mark.anyio
async def test_invalid_position_rejected(service, tenant_id, scenario):
    with pytest.raises(InvalidPosition):
        await create_role(service, tenant_id, "Far", VIEW, position=10)
    with pytest.raises(InvalidPosition):
        await service.reorder_role(OWNER_ID, tenant_id, scenario["mod"].id, 0)


@pytest.mark.anyio
async def test_unknown_permission_name(service, tenant_id):
    with pytest.raises(UnknownPermission):
        await service.create_role(OWNER_ID, tenant_id, RoleCreate(name="Weird", permissions=["FLY"]))


@pytest.mark.anyio
async def test_update_role_fields(service, tenant_id, scenario):
    updated = await service.update_role(
        OWNER_ID,
        tenant_id,
        scenario["member"].id,
        RoleUpdate(name="Members", color="#FF0000", hoist=True, permissions=["VIEW_CHANNEL"]),
    )

    assert updated.name == "Members"
    assert updated.hex_color == "#ff0000"
    assert updated.hoist
    stored = await service.get_role(tenant_id, scenario["member"].id)
    assert stored.name == "Members"
    assert stored.permissions == PermissionSet.of(VIEW)
    # Fields that were not sent are untouched
    assert stored.mentionable == scenario["member"].mentionable
    assert (await service.resolve_permissions(USER, tenant_id)).permissions == PermissionSet.of(VIEW)


@pytest.mark.anyio
async def test_update_role_position(service, tenant_id, scenario):
    await service.update_role(OWNER_ID, tenant_id, scenario["mod"].id, RoleUpdate(position=1))

    roles = {r.name: r.position for r in await service.list_roles(tenant_id)}
    assert roles == {"@everyone": 0, "Mod": 1, "Member": 2}


@pytest.mark.anyio
async def test_update_role_clears_automation_with_null(service, tenant_id):
    role = await create_role(
        service, tenant_id, "Trial", VIEW,
        auto_assignment=AutoAssignmentInput(trigger="on_join"),
        temporary=TemporaryRoleInput(duration_seconds=3600),
    )

    # Not sending the fields keeps them
    await service.update_role(OWNER_ID, tenant_id, role.id, RoleUpdate(color="#00FF00"))
    stored = await service.get_role(tenant_id, role.id)
    assert stored.auto_assignment is not None
    assert stored.temporary is not None

    await service.update_role(
        OWNER_ID, tenant_id, role.id, RoleUpdate(auto_assignment=None, temporary=None)
    )
    stored = await service.get_role(tenant_id, role.id)
    assert stored.auto_assignment is None
    assert stored.temporary is None
    assert await service.list_auto_assignable_roles(OWNER_ID, tenant_id) == []


@pytest.mark.anyio
async def test_default_role_protections(service, tenant_id):
    default = (await service.list_roles(tenant_id))[-1]

    with pytest.raises(DefaultRoleImmutable):
        await service.update_role(OWNER_ID, tenant_id, default.id, RoleUpdate(name="everyone"))
    with pytest.raises(DefaultRoleImmutable):
        await service.update_role(OWNER_ID, tenant_id, default.id, RoleUpdate(hoist=True))
    with pytest.raises(InvalidRoleConfiguration):
        await service.update_role(
            OWNER_ID, tenant_id, default.id, RoleUpdate(auto_assignment=AutoAssignmentInput(trigger="on_join"))
        )
    with pytest.raises(InvalidPosition):
        await service.reorder_role(OWNER_ID, tenant_id, default.id, 1)
    with pytest.raises(CannotDeleteDefaultRole):
        await service.delete_role(OWNER_ID, tenant_id, default.id)

    # Permissions of the default role stay editable
    updated = await service.update_role(
        OWNER_ID, tenant_id, default.id, RoleUpdate(permissions=["VIEW_CHANNEL", "SEND_MESSAGES"])
    )
    assert updated.permissions == PermissionSet.of(VIEW, SEND)


@pytest.mark.anyio
async def test_rejected_delete_is_logged_as_warning(service, tenant_id, caplog):
    default = (await service.list_roles(tenant_id))[-1]
    caplog.set_level(logging.DEBUG, logger="rolecore.roles")

    with pytest.raises(CannotDeleteDefaultRole):
        await service.delete_role(OWNER_ID, tenant_id, default.id)

    records = [r for r in caplog.records if r.name == "rolecore.roles"]
    assert any(r.levelno == logging.WARNING and "delete_role rejected" in r.getMessage() for r in records)
    assert not any(r.levelno >= logging.ERROR for r in records)


@pytest.mark.anyio
async def test_reorder_role(service, tenant_id, scenario):
    await create_role(service, tenant_id, "Top", VIEW)

    ordered = await service.reorder_role(OWNER_ID, tenant_id, scenario["member"].id, 3)

    assert [r.name for r in ordered] == ["@everyone", "Mod", "Top", "Member"]
    assert [r.position for r in ordered] == [0, 1, 2, 3]
    stored = {r.name: r.position for r in await service.list_roles(tenant_id)}
    assert stored == {"@everyone": 0, "Mod": 1, "Top": 2, "Member": 3}


@pytest.mark.anyio
async def test_mod_cannot_reorder_to_own_level(service, tenant_id, scenario):
    helper = await service.create_role(MOD_ACTOR, tenant_id, RoleCreate(name="Helper"))

    with pytest.raises(HierarchyViolation):
        await service.reorder_role(MOD_ACTOR, tenant_id, helper.id, 3)

    ordered = await service.reorder_role(MOD_ACTOR, tenant_id, helper.id, 1)
    assert [r.name for r in ordered] == ["@everyone", "Helper", "Member", "Mod"]


@pytest.mark.anyio
async def test_delete_role_cascades(service, repos, tenant_id, scenario):
    member = scenario["member"]

    holders = await service.delete_role(OWNER_ID, tenant_id, member.id)

    assert sorted(holders) == [USER, MEMBER_ACTOR]
    with pytest.raises(RoleNotFound):
        await service.get_role(tenant_id, member.id)
    assert [r.name for r in await service.member_roles(tenant_id, USER)] == ["@everyone"]
    assert (await service.resolve_permissions(USER, tenant_id)).permissions == PermissionSet.of(VIEW)

    # Gap is closed
    roles = {r.name: r.position for r in await service.list_roles(tenant_id)}
    assert roles == {"@everyone": 0, "Mod": 1}

    events = await service.assignment_history(tenant_id, role_id=member.id)
    cascaded = [e for e in events if e.action == AssignmentAction.cascaded]
    assert sorted(e.user_id for e in cascaded) == [USER, MEMBER_ACTOR]


@pytest.mark.anyio
async def test_delete_unknown_role(service, tenant_id):
    with pytest.raises(RoleNotFound):
        await service.delete_role(OWNER_ID, tenant_id, 12345)


# ---------------------- assignment state machine ----------------------

@pytest.mark.anyio
async def test_assign_and_revoke(service, tenant_id, scenario):
    mod = scenario["mod"]
    await service.assign_role(OWNER_ID, tenant_id, OTHER, mod.id)

    assert [r.name for r in await service.member_roles(tenant_id, OTHER)] == ["Mod", "@everyone"]
    with pytest.raises(AlreadyAssigned):
        await service.assign_role(OWNER_ID, tenant_id, OTHER, mod.id)
    existing = await service.assign_role(OWNER_ID, tenant_id, OTHER, mod.id, if_absent=True)
    assert existing.role_id == mod.id

    await service.revoke_role(OWNER_ID, tenant_id, OTHER, mod.id)
    with pytest.raises(NotAssigned):
        await service.revoke_role(OWNER_ID, tenant_id, OTHER, mod.id)

    actions = [e.action for e in await service.assignment_history(tenant_id, user_id=OTHER)]
    assert actions == [AssignmentAction.assigned, AssignmentAction.revoked]


@pytest.mark.anyio
async def test_default_role_assignment_rules(service, tenant_id, scenario):
    default = (await service.list_roles(tenant_id))[-1]

    with pytest.raises(AlreadyAssigned):
        await service.assign_role(OWNER_ID, tenant_id, USER, default.id)
    assert await service.assign_role(OWNER_ID, tenant_id, USER, default.id, if_absent=True) is None
    with pytest.raises(DefaultRoleImmutable):
        await service.revoke_role(OWNER_ID, tenant_id, USER, default.id)


@pytest.mark.anyio
async def test_assign_requires_membership(service, tenant_id, scenario):
    with pytest.raises(NotAMember):
        await service.assign_role(OWNER_ID, tenant_id, 404, scenario["member"].id)


@pytest.mark.anyio
async def test_concurrent_assign_and_revoke_stay_consistent(service, tenant_id, scenario):
    mod = scenario["mod"]

    results = await asyncio.gather(
        service.assign_role(OWNER_ID, tenant_id, OTHER, mod.id),
        service.revoke_role(OWNER_ID, tenant_id, OTHER, mod.id),
        return_exceptions=True,
    )

    held = mod.id in {r.id for r in await service.member_roles(tenant_id, OTHER)}
    if isinstance(results[1], NotAssigned):
        assert held
    else:
        assert results[1] is None
        assert not held

    actions = [e.action for e in await service.assignment_history(tenant_id, user_id=OTHER)]
    assert actions[0] == AssignmentAction.assigned
    assert len(actions) == (1 if held else 2)


@pytest.mark.anyio
async def test_concurrent_double_assign(service, tenant_id, scenario):
    mod = scenario["mod"]

    results = await asyncio.gather(
        service.assign_role(OWNER_ID, tenant_id, OTHER, mod.id),
        service.assign_role(OWNER_ID, tenant_id, OTHER, mod.id),
        return_exceptions=True,
    )

    assert sum(isinstance(r, AlreadyAssigned) for r in results) == 1
    assert len(await service.list_role_members(tenant_id, mod.id)) == 2  # MOD_ACTOR and OTHER


@pytest.mark.anyio
async def test_member_left_drops_assignments(service, repos, tenant_id, scenario):
    removed = await service.member_left(tenant_id, USER)

    assert removed == [scenario["member"].id]
    assert await repos.memberships.get_membership(tenant_id, USER) is None
    assert (await service.resolve_permissions(USER, tenant_id)).permissions == PermissionSet.of(VIEW)


# ---------------------- listings ----------------------

@pytest.mark.anyio
async def test_role_hierarchy_counts_members(service, tenant_id, scenario):
    summaries = await service.role_hierarchy(tenant_id)

    assert [(s.role.name, s.member_count) for s in summaries] == [("Mod", 1), ("Member", 2)]


@pytest.mark.anyio
async def test_role_hierarchy_reports_assignment_statistics(service, tenant_id, scenario, clock):
    started = clock.now
    idle = await create_role(service, tenant_id, "Idle", VIEW)
    clock.advance(hours=1)
    await service.revoke_role(OWNER_ID, tenant_id, USER, scenario["member"].id)
    await service.assign_role(OWNER_ID, tenant_id, USER, scenario["member"].id)

    summaries = {s.role.id: s for s in await service.role_hierarchy(tenant_id)}

    member = summaries[scenario["member"].id]
    assert member.member_count == 2
    assert member.statistics.assigned_count == 3
    assert member.statistics.last_assigned == clock.now
    mod = summaries[scenario["mod"].id]
    assert mod.statistics.assigned_count == 1
    assert mod.statistics.last_assigned == started
    assert summaries[idle.id].statistics.assigned_count == 0
    assert summaries[idle.id].statistics.last_assigned is None


@pytest.mark.anyio
async def test_list_role_members_is_clamped(service, tenant_id, scenario):
    members = await service.list_role_members(tenant_id, scenario["member"].id, limit=1)
    assert len(members) == 1

    members = await service.list_role_members(tenant_id, scenario["member"].id, limit=10_000)
    assert {m.user_id for m in members} == {USER, MEMBER_ACTOR}


@pytest.mark.anyio
async def test_list_auto_assignable_roles(service, tenant_id, scenario):
    await service.create_role(
        OWNER_ID,
        tenant_id,
        RoleCreate(name="Newbie", auto_assignment=AutoAssignmentInput(trigger="on_join")),
    )

    roles = await service.list_auto_assignable_roles(MOD_ACTOR, tenant_id)
    assert [r.name for r in roles] == ["Newbie"]

    with pytest.raises(HierarchyViolation):
        await service.list_auto_assignable_roles(MEMBER_ACTOR, tenant_id)

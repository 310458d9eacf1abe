"""
AutoAssignmentEvaluator

Applies declarative auto-assignment rules without caller involvement:
- on_join rules fire once, when a member joins the tenant
- after_elapsed rules fire on the recurring sweep once the member has been
  in the tenant long enough (reference = membership join time)
- activity_threshold rules fire on the sweep once the activity counter
  reaches the threshold
- temporary grants are expired on the sweep (reference = assignment time)

Every grant/expiry goes through RoleService, acting as the system actor, so it
takes the same per-tenant mutation scope and hierarchy checks as manual
operations. A failure for one member/rule is logged and skipped.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from rolecore.core.logging import automation_logger
from rolecore.permissions.entities import SYSTEM_ACTOR, AssignmentSource, AutoTrigger, Membership, Role
from rolecore.permissions.exceptions import PermissionsError
from rolecore.permissions.ports import (
    ActivityMetrics,
    AssignmentRepository,
    MembershipDirectory,
    RoleRepository,
)
from rolecore.permissions.repository import utcnow
from rolecore.permissions.service import RoleService, is_expired


@dataclass
class SweepResult:
    """Counters for one sweep (one tenant or all of them)."""
    assigned: int = 0
    expired: int = 0
    failed: int = 0
    tenants: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "SweepResult") -> None:
        self.assigned += other.assigned
        self.expired += other.expired
        self.failed += other.failed
        self.tenants += other.tenants
        self.errors.extend(other.errors)

    def as_dict(self) -> dict:
        return {
            "assigned": self.assigned,
            "expired": self.expired,
            "failed": self.failed,
            "tenants": self.tenants,
        }


class AutoAssignmentEvaluator:

    def __init__(
        self,
        service: RoleService,
        roles: RoleRepository,
        assignments: AssignmentRepository,
        memberships: MembershipDirectory,
        activity_metrics: Optional[ActivityMetrics] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.service = service
        self.roles = roles
        self.assignments = assignments
        self.memberships = memberships
        self.activity_metrics = activity_metrics
        self.clock = clock

    # ---------------------- join ----------------------

    async def on_member_join(
        self, tenant_id: int, user_id: int, joined_at: Optional[datetime] = None
    ) -> list[int]:
        """Record the membership and grant every on_join role, lowest position first.

        Only a new membership triggers the rules; a repeated join event for an
        existing member grants nothing. Returns the ids of the roles granted.
        """
        _, created = await self.service.member_joined(tenant_id, user_id, joined_at)
        if not created:
            automation_logger.debug(
                f"[Automation] User {user_id} already a member of tenant {tenant_id}, on_join rules skipped"
            )
            return []

        graph = await self.roles.load_graph(tenant_id)
        granted = []
        for role in graph.auto_assignable(AutoTrigger.on_join):
            try:
                assignment = await self.service.assign_role(
                    SYSTEM_ACTOR, tenant_id, user_id, role.id, if_absent=True
                )
            except PermissionsError as e:
                automation_logger.warning(
                    f"[Automation] on_join role {role.id} skipped for user {user_id} in tenant {tenant_id}: {e.detail}",
                    error_code=e.code,
                )
                continue
            except Exception as e:
                automation_logger.error(
                    f"[Automation] on_join role {role.id} failed for user {user_id} in tenant {tenant_id}",
                    error=e,
                )
                continue
            if assignment is not None:
                granted.append(role.id)

        if granted:
            automation_logger.info(
                f"[Automation] User {user_id} joined tenant {tenant_id}, granted roles {granted}"
            )
        return granted

    # ---------------------- sweep ----------------------

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Evaluate time- and activity-based rules for every tenant."""
        now = now or self.clock()
        result = SweepResult()
        for tenant_id in await self.roles.list_tenant_ids():
            try:
                result.merge(await self.sweep_tenant(tenant_id, now))
            except Exception as e:
                # Misconfigured tenant or storage failure; the others still run.
                result.failed += 1
                result.errors.append(f"tenant {tenant_id}: {getattr(e, 'detail', e)}")
                automation_logger.error(
                    f"[Automation] Sweep of tenant {tenant_id} failed",
                    error=e,
                )
        automation_logger.info("[Automation] Sweep complete", **result.as_dict())
        return result

    async def sweep_tenant(self, tenant_id: int, now: Optional[datetime] = None) -> SweepResult:
        now = now or self.clock()
        result = SweepResult(tenants=1)
        graph = await self.roles.load_graph(tenant_id)

        await self._expire_temporary(tenant_id, [r for r in graph if r.temporary is not None], now, result)

        elapsed_roles = graph.auto_assignable(AutoTrigger.after_elapsed)
        activity_roles = graph.auto_assignable(AutoTrigger.activity_threshold)
        if self.activity_metrics is None:
            activity_roles = []
        if not elapsed_roles and not activity_roles:
            return result

        for membership in await self.memberships.list_members(tenant_id):
            for role in elapsed_roles:
                if now - membership.joined_at >= role.auto_assignment.elapsed:
                    await self._grant(membership, role, result)
            if activity_roles:
                counter = await self._activity_counter(membership, result)
                if counter is None:
                    continue
                for role in activity_roles:
                    if counter >= role.auto_assignment.threshold:
                        await self._grant(membership, role, result)
        return result

    async def _activity_counter(self, membership: Membership, result: SweepResult) -> Optional[int]:
        try:
            return await self.activity_metrics.counter_for(membership.user_id, membership.tenant_id)
        except Exception as e:
            result.failed += 1
            result.errors.append(f"activity counter user {membership.user_id}: {e}")
            automation_logger.error(
                f"[Automation] Activity counter unavailable for user {membership.user_id}",
                error=e,
                tenant_id=membership.tenant_id,
            )
            return None

    async def _expire_temporary(
        self, tenant_id: int, roles: list[Role], now: datetime, result: SweepResult
    ) -> None:
        if not roles:
            return
        by_id = {r.id: r for r in roles}
        for assignment in await self.assignments.list_assignments(tenant_id, list(by_id)):
            if not is_expired(by_id[assignment.role_id], assignment, now):
                continue
            try:
                if await self.service.expire_role(tenant_id, assignment.user_id, assignment.role_id, now):
                    result.expired += 1
            except PermissionsError as e:
                result.failed += 1
                result.errors.append(f"expire role {assignment.role_id} user {assignment.user_id}: {e.detail}")
                automation_logger.warning(
                    f"[Automation] Could not expire role {assignment.role_id} for user {assignment.user_id}: {e.detail}",
                    tenant_id=tenant_id,
                )
            except Exception as e:
                result.failed += 1
                result.errors.append(f"expire role {assignment.role_id} user {assignment.user_id}: {e}")
                automation_logger.error(
                    f"[Automation] Expiry of role {assignment.role_id} for user {assignment.user_id} failed",
                    error=e,
                    tenant_id=tenant_id,
                )

    async def _grant(self, membership: Membership, role: Role, result: SweepResult) -> None:
        tenant_id, user_id = membership.tenant_id, membership.user_id
        try:
            # Once per membership: a manual revoke after an automatic grant sticks.
            if await self.assignments.auto_granted_since(tenant_id, user_id, role.id, membership.joined_at):
                return
            assignment = await self.service.assign_role(
                SYSTEM_ACTOR, tenant_id, user_id, role.id, if_absent=True
            )
        except PermissionsError as e:
            result.failed += 1
            result.errors.append(f"assign role {role.id} user {user_id}: {e.detail}")
            automation_logger.warning(
                f"[Automation] Could not assign role {role.id} to user {user_id}: {e.detail}",
                tenant_id=tenant_id,
                trigger=role.auto_assignment.trigger.value,
            )
            return
        except Exception as e:
            result.failed += 1
            result.errors.append(f"assign role {role.id} user {user_id}: {e}")
            automation_logger.error(
                f"[Automation] Assigning role {role.id} to user {user_id} failed",
                error=e,
                tenant_id=tenant_id,
                trigger=role.auto_assignment.trigger.value,
            )
            return
        if assignment is not None and assignment.source == AssignmentSource.auto:
            result.assigned += 1

"""
group_tiers/services/membership_service.py
Membership state machine.

A membership is created ACTIVE, may change role while ACTIVE and ends as LEFT.
Rows are never deleted. Every mutation runs in one transaction with the group
row locked and finishes by recomputing the group's derived status.

Rejoin deadline: leaving stamps 23:59:59 of the next working day. A student
whose latest membership is LEFT may join again until that moment; after it,
only an admin bypass lets them back in.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import transaction
from group_tiers.errors import (
    ConflictError, ErrorCode, ForbiddenError, NotFoundError, validate_enum
)
from group_tiers.orm.group import Group
from group_tiers.orm.identity import Student
from group_tiers.orm.membership import (
    ALL_ROLES, LEADERSHIP_ROLES, Membership, MembershipRole, MembershipStatus
)
from group_tiers.rbac import Principal, ensure_admin
from group_tiers.services import audit_service, identity_service, phase_service
from group_tiers.services.policy_service import OperationalPolicy, get_operational_policy
from group_tiers.services.working_days import load_holidays, rejoin_deadline
from group_tiers.state_machines.group_status import (
    GroupStatusMachine, count_active_members, ensure_not_frozen, lock_group
)

logger = logging.getLogger(__name__)


# =============================================================================
# Shared building blocks (run inside the caller's transaction)
# =============================================================================

async def get_active_membership(db: AsyncSession, student_id: int, lock: bool = False) -> Optional[Membership]:
    query = select(Membership).where(
        Membership.student_id == student_id,
        Membership.status == MembershipStatus.ACTIVE.value,
    )
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalars().first()


async def get_latest_membership(db: AsyncSession, student_id: int) -> Optional[Membership]:
    result = await db.execute(
        select(Membership)
        .where(Membership.student_id == student_id)
        .order_by(Membership.join_date.desc(), Membership.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def ensure_can_join(
    db: AsyncSession,
    student_id: int,
    group: Group,
    policy: OperationalPolicy,
    bypass_rejoin_deadline: bool,
    now: datetime
) -> None:
    """Every precondition of a join, re-read under the group lock."""
    if await get_active_membership(db, student_id, lock=True):
        raise ConflictError("Student already belongs to a group", code=ErrorCode.ALREADY_IN_GROUP)

    if not bypass_rejoin_deadline:
        latest = await get_latest_membership(db, student_id)
        if (
            latest is not None
            and latest.status == MembershipStatus.LEFT.value
            and latest.rejoin_deadline_at is not None
            and now > latest.rejoin_deadline_at
        ):
            raise ConflictError(
                "Rejoin deadline has passed. An admin must approve this join.",
                code=ErrorCode.REJOIN_DEADLINE_PASSED,
                details={"rejoin_deadline_at": latest.rejoin_deadline_at.isoformat()}
            )

    ensure_not_frozen(group, "Cannot join a frozen group")

    active_count = await count_active_members(db, group.id)
    if active_count >= policy.max_group_members:
        raise ConflictError(
            "Group is full",
            code=ErrorCode.GROUP_FULL,
            details={"active_members": active_count, "max_group_members": policy.max_group_members}
        )


async def insert_membership(
    db: AsyncSession,
    student_id: int,
    group: Group,
    policy: OperationalPolicy,
    now: datetime
) -> Membership:
    incubation_end = None
    if policy.incubation_duration_days > 0:
        incubation_end = now + timedelta(days=policy.incubation_duration_days)

    membership = Membership(
        student_id=student_id,
        group_id=group.id,
        role=MembershipRole.MEMBER.value,
        status=MembershipStatus.ACTIVE.value,
        join_date=now,
        incubation_end_date=incubation_end,
    )
    db.add(membership)
    await db.flush()
    return membership


async def mark_left(db: AsyncSession, membership: Membership, now: datetime) -> None:
    holidays = await load_holidays(db, since=now.date())
    membership.status = MembershipStatus.LEFT.value
    membership.leave_date = now
    membership.rejoin_deadline_at = rejoin_deadline(now, holidays)
    await db.flush()


async def ensure_change_day(db: AsyncSession, now: datetime, action: str = "Leave") -> None:
    phase = await phase_service.get_active_phase(db)
    if not phase:
        raise ConflictError(
            f"No active phase found. {action} is allowed only on Change Day.",
            code=ErrorCode.NO_ACTIVE_PHASE
        )
    if now.date() != phase.change_day:
        raise ConflictError(
            f"{action} is allowed only on Change Day",
            code=ErrorCode.NOT_CHANGE_DAY,
            details={"change_day": phase.change_day.isoformat()}
        )


def _result(membership: Membership, group: Group, member_count: int) -> Dict[str, Any]:
    result = membership.to_dict()
    result["group_status"] = group.status
    result["member_count"] = member_count
    return result


# =============================================================================
# Operations
# =============================================================================

async def join(
    db: AsyncSession,
    student_id: int,
    group_id: int,
    bypass_rejoin_deadline: bool = False,
    actor: Optional[Principal] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Add the student to the group as an ACTIVE MEMBER."""
    now = now or datetime.utcnow()
    if bypass_rejoin_deadline and actor is not None:
        ensure_admin(actor, "Only an admin can bypass the rejoin deadline")

    async with transaction(db):
        policy = await get_operational_policy(db)
        if not await db.get(Student, student_id):
            raise NotFoundError("Student", student_id)
        group = await lock_group(db, group_id)
        await ensure_can_join(db, student_id, group, policy, bypass_rejoin_deadline, now)
        membership = await insert_membership(db, student_id, group, policy, now)
        await GroupStatusMachine.refresh(db, group, policy)
        member_count = await count_active_members(db, group.id)

    logger.info(f"Student {student_id} joined group {group_id} (bypass={bypass_rejoin_deadline})")
    await audit_service.log_action_safe(
        db,
        action="MEMBERSHIP_JOINED",
        entity_type="MEMBERSHIP",
        entity_id=membership.id,
        actor=actor,
        reason_code="REJOIN_DEADLINE_BYPASSED" if bypass_rejoin_deadline else None,
        details={"student_id": student_id, "group_id": group_id},
    )
    return _result(membership, group, member_count)


async def _leave_locked(
    db: AsyncSession,
    student_id: int,
    group_id: int,
    policy: OperationalPolicy,
    enforce_frozen: bool,
    now: datetime
):
    group = await lock_group(db, group_id)
    if enforce_frozen:
        ensure_not_frozen(group, "Cannot leave a frozen group")

    result = await db.execute(
        select(Membership).where(
            Membership.student_id == student_id,
            Membership.group_id == group_id,
            Membership.status == MembershipStatus.ACTIVE.value,
        ).with_for_update()
    )
    membership = result.scalars().first()
    if not membership:
        raise NotFoundError("Active membership", f"{student_id}/{group_id}", code=ErrorCode.MEMBERSHIP_NOT_ACTIVE)

    await mark_left(db, membership, now)
    await GroupStatusMachine.refresh(db, group, policy)
    member_count = await count_active_members(db, group.id)
    return membership, group, member_count


async def leave(
    db: AsyncSession,
    student_id: int,
    group_id: int,
    bypass_change_day: bool = False,
    actor: Optional[Principal] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """End the student's ACTIVE membership in the group."""
    now = now or datetime.utcnow()
    if bypass_change_day and actor is not None:
        ensure_admin(actor, "Only an admin can leave outside Change Day")

    async with transaction(db):
        policy = await get_operational_policy(db)
        if policy.enforce_change_day_for_leave and not bypass_change_day:
            await ensure_change_day(db, now)
        membership, group, member_count = await _leave_locked(
            db, student_id, group_id, policy, enforce_frozen=True, now=now
        )

    logger.info(f"Student {student_id} left group {group_id}, rejoin deadline {membership.rejoin_deadline_at}")
    await audit_service.log_action_safe(
        db,
        action="MEMBERSHIP_LEFT",
        entity_type="MEMBERSHIP",
        entity_id=membership.id,
        actor=actor,
        reason_code="CHANGE_DAY_BYPASSED" if bypass_change_day else None,
        details={"student_id": student_id, "group_id": group_id},
    )
    return _result(membership, group, member_count)


async def _is_active_captain(db: AsyncSession, principal: Principal, group_id: int) -> bool:
    if principal.is_admin:
        return False
    student = await identity_service.get_student_by_user_id(db, principal.user_id)
    if not student:
        return False
    result = await db.execute(
        select(Membership.id).where(
            Membership.student_id == student.id,
            Membership.group_id == group_id,
            Membership.status == MembershipStatus.ACTIVE.value,
            Membership.role == MembershipRole.CAPTAIN.value,
        )
    )
    return result.first() is not None


async def ensure_admin_or_captain(db: AsyncSession, actor: Principal, group_id: int, message: str) -> None:
    if actor.is_admin:
        return
    if not await _is_active_captain(db, actor, group_id):
        logger.warning(f"User {actor.user_id} is not captain of group {group_id}")
        raise ForbiddenError(message, code=ErrorCode.CAPTAIN_REQUIRED)


async def update_role(
    db: AsyncSession,
    membership_id: int,
    new_role: str,
    actor: Principal
) -> Dict[str, Any]:
    """Change the role of an ACTIVE membership. Admin or the group's captain."""
    new_role = validate_enum(new_role, ALL_ROLES, "role", code=ErrorCode.INVALID_ROLE)

    async with transaction(db):
        policy = await get_operational_policy(db)
        membership = await db.get(Membership, membership_id)
        if not membership:
            raise NotFoundError("Membership", membership_id)

        group = await lock_group(db, membership.group_id)
        result = await db.execute(
            select(Membership).where(Membership.id == membership_id).with_for_update()
        )
        membership = result.scalar_one()
        if membership.status != MembershipStatus.ACTIVE.value:
            raise ConflictError("Only ACTIVE membership can be updated", code=ErrorCode.MEMBERSHIP_NOT_ACTIVE)
        ensure_not_frozen(group)
        await ensure_admin_or_captain(db, actor, group.id, "Only the group captain can modify member roles")

        if new_role in LEADERSHIP_ROLES:
            holder = (await db.execute(
                select(Membership).where(
                    Membership.group_id == group.id,
                    Membership.role == new_role,
                    Membership.status == MembershipStatus.ACTIVE.value,
                ).with_for_update()
            )).scalars().first()
            if holder is not None and holder.id != membership.id:
                raise ConflictError(
                    f"This group already has a {new_role}",
                    code=ErrorCode.ROLE_ALREADY_FILLED,
                    details={"holder_membership_id": holder.id}
                )

        previous_role = membership.role
        membership.role = new_role
        await GroupStatusMachine.refresh(db, group, policy)

    logger.info(f"Membership {membership_id} role {previous_role} -> {new_role} by user {actor.user_id}")
    await audit_service.log_action_safe(
        db,
        action="MEMBERSHIP_ROLE_UPDATED",
        entity_type="MEMBERSHIP",
        entity_id=membership_id,
        actor=actor,
        details={"previous_role": previous_role, "new_role": new_role},
    )
    result = membership.to_dict()
    result["group_status"] = group.status
    return result


async def admin_remove(
    db: AsyncSession,
    membership_id: int,
    actor: Principal,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Admin-only leave on behalf of a member, change-day check bypassed."""
    ensure_admin(actor)
    now = now or datetime.utcnow()

    async with transaction(db):
        membership = await db.get(Membership, membership_id)
        if not membership:
            raise NotFoundError("Membership", membership_id)
        if membership.status != MembershipStatus.ACTIVE.value:
            raise ConflictError("Membership is already left", code=ErrorCode.MEMBERSHIP_NOT_ACTIVE)

        policy = await get_operational_policy(db)
        student_id, group_id = membership.student_id, membership.group_id
        membership, group, member_count = await _leave_locked(
            db, student_id, group_id, policy, enforce_frozen=False, now=now
        )

    logger.info(f"Membership {membership_id} removed by admin user {actor.user_id}")
    await audit_service.log_action_safe(
        db,
        action="MEMBERSHIP_REMOVED",
        entity_type="MEMBERSHIP",
        entity_id=membership_id,
        actor=actor,
        details={"student_id": student_id, "group_id": group_id},
    )
    return {
        "membership_id": membership_id,
        "student_id": student_id,
        "group_id": group_id,
        "membership_status": membership.status,
        "group_status": group.status,
        "member_count": member_count,
    }


async def switch_group(
    db: AsyncSession,
    student_id: int,
    new_group_id: int,
    actor: Optional[Principal] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Move an ACTIVE membership to another group on Change Day."""
    now = now or datetime.utcnow()

    async with transaction(db):
        policy = await get_operational_policy(db)
        await ensure_change_day(db, now, action="Group switching")

        current = await get_active_membership(db, student_id, lock=True)
        if not current:
            raise NotFoundError("Active membership", student_id, code=ErrorCode.MEMBERSHIP_NOT_ACTIVE)
        if current.group_id == new_group_id:
            raise ConflictError("Student is already in this group", code=ErrorCode.ALREADY_IN_GROUP)

        # Lock both groups in id order.
        first_id, second_id = sorted([current.group_id, new_group_id])
        locked = {first_id: await lock_group(db, first_id), second_id: await lock_group(db, second_id)}
        old_group, new_group = locked[current.group_id], locked[new_group_id]

        ensure_not_frozen(old_group, "Cannot switch out of a frozen group")
        ensure_not_frozen(new_group, "Cannot switch into a frozen group")
        target_count = await count_active_members(db, new_group.id)
        if target_count >= policy.max_group_members:
            raise ConflictError("Target group is full", code=ErrorCode.GROUP_FULL)

        await mark_left(db, current, now)
        membership = await insert_membership(db, student_id, new_group, policy, now)
        await GroupStatusMachine.refresh(db, old_group, policy)
        await GroupStatusMachine.refresh(db, new_group, policy)
        old_count = await count_active_members(db, old_group.id)
        new_count = await count_active_members(db, new_group.id)

    logger.info(f"Student {student_id} switched group {old_group.id} -> {new_group.id}")
    await audit_service.log_action_safe(
        db,
        action="MEMBERSHIP_SWITCHED",
        entity_type="MEMBERSHIP",
        entity_id=membership.id,
        actor=actor,
        details={"student_id": student_id, "from_group_id": old_group.id, "to_group_id": new_group.id},
    )
    return {
        "membership_id": membership.id,
        "student_id": student_id,
        "previous_group": {"group_id": old_group.id, "status": old_group.status, "member_count": old_count},
        "new_group": {"group_id": new_group.id, "status": new_group.status, "member_count": new_count},
        "incubation_end_date": membership.incubation_end_date.isoformat() if membership.incubation_end_date else None,
    }


# =============================================================================
# Queries
# =============================================================================

async def get_my_group(db: AsyncSession, student_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Active membership with its group, or the rejoin window of the last one."""
    now = now or datetime.utcnow()
    membership = await get_active_membership(db, student_id)
    if membership:
        group = await db.get(Group, membership.group_id)
        return {
            "in_group": True,
            "membership": membership.to_dict(),
            "group": group.to_dict(),
            "member_count": await count_active_members(db, group.id),
            "in_incubation": bool(membership.incubation_end_date and now < membership.incubation_end_date),
        }

    latest = await get_latest_membership(db, student_id)
    deadline = latest.rejoin_deadline_at if latest else None
    return {
        "in_group": False,
        "membership": None,
        "group": None,
        "rejoin_deadline_at": deadline.isoformat() if deadline else None,
        "can_rejoin_without_approval": deadline is None or now <= deadline,
    }


async def list_group_members(
    db: AsyncSession,
    group_id: int,
    include_left: bool = False
) -> List[Dict[str, Any]]:
    if not await db.get(Group, group_id):
        raise NotFoundError("Group", group_id)

    query = (
        select(Membership, Student)
        .join(Student, Student.id == Membership.student_id)
        .where(Membership.group_id == group_id)
    )
    if not include_left:
        query = query.where(Membership.status == MembershipStatus.ACTIVE.value)
    query = query.order_by(Membership.join_date, Membership.id)

    result = await db.execute(query)
    members = []
    for membership, student in result.all():
        item = membership.to_dict()
        item["student_name"] = student.name
        item["student_email"] = student.email
        members.append(item)
    return members


async def list_memberships(db: AsyncSession, status: Optional[str] = None) -> List[Dict[str, Any]]:
    query = select(Membership)
    if status:
        status = validate_enum(status, [s.value for s in MembershipStatus], "status", code=ErrorCode.INVALID_STATUS)
        query = query.where(Membership.status == status)
    result = await db.execute(query.order_by(Membership.id))
    return [row.to_dict() for row in result.scalars().all()]

"""
group_tiers/services/leadership_request_service.py
Leadership-role request workflow.

Only an ACTIVE plain MEMBER may ask for a leadership role, and only for a
role the group is currently missing. Decisions are admin-only, so a CAPTAIN
request is never approved by a peer captain.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import transaction
from group_tiers.errors import ConflictError, ErrorCode, ForbiddenError, NotFoundError, validate_enum
from group_tiers.orm.group import Group
from group_tiers.orm.identity import Student
from group_tiers.orm.membership import LEADERSHIP_ROLES, Membership, MembershipRole, MembershipStatus
from group_tiers.orm.requests import LeadershipRoleRequest, RequestStatus
from group_tiers.rbac import Principal, ensure_admin
from group_tiers.services import audit_service, identity_service
from group_tiers.services.policy_service import get_operational_policy
from group_tiers.services.request_workflow import (
    claim_pending_request, duplicate_pending, normalize_decision
)
from group_tiers.state_machines.group_status import GroupStatusMachine, ensure_not_frozen, lock_group

logger = logging.getLogger(__name__)

ATTENTION_GROUP_LIMIT = 8


async def apply_leadership_request(
    db: AsyncSession,
    actor: Principal,
    group_id: int,
    requested_role: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    requested_role = validate_enum(requested_role, LEADERSHIP_ROLES, "requested_role", code=ErrorCode.INVALID_ROLE)
    now = now or datetime.utcnow()
    student_id = await identity_service.resolve_student_id(db, actor)

    async with transaction(db):
        group = await lock_group(db, group_id)

        membership = (await db.execute(
            select(Membership).where(
                Membership.student_id == student_id,
                Membership.group_id == group_id,
                Membership.status == MembershipStatus.ACTIVE.value,
            ).with_for_update()
        )).scalars().first()
        if not membership:
            raise ForbiddenError(
                "You must be an active member of this group to request a leadership role",
                code=ErrorCode.MEMBERSHIP_REQUIRED
            )

        ensure_not_frozen(group, "Cannot request leadership role for a frozen group")

        if membership.role != MembershipRole.MEMBER.value:
            raise ConflictError(
                "You already hold a leadership role in this group",
                code=ErrorCode.ROLE_ALREADY_FILLED
            )

        pending = (await db.execute(
            select(LeadershipRoleRequest.id).where(
                LeadershipRoleRequest.student_id == student_id,
                LeadershipRoleRequest.group_id == group_id,
                LeadershipRoleRequest.status == RequestStatus.PENDING.value,
            )
        )).first()
        if pending:
            raise duplicate_pending("leadership role request for this group")

        snapshot = await GroupStatusMachine.leadership_snapshot(db, group_id)
        if requested_role not in snapshot["missing_roles"]:
            raise ConflictError(
                f"The {requested_role} role is already filled",
                code=ErrorCode.ROLE_ALREADY_FILLED
            )

        request = LeadershipRoleRequest(
            membership_id=membership.id,
            student_id=student_id,
            group_id=group_id,
            requested_role=requested_role,
            request_reason=(reason or "").strip() or None,
            status=RequestStatus.PENDING.value,
            requested_at=now,
        )
        db.add(request)
        await db.flush()

    logger.info(f"Leadership request {request.id}: student {student_id} wants {requested_role} in group {group_id}")
    await audit_service.log_action_safe(
        db,
        action="LEADERSHIP_REQUEST_CREATED",
        entity_type="LEADERSHIP_REQUEST",
        entity_id=request.id,
        actor=actor,
        details={"group_id": group_id, "requested_role": requested_role},
    )

    result = request.to_dict()
    result["missing_roles_at_request_time"] = snapshot["missing_roles"]
    result["leadership_alert_triggered"] = (
        snapshot["active_member_count"] > 0 and snapshot["active_leadership_count"] == 0
    )
    return result


async def decide_leadership_request(
    db: AsyncSession,
    request_id: int,
    status: str,
    reason: Optional[str],
    actor: Principal,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    ensure_admin(actor, "Only admin can manage leadership role requests")
    decision = normalize_decision(status)
    now = now or datetime.utcnow()

    async with transaction(db):
        request = await db.get(LeadershipRoleRequest, request_id)
        if not request:
            raise NotFoundError("Leadership role request", request_id)

        group = await lock_group(db, request.group_id)
        await claim_pending_request(
            db, LeadershipRoleRequest, request_id, decision, actor.user_id, reason, now,
            label="Leadership role request"
        )

        if decision == RequestStatus.APPROVED.value:
            membership = (await db.execute(
                select(Membership).where(Membership.id == request.membership_id).with_for_update()
            )).scalar_one_or_none()
            if not membership:
                raise NotFoundError("Membership", request.membership_id)
            if membership.status != MembershipStatus.ACTIVE.value:
                raise ConflictError("Membership is not active", code=ErrorCode.MEMBERSHIP_NOT_ACTIVE)
            if membership.student_id != request.student_id or membership.group_id != request.group_id:
                raise ConflictError("Membership no longer matches the request", code=ErrorCode.STATE_DRIFTED)
            if membership.role != MembershipRole.MEMBER.value:
                raise ConflictError("Student already holds a leadership role", code=ErrorCode.STATE_DRIFTED)

            ensure_not_frozen(group, "Cannot approve leadership role request for a frozen group")

            holder = (await db.execute(
                select(Membership.id).where(
                    Membership.group_id == request.group_id,
                    Membership.role == request.requested_role,
                    Membership.status == MembershipStatus.ACTIVE.value,
                ).with_for_update()
            )).first()
            if holder:
                raise ConflictError(
                    f"Group already has an active {request.requested_role}",
                    code=ErrorCode.ROLE_ALREADY_FILLED
                )

            membership.role = request.requested_role
            policy = await get_operational_policy(db)
            await GroupStatusMachine.refresh(db, group, policy)

        await db.refresh(request)

    logger.info(f"Leadership request {request_id} {decision} by user {actor.user_id}")
    await audit_service.log_action_safe(
        db,
        action=f"LEADERSHIP_REQUEST_{decision}",
        entity_type="LEADERSHIP_REQUEST",
        entity_id=request_id,
        actor=actor,
        details={"group_id": request.group_id, "requested_role": request.requested_role},
    )
    result = request.to_dict()
    result["group_status"] = group.status
    return result


async def _list(db: AsyncSession, *criteria) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(LeadershipRoleRequest, Student)
        .join(Student, Student.id == LeadershipRoleRequest.student_id)
        .where(*criteria)
        .order_by(LeadershipRoleRequest.requested_at, LeadershipRoleRequest.id)
    )
    rows = []
    for request, student in result.all():
        item = request.to_dict()
        item["student_name"] = student.name
        rows.append(item)
    return rows


async def list_all_pending(db: AsyncSession, actor: Principal) -> List[Dict[str, Any]]:
    ensure_admin(actor)
    return await _list(db, LeadershipRoleRequest.status == RequestStatus.PENDING.value)


async def list_pending_by_group(db: AsyncSession, group_id: int, actor: Principal) -> List[Dict[str, Any]]:
    ensure_admin(actor)
    return await _list(
        db,
        LeadershipRoleRequest.group_id == group_id,
        LeadershipRoleRequest.status == RequestStatus.PENDING.value,
    )


async def list_my_leadership_requests(db: AsyncSession, actor: Principal) -> List[Dict[str, Any]]:
    student_id = await identity_service.resolve_student_id(db, actor)
    return await _list(db, LeadershipRoleRequest.student_id == student_id)


async def get_admin_summary(db: AsyncSession, actor: Principal) -> Dict[str, Any]:
    """Pending request count plus groups that have members but no leaders."""
    ensure_admin(actor)

    pending_count = (await db.execute(
        select(func.count(LeadershipRoleRequest.id))
        .where(LeadershipRoleRequest.status == RequestStatus.PENDING.value)
    )).scalar() or 0

    active = Membership.status == MembershipStatus.ACTIVE.value
    leader_count = func.sum(case((Membership.role.in_(LEADERSHIP_ROLES), 1), else_=0))
    result = await db.execute(
        select(Group.id, Group.group_code, Group.group_name, func.count(Membership.id))
        .join(Membership, Membership.group_id == Group.id)
        .where(active)
        .group_by(Group.id, Group.group_code, Group.group_name)
        .having(leader_count == 0)
        .order_by(func.count(Membership.id).desc(), Group.id)
    )
    groups = [
        {"group_id": gid, "group_code": code, "group_name": name, "active_member_count": count}
        for gid, code, name, count in result.all()
    ]

    return {
        "pending_request_count": int(pending_count),
        "groups_without_leadership_count": len(groups),
        "total_attention_count": int(pending_count) + len(groups),
        "groups_without_leadership": groups[:ATTENTION_GROUP_LIMIT],
    }

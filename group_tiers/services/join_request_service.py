"""
group_tiers/services/join_request_service.py
Join request workflow: a student applies, the group's captain or an admin
decides. Approval re-runs every join precondition against live state.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import transaction
from group_tiers.errors import ConflictError, ErrorCode, NotFoundError
from group_tiers.orm.identity import Student
from group_tiers.orm.requests import JoinRequest, RequestStatus
from group_tiers.rbac import Principal
from group_tiers.services import audit_service, identity_service, membership_service
from group_tiers.services.policy_service import get_operational_policy
from group_tiers.services.request_workflow import (
    claim_pending_request, duplicate_pending, normalize_decision
)
from group_tiers.state_machines.group_status import (
    GroupStatusMachine, count_active_members, ensure_not_frozen, lock_group
)

logger = logging.getLogger(__name__)


async def apply_join_request(
    db: AsyncSession,
    actor: Principal,
    group_id: int,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    student_id = await identity_service.resolve_student_id(db, actor)

    async with transaction(db):
        policy = await get_operational_policy(db)
        group = await lock_group(db, group_id)
        ensure_not_frozen(group, "Cannot request to join a frozen group")

        if await membership_service.get_active_membership(db, student_id):
            raise ConflictError("Student already belongs to a group", code=ErrorCode.ALREADY_IN_GROUP)

        pending = (await db.execute(
            select(JoinRequest.id).where(
                JoinRequest.student_id == student_id,
                JoinRequest.group_id == group_id,
                JoinRequest.status == RequestStatus.PENDING.value,
            )
        )).first()
        if pending:
            raise duplicate_pending("join request for this group")

        if await count_active_members(db, group_id) >= policy.max_group_members:
            raise ConflictError("Group is full", code=ErrorCode.GROUP_FULL)

        request = JoinRequest(
            student_id=student_id,
            group_id=group_id,
            status=RequestStatus.PENDING.value,
            requested_at=now,
        )
        db.add(request)
        await db.flush()

    logger.info(f"Join request {request.id}: student {student_id} -> group {group_id}")
    await audit_service.log_action_safe(
        db,
        action="JOIN_REQUEST_CREATED",
        entity_type="JOIN_REQUEST",
        entity_id=request.id,
        actor=actor,
        details={"student_id": student_id, "group_id": group_id},
    )
    return request.to_dict()


async def decide_join_request(
    db: AsyncSession,
    request_id: int,
    status: str,
    reason: Optional[str],
    actor: Principal,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    APPROVED creates the membership. An admin decision bypasses the rejoin
    deadline, a captain decision does not.
    """
    decision = normalize_decision(status)
    now = now or datetime.utcnow()
    membership = None

    async with transaction(db):
        request = await db.get(JoinRequest, request_id)
        if not request:
            raise NotFoundError("Join request", request_id)

        await membership_service.ensure_admin_or_captain(
            db, actor, request.group_id, "Only the group captain or an admin can decide join requests"
        )

        group = await lock_group(db, request.group_id)
        await claim_pending_request(
            db, JoinRequest, request_id, decision, actor.user_id, reason, now,
            label="Join request", decided_by_role=actor.role
        )

        if decision == RequestStatus.APPROVED.value:
            policy = await get_operational_policy(db)
            await membership_service.ensure_can_join(
                db, request.student_id, group, policy,
                bypass_rejoin_deadline=actor.is_admin, now=now
            )
            membership = await membership_service.insert_membership(db, request.student_id, group, policy, now)
            await GroupStatusMachine.refresh(db, group, policy)

        await db.refresh(request)

    logger.info(f"Join request {request_id} {decision} by user {actor.user_id}")
    await audit_service.log_action_safe(
        db,
        action=f"JOIN_REQUEST_{decision}",
        entity_type="JOIN_REQUEST",
        entity_id=request_id,
        actor=actor,
        details={"student_id": request.student_id, "group_id": request.group_id},
    )
    result = request.to_dict()
    result["membership"] = membership.to_dict() if membership else None
    result["group_status"] = group.status
    return result


async def _list(db: AsyncSession, *criteria) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(JoinRequest, Student)
        .join(Student, Student.id == JoinRequest.student_id)
        .where(*criteria)
        .order_by(JoinRequest.requested_at, JoinRequest.id)
    )
    rows = []
    for request, student in result.all():
        item = request.to_dict()
        item["student_name"] = student.name
        rows.append(item)
    return rows


async def list_pending_by_group(db: AsyncSession, group_id: int, actor: Principal) -> List[Dict[str, Any]]:
    await membership_service.ensure_admin_or_captain(
        db, actor, group_id, "Only the group captain or an admin can view join requests"
    )
    return await _list(
        db,
        JoinRequest.group_id == group_id,
        JoinRequest.status == RequestStatus.PENDING.value,
    )


async def list_my_join_requests(db: AsyncSession, actor: Principal) -> List[Dict[str, Any]]:
    student_id = await identity_service.resolve_student_id(db, actor)
    return await _list(db, JoinRequest.student_id == student_id)

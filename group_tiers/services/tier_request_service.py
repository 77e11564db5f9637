"""
group_tiers/services/tier_request_service.py
Group-tier-change request workflow.

The group's captain (or an admin) asks for a different tier; an admin
decides. The tier seen at request time is stored and compared against the
live tier at decision time; any drift rejects the decision.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import transaction
from group_tiers.errors import ConflictError, ErrorCode, NotFoundError, ValidationError, validate_enum
from group_tiers.orm.group import TIER_ORDER, tier_rank
from group_tiers.orm.requests import GroupTierChangeRequest, RequestStatus, TierRequestType
from group_tiers.rbac import Principal, ensure_admin
from group_tiers.services import audit_service, membership_service
from group_tiers.services.request_workflow import (
    claim_pending_request, duplicate_pending, normalize_decision
)
from group_tiers.state_machines.group_status import ensure_not_frozen, lock_group

logger = logging.getLogger(__name__)


def resolve_request_type(current_tier: str, requested_tier: str) -> str:
    current_rank = tier_rank(current_tier)
    requested_rank = tier_rank(requested_tier)
    if current_rank == -1 or requested_rank == -1:
        raise ValidationError("Invalid group tier", code=ErrorCode.INVALID_TIER)
    if current_rank == requested_rank:
        raise ConflictError("Requested tier must be different from current tier")
    if requested_rank > current_rank:
        return TierRequestType.PROMOTION.value
    return TierRequestType.DEMOTION.value


async def apply_tier_request(
    db: AsyncSession,
    actor: Principal,
    group_id: int,
    requested_tier: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    requested_tier = validate_enum(requested_tier, TIER_ORDER, "requested_tier", code=ErrorCode.INVALID_TIER)
    now = now or datetime.utcnow()

    async with transaction(db):
        group = await lock_group(db, group_id)
        await membership_service.ensure_admin_or_captain(
            db, actor, group_id, "Only captain or admin can request tier promotion/demotion"
        )
        ensure_not_frozen(group, "Cannot request tier change for a frozen group")

        request_type = resolve_request_type(group.tier, requested_tier)

        pending = (await db.execute(
            select(GroupTierChangeRequest.id).where(
                GroupTierChangeRequest.group_id == group_id,
                GroupTierChangeRequest.status == RequestStatus.PENDING.value,
            )
        )).first()
        if pending:
            raise duplicate_pending("tier change request for this group")

        request = GroupTierChangeRequest(
            group_id=group_id,
            current_tier=group.tier,
            requested_tier=requested_tier,
            request_type=request_type,
            request_reason=(reason or "").strip() or None,
            status=RequestStatus.PENDING.value,
            requested_by_user_id=actor.user_id,
            requested_by_role=actor.role,
            requested_at=now,
        )
        db.add(request)
        await db.flush()

    logger.info(f"Tier request {request.id}: group {group_id} {request.current_tier} -> {requested_tier}")
    await audit_service.log_action_safe(
        db,
        action="TIER_REQUEST_CREATED",
        entity_type="TIER_REQUEST",
        entity_id=request.id,
        actor=actor,
        details={"group_id": group_id, "requested_tier": requested_tier, "request_type": request_type},
    )
    return request.to_dict()


async def decide_tier_request(
    db: AsyncSession,
    request_id: int,
    status: str,
    reason: Optional[str],
    actor: Principal,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    ensure_admin(actor, "Only admin can approve or reject tier change requests")
    decision = normalize_decision(status)
    now = now or datetime.utcnow()

    async with transaction(db):
        request = await db.get(GroupTierChangeRequest, request_id)
        if not request:
            raise NotFoundError("Tier change request", request_id)

        group = await lock_group(db, request.group_id)
        await claim_pending_request(
            db, GroupTierChangeRequest, request_id, decision, actor.user_id, reason, now,
            label="Tier change request"
        )

        if decision == RequestStatus.APPROVED.value:
            ensure_not_frozen(group, "Cannot approve tier change for a frozen group")
            if group.tier != request.current_tier:
                raise ConflictError(
                    f"Group tier changed to {group.tier} after this request was submitted. "
                    f"Create a new request.",
                    code=ErrorCode.STATE_DRIFTED,
                    details={"tier_at_request": request.current_tier, "live_tier": group.tier}
                )
            group.tier = request.requested_tier

        await db.flush()
        await db.refresh(request)

    logger.info(f"Tier request {request_id} {decision} by user {actor.user_id}")
    await audit_service.log_action_safe(
        db,
        action=f"TIER_REQUEST_{decision}",
        entity_type="TIER_REQUEST",
        entity_id=request_id,
        actor=actor,
        details={"group_id": request.group_id, "requested_tier": request.requested_tier},
    )
    result = request.to_dict()
    result["group_tier"] = group.tier
    return result


async def _list(db: AsyncSession, *criteria) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(GroupTierChangeRequest)
        .where(*criteria)
        .order_by(GroupTierChangeRequest.requested_at, GroupTierChangeRequest.id)
    )
    return [row.to_dict() for row in result.scalars().all()]


async def list_all_pending(db: AsyncSession, actor: Principal) -> List[Dict[str, Any]]:
    ensure_admin(actor)
    return await _list(db, GroupTierChangeRequest.status == RequestStatus.PENDING.value)


async def list_pending_by_group(db: AsyncSession, group_id: int, actor: Principal) -> List[Dict[str, Any]]:
    await membership_service.ensure_admin_or_captain(
        db, actor, group_id, "Only captain or admin can view tier change requests"
    )
    return await _list(
        db,
        GroupTierChangeRequest.group_id == group_id,
        GroupTierChangeRequest.status == RequestStatus.PENDING.value,
    )


async def list_my_tier_requests(db: AsyncSession, actor: Principal) -> List[Dict[str, Any]]:
    return await _list(db, GroupTierChangeRequest.requested_by_user_id == actor.user_id)

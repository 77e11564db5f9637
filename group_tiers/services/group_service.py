"""
group_tiers/services/group_service.py
Group administration: create, read, freeze / unfreeze.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import transaction
from group_tiers.errors import ConflictError, ErrorCode, ForbiddenError, NotFoundError, ValidationError, validate_enum
from group_tiers.orm.group import Group, GroupStatus, GroupTier, TIER_ORDER
from group_tiers.orm.membership import Membership, MembershipStatus
from group_tiers.rbac import Principal, ensure_admin
from group_tiers.services import audit_service
from group_tiers.services.policy_service import get_operational_policy
from group_tiers.state_machines.group_status import GroupStatusMachine, count_active_members, lock_group

logger = logging.getLogger(__name__)


async def create_group(db: AsyncSession, payload: Dict[str, Any], actor: Principal) -> Dict[str, Any]:
    """New groups start INACTIVE; status is derived from membership after that."""
    group_code = str(payload.get("group_code") or "").strip()
    group_name = str(payload.get("group_name") or "").strip()
    if not group_code or not group_name:
        raise ValidationError("Group code and name required", code=ErrorCode.MISSING_FIELD)
    tier = validate_enum(payload.get("tier") or GroupTier.D.value, TIER_ORDER, "tier", code=ErrorCode.INVALID_TIER)

    async with transaction(db):
        if not actor.is_admin:
            policy = await get_operational_policy(db)
            if not policy.allow_student_group_creation:
                raise ForbiddenError("Student group creation is disabled by policy")

        existing = (await db.execute(select(Group.id).where(Group.group_code == group_code))).first()
        if existing:
            raise ConflictError(f"Group code '{group_code}' already exists")

        group = Group(
            group_code=group_code,
            group_name=group_name,
            tier=tier,
            status=GroupStatus.INACTIVE.value,
        )
        db.add(group)
        await db.flush()

    logger.info(f"Group {group.id} ({group_code}) created by user {actor.user_id}")
    await audit_service.log_action_safe(
        db,
        action="GROUP_CREATED",
        entity_type="GROUP",
        entity_id=group.id,
        actor=actor,
        details={"group_code": group_code, "group_name": group_name, "tier": tier},
    )
    return group.to_dict()


async def get_group(db: AsyncSession, group_id: int) -> Dict[str, Any]:
    group = await db.get(Group, group_id)
    if not group:
        raise NotFoundError("Group", group_id)
    result = group.to_dict()
    result["active_member_count"] = await count_active_members(db, group_id)
    result["leadership"] = await GroupStatusMachine.leadership_snapshot(db, group_id)
    return result


async def list_groups(
    db: AsyncSession,
    status: Optional[str] = None,
    tier: Optional[str] = None
) -> List[Dict[str, Any]]:
    counts = (
        select(Membership.group_id, func.count(Membership.id).label("active_member_count"))
        .where(Membership.status == MembershipStatus.ACTIVE.value)
        .group_by(Membership.group_id)
        .subquery()
    )
    query = (
        select(Group, func.coalesce(counts.c.active_member_count, 0))
        .outerjoin(counts, counts.c.group_id == Group.id)
    )
    if status:
        status = validate_enum(status, [s.value for s in GroupStatus], "status", code=ErrorCode.INVALID_STATUS)
        query = query.where(Group.status == status)
    if tier:
        tier = validate_enum(tier, TIER_ORDER, "tier", code=ErrorCode.INVALID_TIER)
        query = query.where(Group.tier == tier)

    result = await db.execute(query.order_by(Group.id))
    groups = []
    for group, member_count in result.all():
        item = group.to_dict()
        item["active_member_count"] = int(member_count)
        groups.append(item)
    return groups


async def freeze_group(db: AsyncSession, group_id: int, actor: Principal, reason: Optional[str] = None) -> Dict[str, Any]:
    ensure_admin(actor)
    async with transaction(db):
        group = await lock_group(db, group_id)
        previous = group.status
        await GroupStatusMachine.freeze(db, group)

    await audit_service.log_action_safe(
        db,
        action="GROUP_FROZEN",
        entity_type="GROUP",
        entity_id=group_id,
        actor=actor,
        details={"previous_status": previous, "reason": reason},
    )
    return group.to_dict()


async def unfreeze_group(db: AsyncSession, group_id: int, actor: Principal) -> Dict[str, Any]:
    ensure_admin(actor)
    async with transaction(db):
        policy = await get_operational_policy(db)
        group = await lock_group(db, group_id)
        await GroupStatusMachine.unfreeze(db, group, policy)

    await audit_service.log_action_safe(
        db,
        action="GROUP_UNFROZEN",
        entity_type="GROUP",
        entity_id=group_id,
        actor=actor,
        details={"status": group.status},
    )
    return group.to_dict()

"""
group_tiers/services/tier_change_service.py
Tier-change recommendation engine.

A group's move after a phase is derived from its eligibility in that phase
and in the phase immediately before it (chronological start_date order):

    eligible now                        -> PROMOTE (SAME at A)
    not eligible now, not eligible prev -> DEMOTE  (SAME at D)
    not eligible now, eligible prev     -> SAME
    not eligible now, prev unknown      -> SAME
    eligibility now unknown             -> SAME

Applying writes one TierChangeRecord per (phase, group); a second apply is
rejected.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import transaction
from group_tiers.errors import ConflictError, ErrorCode, NotFoundError, ValidationError
from group_tiers.orm.eligibility import GroupEligibility
from group_tiers.orm.group import TIER_ORDER, Group
from group_tiers.orm.membership import Membership, MembershipStatus
from group_tiers.orm.phase import Phase
from group_tiers.orm.tier_change import TierChangeAction, TierChangeRecord, TierRuleCode
from group_tiers.rbac import Principal, ensure_admin
from group_tiers.services import audit_service, identity_service
from group_tiers.state_machines.group_status import ensure_not_frozen, lock_group

logger = logging.getLogger(__name__)

ACTION_ORDER = {
    TierChangeAction.PROMOTE.value: 0,
    TierChangeAction.DEMOTE.value: 1,
    TierChangeAction.SAME.value: 2,
}


def _normalize_tier(tier: str) -> str:
    value = str(tier or "").strip().upper()
    if value not in TIER_ORDER:
        raise ValidationError("Invalid group tier", code=ErrorCode.INVALID_TIER)
    return value


def build_recommendation(
    current_tier: str,
    last_phase_eligible: Optional[bool],
    previous_phase_eligible: Optional[bool]
) -> Dict[str, str]:
    """Pure rule table. None means the eligibility was never evaluated."""
    tier = _normalize_tier(current_tier)
    rank = TIER_ORDER.index(tier)

    def same(rule: TierRuleCode) -> Dict[str, str]:
        return {
            "change_action": TierChangeAction.SAME.value,
            "recommended_tier": tier,
            "rule_code": rule.value,
        }

    if last_phase_eligible is True:
        if rank == len(TIER_ORDER) - 1:
            return same(TierRuleCode.LAST_PHASE_ELIGIBLE_TOP_TIER)
        return {
            "change_action": TierChangeAction.PROMOTE.value,
            "recommended_tier": TIER_ORDER[rank + 1],
            "rule_code": TierRuleCode.LAST_PHASE_ELIGIBLE_PROMOTE.value,
        }

    if last_phase_eligible is False:
        if previous_phase_eligible is False:
            if rank == 0:
                return same(TierRuleCode.LAST_TWO_NOT_ELIGIBLE_BOTTOM_TIER)
            return {
                "change_action": TierChangeAction.DEMOTE.value,
                "recommended_tier": TIER_ORDER[rank - 1],
                "rule_code": TierRuleCode.LAST_TWO_NOT_ELIGIBLE_DEMOTE.value,
            }
        if previous_phase_eligible is True:
            return same(TierRuleCode.LAST_PHASE_NOT_ELIGIBLE_PREVIOUS_ELIGIBLE_SAME)
        return same(TierRuleCode.LAST_PHASE_NOT_ELIGIBLE_PREVIOUS_MISSING_SAME)

    return same(TierRuleCode.LAST_PHASE_ELIGIBILITY_MISSING_SAME)


def _phase_summary(phase: Optional[Phase]) -> Optional[Dict[str, Any]]:
    if phase is None:
        return None
    return {
        "phase_id": phase.id,
        "phase_name": phase.phase_name,
        "start_date": phase.start_date.isoformat(),
        "end_date": phase.end_date.isoformat(),
        "status": phase.status,
    }


async def get_phase_context(db: AsyncSession, phase_id: str) -> Tuple[Phase, Optional[Phase]]:
    """The phase and the one right before it by (start_date, id)."""
    phase = await db.get(Phase, phase_id)
    if not phase:
        raise NotFoundError("Phase", phase_id)

    ordered = (await db.execute(select(Phase).order_by(Phase.start_date, Phase.id))).scalars().all()
    index = next(i for i, candidate in enumerate(ordered) if candidate.id == phase.id)
    previous = ordered[index - 1] if index > 0 else None
    return phase, previous


async def _eligibility_map(db: AsyncSession, phase_id: Optional[str], group_id: Optional[int] = None) -> Dict[int, bool]:
    if not phase_id:
        return {}
    query = select(GroupEligibility.group_id, GroupEligibility.is_eligible).where(
        GroupEligibility.phase_id == phase_id
    )
    if group_id is not None:
        query = query.where(GroupEligibility.group_id == group_id)
    result = await db.execute(query)
    return {gid: bool(eligible) for gid, eligible in result.all()}


async def preview_tier_change(db: AsyncSession, phase_id: str, actor: Optional[Principal] = None) -> Dict[str, Any]:
    """Recommendation for every group, sorted PROMOTE, DEMOTE, SAME, group id."""
    if actor is not None:
        ensure_admin(actor, "Only admin can manage tier changes")

    phase, previous = await get_phase_context(db, phase_id)
    current_map = await _eligibility_map(db, phase.id)
    previous_map = await _eligibility_map(db, previous.id if previous else None)

    saved = {
        row.group_id: row
        for row in (await db.execute(
            select(TierChangeRecord).where(TierChangeRecord.phase_id == phase.id)
        )).scalars().all()
    }

    counts = dict((await db.execute(
        select(Membership.group_id, func.count(Membership.id))
        .where(Membership.status == MembershipStatus.ACTIVE.value)
        .group_by(Membership.group_id)
    )).all())

    groups = (await db.execute(select(Group).order_by(Group.id))).scalars().all()
    rows = []
    for group in groups:
        last_eligible = current_map.get(group.id)
        previous_eligible = previous_map.get(group.id)
        row = {
            "group_id": group.id,
            "group_code": group.group_code,
            "group_name": group.group_name,
            "group_status": group.status,
            "active_member_count": counts.get(group.id, 0),
            "current_tier": group.tier,
            "last_phase_eligible": last_eligible,
            "previous_phase_id": previous.id if previous else None,
            "previous_phase_eligible": previous_eligible,
        }
        row.update(build_recommendation(group.tier, last_eligible, previous_eligible))
        record = saved.get(group.id)
        row["tier_change"] = record.to_dict() if record else None
        rows.append(row)

    rows.sort(key=lambda r: (ACTION_ORDER.get(r["change_action"], 9), r["group_id"]))

    return {
        "phase": _phase_summary(phase),
        "previous_phase": _phase_summary(previous),
        "rows": rows,
    }


async def apply_tier_change(
    db: AsyncSession,
    phase_id: str,
    group_id: int,
    actor: Principal
) -> Dict[str, Any]:
    """Recompute under the group lock and persist the decision once."""
    ensure_admin(actor, "Only admin can manage tier changes")

    async with transaction(db):
        admin_id = await identity_service.resolve_admin_id(db, actor)
        phase, previous = await get_phase_context(db, phase_id)
        group = await lock_group(db, group_id)

        existing = (await db.execute(
            select(TierChangeRecord.id).where(
                TierChangeRecord.phase_id == phase.id,
                TierChangeRecord.group_id == group_id,
            )
        )).first()
        if existing:
            raise ConflictError(
                "Tier change already applied for this phase and group",
                code=ErrorCode.ALREADY_APPLIED
            )

        ensure_not_frozen(group, "Cannot apply tier change for a frozen group")

        last_eligible = (await _eligibility_map(db, phase.id, group_id)).get(group_id)
        previous_eligible = (
            await _eligibility_map(db, previous.id if previous else None, group_id)
        ).get(group_id)
        current_tier = group.tier
        recommendation = build_recommendation(current_tier, last_eligible, previous_eligible)

        if recommendation["recommended_tier"] != current_tier:
            group.tier = recommendation["recommended_tier"]

        record = TierChangeRecord(
            phase_id=phase.id,
            group_id=group_id,
            previous_phase_id=previous.id if previous else None,
            current_tier=current_tier,
            recommended_tier=recommendation["recommended_tier"],
            change_action=recommendation["change_action"],
            last_phase_eligible=last_eligible,
            previous_phase_eligible=previous_eligible,
            rule_code=recommendation["rule_code"],
            approved_by_admin_id=admin_id,
        )
        db.add(record)
        await db.flush()

    logger.info(
        f"Tier change applied for group {group_id} in phase {phase_id}: "
        f"{current_tier} -> {record.recommended_tier} ({record.rule_code})"
    )
    await audit_service.log_action_safe(
        db,
        action="TIER_CHANGE_APPLIED",
        entity_type="GROUP",
        entity_id=group_id,
        actor=actor,
        reason_code=record.rule_code,
        details={"phase_id": phase_id, "from": current_tier, "to": record.recommended_tier},
    )
    return record.to_dict()


async def list_tier_changes(db: AsyncSession, phase_id: str, actor: Optional[Principal] = None) -> Dict[str, Any]:
    if actor is not None:
        ensure_admin(actor, "Only admin can manage tier changes")
    phase, _ = await get_phase_context(db, phase_id)
    result = await db.execute(
        select(TierChangeRecord)
        .where(TierChangeRecord.phase_id == phase.id)
        .order_by(TierChangeRecord.group_id)
    )
    return {
        "phase": _phase_summary(phase),
        "rows": [row.to_dict() for row in result.scalars().all()],
    }

"""
group_tiers/services/eligibility_service.py
Eligibility evaluator and base points ledger.

Evaluation is a pure recompute: it sums ledger points inside the phase
window, compares them to the configured targets and overwrites the phase's
snapshots. Running it again with an unchanged ledger yields the same rows.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import transaction
from group_tiers.errors import ErrorCode, NotFoundError, ValidationError
from group_tiers.orm.eligibility import EligibilityReason, GroupEligibility, IndividualEligibility
from group_tiers.orm.group import Group
from group_tiers.orm.identity import Student
from group_tiers.orm.membership import Membership, MembershipStatus
from group_tiers.orm.phase import IndividualPhaseTarget, Phase, PhaseTarget
from group_tiers.orm.points import BasePointHistory, BasePointsTotal
from group_tiers.rbac import Principal, ensure_admin
from group_tiers.services import audit_service

logger = logging.getLogger(__name__)

MIN_REASON_LENGTH = 3
DEFAULT_HISTORY_LIMIT = 50


# =============================================================================
# Base points ledger
# =============================================================================

def _parse_activity_at(payload: Dict[str, Any], now: datetime) -> datetime:
    raw_at = payload.get("activity_at")
    raw_date = payload.get("activity_date")
    try:
        if raw_at:
            return raw_at if isinstance(raw_at, datetime) else datetime.fromisoformat(str(raw_at))
        if raw_date:
            return datetime.fromisoformat(f"{str(raw_date)[:10]}T00:00:00")
    except ValueError:
        raise ValidationError(
            "Invalid activity_at/activity_date",
            details={"activity_at": raw_at, "activity_date": raw_date}
        )
    return now


async def record_base_points(
    db: AsyncSession,
    payload: Dict[str, Any],
    actor: Principal,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Append one ledger entry and bump the student's running total."""
    ensure_admin(actor)
    now = now or datetime.utcnow()

    points = payload.get("points")
    if isinstance(points, bool) or not isinstance(points, int):
        raise ValidationError("points must be an integer", details={"field": "points", "value": points})
    student_id = payload.get("student_id")
    if not student_id:
        raise ValidationError("student_id is required", code=ErrorCode.MISSING_FIELD)
    reason = str(payload.get("reason") or "").strip()
    if len(reason) < MIN_REASON_LENGTH:
        raise ValidationError(f"reason must be at least {MIN_REASON_LENGTH} characters")
    activity_at = _parse_activity_at(payload, now)

    async with transaction(db):
        student = await db.get(Student, student_id)
        if not student:
            raise NotFoundError("Student", student_id)

        entry = BasePointHistory(
            student_id=student_id,
            activity_date=activity_at.date(),
            activity_at=activity_at,
            points=points,
            reason=reason,
            recorded_by_user_id=actor.user_id,
            created_at=now,
        )
        db.add(entry)

        result = await db.execute(
            select(BasePointsTotal)
            .where(BasePointsTotal.student_id == student_id)
            .with_for_update()
        )
        total = result.scalar_one_or_none()
        if total is None:
            total = BasePointsTotal(student_id=student_id, total_base_points=points, last_updated=now)
            db.add(total)
        else:
            total.total_base_points += points
            total.last_updated = now
        await db.flush()

    logger.info(f"Recorded {points} base points for student {student_id} at {activity_at}")
    return {
        "history_id": entry.id,
        "student_id": student_id,
        "total_base_points": total.total_base_points,
    }


async def get_student_base_points(
    db: AsyncSession,
    student_id: int,
    limit: int = DEFAULT_HISTORY_LIMIT
) -> Dict[str, Any]:
    student = await db.get(Student, student_id)
    if not student:
        raise NotFoundError("Student", student_id)

    total = await db.get(BasePointsTotal, student_id)
    result = await db.execute(
        select(BasePointHistory)
        .where(BasePointHistory.student_id == student_id)
        .order_by(BasePointHistory.activity_at.desc(), BasePointHistory.id.desc())
        .limit(max(1, int(limit)))
    )
    return {
        "student_id": student_id,
        "total_base_points": total.total_base_points if total else 0,
        "history": [row.to_dict() for row in result.scalars().all()],
    }


# =============================================================================
# Evaluation
# =============================================================================

async def _get_phase(db: AsyncSession, phase_id: str) -> Phase:
    phase = await db.get(Phase, phase_id)
    if not phase:
        raise NotFoundError("Phase", phase_id)
    return phase


def _individual_outcome(points: int, target: Optional[float]):
    if target is None:
        return False, EligibilityReason.INDIVIDUAL_TARGET_NOT_CONFIGURED.value
    if points >= target:
        return True, EligibilityReason.INDIVIDUAL_TARGET_MET.value
    return False, EligibilityReason.INDIVIDUAL_TARGET_NOT_MET.value


def _group_outcome(points: int, target: Optional[float]):
    if target is None:
        return False, EligibilityReason.GROUP_TARGET_NOT_CONFIGURED.value
    if points >= target:
        return True, EligibilityReason.GROUP_TARGET_MET.value
    return False, EligibilityReason.GROUP_TARGET_NOT_MET.value


async def evaluate_phase_locked(db: AsyncSession, phase: Phase, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Recompute both snapshot sets for a phase inside the caller's transaction.
    """
    now = now or datetime.utcnow()
    start_at = phase.window_start
    end_at = phase.window_end

    target_row = (await db.execute(
        select(IndividualPhaseTarget).where(IndividualPhaseTarget.phase_id == phase.id)
    )).scalar_one_or_none()
    individual_target = target_row.individual_target if target_row else None

    tier_rows = (await db.execute(
        select(PhaseTarget).where(PhaseTarget.phase_id == phase.id)
    )).scalars().all()
    group_targets = {row.tier: row.group_target for row in tier_rows}

    points_rows = await db.execute(
        select(BasePointHistory.student_id, func.coalesce(func.sum(BasePointHistory.points), 0))
        .where(BasePointHistory.activity_at >= start_at, BasePointHistory.activity_at <= end_at)
        .group_by(BasePointHistory.student_id)
    )
    points_by_student = {student_id: int(total) for student_id, total in points_rows.all()}

    student_ids = (await db.execute(select(Student.id).order_by(Student.id))).scalars().all()

    existing_individual = {
        row.student_id: row
        for row in (await db.execute(
            select(IndividualEligibility).where(IndividualEligibility.phase_id == phase.id)
        )).scalars().all()
    }

    individual_eligible = 0
    for student_id in student_ids:
        points = points_by_student.get(student_id, 0)
        is_eligible, reason_code = _individual_outcome(points, individual_target)
        individual_eligible += int(is_eligible)
        row = existing_individual.get(student_id)
        if row is None:
            row = IndividualEligibility(phase_id=phase.id, student_id=student_id)
            db.add(row)
        row.this_phase_base_points = points
        row.individual_target = individual_target
        row.is_eligible = is_eligible
        row.reason_code = reason_code
        row.evaluated_at = now

    members = await db.execute(
        select(Membership.group_id, Membership.student_id)
        .where(Membership.status == MembershipStatus.ACTIVE.value)
    )
    points_by_group: Dict[int, int] = {}
    for group_id, student_id in members.all():
        points_by_group[group_id] = points_by_group.get(group_id, 0) + points_by_student.get(student_id, 0)

    groups = (await db.execute(select(Group).order_by(Group.id))).scalars().all()
    existing_group = {
        row.group_id: row
        for row in (await db.execute(
            select(GroupEligibility).where(GroupEligibility.phase_id == phase.id)
        )).scalars().all()
    }

    group_eligible = 0
    for group in groups:
        points = points_by_group.get(group.id, 0)
        target = group_targets.get(group.tier)
        is_eligible, reason_code = _group_outcome(points, target)
        group_eligible += int(is_eligible)
        row = existing_group.get(group.id)
        if row is None:
            row = GroupEligibility(phase_id=phase.id, group_id=group.id)
            db.add(row)
        row.tier = group.tier
        row.this_phase_group_points = points
        row.group_target = target
        row.is_eligible = is_eligible
        row.reason_code = reason_code
        row.evaluated_at = now

    await db.flush()

    logger.info(
        f"Evaluated phase {phase.id}: {individual_eligible}/{len(student_ids)} students, "
        f"{group_eligible}/{len(groups)} groups eligible"
    )
    return {
        "phase_id": phase.id,
        "evaluation_window": {
            "start_date": phase.start_date.isoformat(),
            "end_date": phase.end_date.isoformat(),
            "start_time": phase.start_time,
            "end_time": phase.end_time,
            "start_at": start_at.isoformat(),
            "end_at": end_at.isoformat(),
        },
        "targets": {
            "individual_target": individual_target,
            "group_targets": [
                {"tier": tier, "group_target": value} for tier, value in sorted(group_targets.items())
            ],
        },
        "totals": {
            "individual_evaluated": len(student_ids),
            "individual_eligible": individual_eligible,
            "group_evaluated": len(groups),
            "group_eligible": group_eligible,
        },
    }


async def evaluate_phase_eligibility(
    db: AsyncSession,
    phase_id: str,
    actor: Optional[Principal] = None
) -> Dict[str, Any]:
    """Recompute and upsert every snapshot for a phase in one transaction."""
    if actor is not None:
        ensure_admin(actor)

    async with transaction(db):
        phase = await _get_phase(db, phase_id)
        summary = await evaluate_phase_locked(db, phase)

    await audit_service.log_action_safe(
        db,
        action="PHASE_ELIGIBILITY_EVALUATED",
        entity_type="PHASE",
        entity_id=phase_id,
        actor=actor,
        details=summary["totals"],
    )
    return summary


# =============================================================================
# Queries
# =============================================================================

async def get_individual_eligibility(
    db: AsyncSession,
    phase_id: str,
    student_id: Optional[int] = None,
    is_eligible: Optional[bool] = None
) -> List[Dict[str, Any]]:
    await _get_phase(db, phase_id)
    query = select(IndividualEligibility).where(IndividualEligibility.phase_id == phase_id)
    if student_id is not None:
        query = query.where(IndividualEligibility.student_id == student_id)
    if is_eligible is not None:
        query = query.where(IndividualEligibility.is_eligible == is_eligible)
    query = query.order_by(IndividualEligibility.this_phase_base_points.desc(), IndividualEligibility.student_id)
    result = await db.execute(query)
    return [row.to_dict() for row in result.scalars().all()]


async def get_group_eligibility(
    db: AsyncSession,
    phase_id: str,
    group_id: Optional[int] = None,
    is_eligible: Optional[bool] = None
) -> List[Dict[str, Any]]:
    await _get_phase(db, phase_id)
    query = select(GroupEligibility).where(GroupEligibility.phase_id == phase_id)
    if group_id is not None:
        query = query.where(GroupEligibility.group_id == group_id)
    if is_eligible is not None:
        query = query.where(GroupEligibility.is_eligible == is_eligible)
    query = query.order_by(GroupEligibility.this_phase_group_points.desc(), GroupEligibility.group_id)
    result = await db.execute(query)
    return [row.to_dict() for row in result.scalars().all()]


async def get_student_eligibility_history(db: AsyncSession, student_id: int) -> List[Dict[str, Any]]:
    """Every evaluated phase for one student, newest phase first."""
    result = await db.execute(
        select(IndividualEligibility, Phase)
        .join(Phase, Phase.id == IndividualEligibility.phase_id)
        .where(IndividualEligibility.student_id == student_id)
        .order_by(Phase.start_date.desc(), Phase.id.desc())
    )
    history = []
    for snapshot, phase in result.all():
        item = snapshot.to_dict()
        item["phase_name"] = phase.phase_name
        item["start_date"] = phase.start_date.isoformat()
        item["end_date"] = phase.end_date.isoformat()
        item["phase_status"] = phase.status
        history.append(item)
    return history

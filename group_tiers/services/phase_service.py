"""
group_tiers/services/phase_service.py
Phase manager.

Phases are scoring windows measured in working days. Creating a phase
displaces the current ACTIVE one (-> INACTIVE). The finalization sweep closes
phases whose window has elapsed (-> COMPLETED) after evaluating eligibility
for them; it runs periodically, once at startup and before every phase read,
behind a single-flight guard.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.config.settings import settings
from group_tiers.database import transaction
from group_tiers.errors import APIError, ConflictError, ErrorCode, NotFoundError, ValidationError
from group_tiers.orm.group import TIER_ORDER
from group_tiers.orm.phase import Holiday, IndividualPhaseTarget, Phase, PhaseStatus, PhaseTarget
from group_tiers.rbac import Principal, ensure_admin
from group_tiers.services import audit_service, eligibility_service
from group_tiers.services.working_days import (
    calculate_phase_dates, load_holidays, remaining_working_days
)

logger = logging.getLogger(__name__)

DEFAULT_START_TIME = "00:00:00"
DEFAULT_END_TIME = "23:59:59"

# Single-flight guard shared by the periodic task, the startup catch-up and
# the on-read triggers. Check-and-set happens without an await in between.
_finalization_in_progress = False


def is_finalization_running() -> bool:
    return _finalization_in_progress


# =============================================================================
# Validation helpers
# =============================================================================

def _parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(f"Invalid {field_name}", details={"field": field_name, "value": value})


def _parse_positive_int(value: Any, default: int, field_name: str) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a positive integer", details={"field": field_name})
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a positive integer", details={"field": field_name})
    if number != value and str(number) != str(value).strip():
        raise ValidationError(f"{field_name} must be a positive integer", details={"field": field_name})
    return number


def _normalize_time(value: Any, default: str, field_name: str) -> str:
    if value is None or str(value).strip() == "":
        return default
    raw = str(value).strip()
    if len(raw) == 5:
        raw = f"{raw}:00"
    try:
        return datetime.strptime(raw, "%H:%M:%S").strftime("%H:%M:%S")
    except ValueError:
        raise ValidationError(f"{field_name} must be HH:MM or HH:MM:SS", details={"field": field_name, "value": value})


def _normalize_targets(targets: Any) -> Dict[str, float]:
    """Exactly one non-negative number per tier D, C, B, A."""
    if not isinstance(targets, list):
        raise ValidationError("targets are required", code=ErrorCode.MISSING_FIELD)

    normalized: Dict[str, float] = {}
    for item in targets:
        item = item if isinstance(item, dict) else {}
        tier = str(item.get("tier") or "").strip().upper()
        if not tier:
            raise ValidationError("tier is required for each target row", code=ErrorCode.MISSING_FIELD)
        if tier in normalized:
            raise ValidationError(f"Duplicate target for tier {tier}", code=ErrorCode.INVALID_TIER)
        value = item.get("group_target")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError("All group targets must be numbers", details={"tier": tier, "value": value})
        if isinstance(value, bool) or number != number:
            raise ValidationError("All group targets must be numbers", details={"tier": tier, "value": value})
        if number < 0:
            raise ValidationError("All group targets must be 0 or more", details={"tier": tier, "value": value})
        normalized[tier] = number

    if set(normalized) != set(TIER_ORDER):
        raise ValidationError(
            "targets must include D, C, B and A tiers",
            code=ErrorCode.INVALID_TIER,
            details={"received": sorted(normalized)}
        )
    return normalized


def _normalize_individual_target(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = -1.0
    if isinstance(value, bool) or number != number or number < 0:
        raise ValidationError(
            "individual_target must be a number greater than or equal to 0",
            details={"field": "individual_target", "value": value}
        )
    return number


# =============================================================================
# Lookups
# =============================================================================

async def get_active_phase(db: AsyncSession) -> Optional[Phase]:
    """The ACTIVE phase as stored, without triggering finalization."""
    result = await db.execute(select(Phase).where(Phase.status == PhaseStatus.ACTIVE.value))
    return result.scalars().first()


async def _get_phase_or_404(db: AsyncSession, phase_id: str) -> Phase:
    phase = await db.get(Phase, phase_id)
    if not phase:
        raise NotFoundError("Phase", phase_id)
    return phase


async def _targets_for(db: AsyncSession, phase_id: str) -> Dict[str, Any]:
    tier_rows = (await db.execute(
        select(PhaseTarget).where(PhaseTarget.phase_id == phase_id)
    )).scalars().all()
    by_tier = {row.tier: row.group_target for row in tier_rows}
    individual = (await db.execute(
        select(IndividualPhaseTarget).where(IndividualPhaseTarget.phase_id == phase_id)
    )).scalar_one_or_none()
    return {
        "phase_id": phase_id,
        "targets": [{"tier": tier, "group_target": by_tier[tier]} for tier in TIER_ORDER if tier in by_tier],
        "individual_target": individual.individual_target if individual else None,
    }


async def _upsert_targets(db: AsyncSession, phase_id: str, targets: Dict[str, float], individual_target: float) -> None:
    existing = {
        row.tier: row
        for row in (await db.execute(
            select(PhaseTarget).where(PhaseTarget.phase_id == phase_id).with_for_update()
        )).scalars().all()
    }
    for tier, value in targets.items():
        row = existing.get(tier)
        if row is None:
            db.add(PhaseTarget(phase_id=phase_id, tier=tier, group_target=value))
        else:
            row.group_target = value

    individual = (await db.execute(
        select(IndividualPhaseTarget).where(IndividualPhaseTarget.phase_id == phase_id).with_for_update()
    )).scalar_one_or_none()
    if individual is None:
        db.add(IndividualPhaseTarget(phase_id=phase_id, individual_target=individual_target))
    else:
        individual.individual_target = individual_target
    await db.flush()


# =============================================================================
# Phase administration
# =============================================================================

async def create_phase(
    db: AsyncSession,
    payload: Dict[str, Any],
    actor: Principal
) -> Dict[str, Any]:
    """
    Create the new ACTIVE phase and its targets.

    Every previously ACTIVE phase becomes INACTIVE in the same transaction and
    the single-active invariant is re-checked before commit.
    """
    ensure_admin(actor)

    if not payload.get("start_date"):
        raise ValidationError("start_date is required", code=ErrorCode.MISSING_FIELD)
    start_date = _parse_date(payload["start_date"], "start_date")

    total_working_days = _parse_positive_int(
        payload.get("total_working_days"), settings.DEFAULT_TOTAL_WORKING_DAYS, "total_working_days"
    )
    if total_working_days <= 0:
        raise ValidationError("total_working_days must be a positive integer")

    change_day_number = _parse_positive_int(
        payload.get("change_day_number"), settings.DEFAULT_CHANGE_DAY_NUMBER, "change_day_number"
    )
    if change_day_number <= 0 or change_day_number >= total_working_days:
        raise ValidationError(
            "change_day_number must be between 1 and total_working_days - 1",
            details={"change_day_number": change_day_number, "total_working_days": total_working_days}
        )

    start_time = _normalize_time(payload.get("start_time"), DEFAULT_START_TIME, "start_time")
    end_time = _normalize_time(payload.get("end_time"), DEFAULT_END_TIME, "end_time")
    targets = _normalize_targets(payload.get("targets"))
    individual_target = _normalize_individual_target(payload.get("individual_target"))

    async with transaction(db):
        holidays = await load_holidays(db, since=start_date)
        change_day, end_date = calculate_phase_dates(
            start_date, total_working_days, change_day_number, holidays
        )

        displaced = await db.execute(
            update(Phase)
            .where(Phase.status == PhaseStatus.ACTIVE.value)
            .values(status=PhaseStatus.INACTIVE.value)
        )

        phase = Phase(
            phase_name=(payload.get("phase_name") or "").strip() or None,
            start_date=start_date,
            end_date=end_date,
            start_time=start_time,
            end_time=end_time,
            total_working_days=total_working_days,
            change_day_number=change_day_number,
            change_day=change_day,
            status=PhaseStatus.ACTIVE.value,
            created_by_user_id=actor.user_id,
        )
        db.add(phase)
        await db.flush()
        await _upsert_targets(db, phase.id, targets, individual_target)

        active_count = (await db.execute(
            select(func.count(Phase.id)).where(Phase.status == PhaseStatus.ACTIVE.value)
        )).scalar()
        if active_count != 1:
            raise ConflictError(
                "Another phase became active concurrently. Reload and try again.",
                code=ErrorCode.CONCURRENT_MODIFICATION
            )

    logger.info(
        f"Phase {phase.id} created by user {actor.user_id}: {start_date} -> {end_date}, "
        f"change day {change_day}, displaced {displaced.rowcount} active phase(s)"
    )
    await audit_service.log_action_safe(
        db,
        action="PHASE_CREATED",
        entity_type="PHASE",
        entity_id=phase.id,
        actor=actor,
        details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
    )

    result = phase.to_dict()
    result.update(await _targets_for(db, phase.id))
    return result


async def set_phase_targets(
    db: AsyncSession,
    phase_id: str,
    targets: Any,
    individual_target: Any,
    actor: Principal
) -> Dict[str, Any]:
    ensure_admin(actor)
    normalized = _normalize_targets(targets)
    normalized_individual = _normalize_individual_target(individual_target)

    async with transaction(db):
        await _get_phase_or_404(db, phase_id)
        await _upsert_targets(db, phase_id, normalized, normalized_individual)

    logger.info(f"Targets for phase {phase_id} set by user {actor.user_id}")
    await audit_service.log_action_safe(
        db,
        action="PHASE_TARGETS_SET",
        entity_type="PHASE",
        entity_id=phase_id,
        actor=actor,
        details={"targets": normalized, "individual_target": normalized_individual},
    )
    return await _targets_for(db, phase_id)


async def get_phase_targets(db: AsyncSession, phase_id: str) -> Dict[str, Any]:
    await _get_phase_or_404(db, phase_id)
    return await _targets_for(db, phase_id)


# =============================================================================
# Finalization sweep
# =============================================================================

async def finalize_expired_active_phases(db: AsyncSession, now: Optional[datetime] = None) -> List[str]:
    """
    Periodic sweep: evaluate and complete every ACTIVE phase whose window
    has ended.

    Returns the finalized phase ids; an empty list when another sweep in this
    process holds the guard. Readers do not take the guard, they finalize
    through _finalize_expired directly.
    """
    global _finalization_in_progress
    if _finalization_in_progress:
        logger.debug("Phase finalization already running, skipping")
        return []

    _finalization_in_progress = True
    try:
        return await _finalize_expired(db, now or datetime.utcnow())
    finally:
        _finalization_in_progress = False


async def _finalize_expired(db: AsyncSession, now: datetime) -> List[str]:
    result = await db.execute(select(Phase).where(Phase.status == PhaseStatus.ACTIVE.value))
    expired_ids = [phase.id for phase in result.scalars().all() if phase.window_end < now]
    finalized: List[str] = []

    for phase_id in expired_ids:
        try:
            async with transaction(db):
                # Claim under the write lock; a losing finalizer matches no row.
                claimed = await db.execute(
                    update(Phase)
                    .where(Phase.id == phase_id, Phase.status == PhaseStatus.ACTIVE.value)
                    .values(status=PhaseStatus.COMPLETED.value, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 0:
                    continue
                locked = (await db.execute(
                    select(Phase)
                    .where(Phase.id == phase_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )).scalar_one()
                await eligibility_service.evaluate_phase_locked(db, locked, now=now)
        except APIError:
            logger.exception(f"Failed to finalize phase {phase_id}")
            continue

        finalized.append(phase_id)
        logger.info(f"Phase {phase_id} finalized (COMPLETED)")
        await audit_service.log_action_safe(
            db,
            action="PHASE_COMPLETED",
            entity_type="PHASE",
            entity_id=phase_id,
        )

    if expired_ids:
        # Rows completed by another finalizer are still ACTIVE in this session.
        await db.execute(
            select(Phase).where(Phase.id.in_(expired_ids)).execution_options(populate_existing=True)
        )
    return finalized


# =============================================================================
# Reads (each finalizes expired phases first, without the sweep guard)
# =============================================================================

async def get_current_phase(db: AsyncSession, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    now = now or datetime.utcnow()
    await _finalize_expired(db, now)

    phase = await get_active_phase(db)
    if not phase:
        return None

    holidays = await load_holidays(db, since=phase.start_date)
    result = phase.to_dict()
    result["remaining_working_days"] = remaining_working_days(
        now.date(), phase.start_date, phase.end_date, holidays
    )
    result["is_change_day"] = now.date() == phase.change_day
    return result


async def get_all_phases(db: AsyncSession, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    await _finalize_expired(db, now or datetime.utcnow())
    result = await db.execute(select(Phase).order_by(Phase.start_date.desc(), Phase.created_at.desc()))
    return [phase.to_dict() for phase in result.scalars().all()]


async def get_phase_by_id(db: AsyncSession, phase_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    await _finalize_expired(db, now or datetime.utcnow())
    phase = await _get_phase_or_404(db, phase_id)
    return phase.to_dict()


async def is_change_day(db: AsyncSession, phase_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    phase = await _get_phase_or_404(db, phase_id)
    return {
        "phase_id": phase.id,
        "is_change_day": now.date() == phase.change_day,
        "change_day": phase.change_day.isoformat(),
    }


# =============================================================================
# Holidays
# =============================================================================

async def add_holiday(
    db: AsyncSession,
    holiday_date: Any,
    description: Optional[str],
    actor: Principal
) -> Dict[str, Any]:
    ensure_admin(actor)
    day = _parse_date(holiday_date, "holiday_date")

    async with transaction(db):
        existing = (await db.execute(
            select(Holiday).where(Holiday.holiday_date == day)
        )).scalar_one_or_none()
        if existing:
            raise ConflictError(f"Holiday on {day.isoformat()} already exists")
        holiday = Holiday(holiday_date=day, description=(description or "").strip() or None)
        db.add(holiday)
        await db.flush()

    logger.info(f"Holiday {day} added by user {actor.user_id}")
    return holiday.to_dict()


async def list_holidays(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(select(Holiday).order_by(Holiday.holiday_date))
    return [row.to_dict() for row in result.scalars().all()]

"""
group_tiers/services/policy_service.py
Operational policy provider.

The policy is stored as key/value rows and read fresh at the start of each
operation into an immutable OperationalPolicy value. Junk stored values fall
back to the process defaults from settings.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.config.settings import settings
from group_tiers.database import transaction
from group_tiers.errors import ErrorCode, ValidationError
from group_tiers.orm.system_setting import SystemSetting
from group_tiers.rbac import Principal, ensure_admin
from group_tiers.services import audit_service

logger = logging.getLogger(__name__)

MIN_MEMBERS_FLOOR = 1
MAX_MEMBERS_CEILING = 200
MAX_INCUBATION_DAYS = 30
LEADERSHIP_ROLE_COUNT = 4


@dataclass(frozen=True)
class OperationalPolicy:
    min_group_members: int
    max_group_members: int
    require_leadership_for_activation: bool
    enforce_change_day_for_leave: bool
    incubation_duration_days: int
    allow_student_group_creation: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_POLICY = OperationalPolicy(
    min_group_members=settings.DEFAULT_MIN_GROUP_MEMBERS,
    max_group_members=settings.DEFAULT_MAX_GROUP_MEMBERS,
    require_leadership_for_activation=settings.DEFAULT_REQUIRE_LEADERSHIP_FOR_ACTIVATION,
    enforce_change_day_for_leave=settings.DEFAULT_ENFORCE_CHANGE_DAY_FOR_LEAVE,
    incubation_duration_days=settings.DEFAULT_INCUBATION_DURATION_DAYS,
    allow_student_group_creation=settings.DEFAULT_ALLOW_STUDENT_GROUP_CREATION,
)

INT_KEYS = {
    "min_group_members": (MIN_MEMBERS_FLOOR, MAX_MEMBERS_CEILING),
    "max_group_members": (MIN_MEMBERS_FLOOR, MAX_MEMBERS_CEILING),
    "incubation_duration_days": (0, MAX_INCUBATION_DAYS),
}
BOOL_KEYS = (
    "require_leadership_for_activation",
    "enforce_change_day_for_leave",
    "allow_student_group_creation",
)
KNOWN_KEYS = tuple(INT_KEYS) + BOOL_KEYS


def _parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    normalized = str(value if value is not None else "").strip().lower()
    if normalized in ("true", "1", "yes", "y"):
        return True
    if normalized in ("false", "0", "no", "n"):
        return False
    return None


def _parse_int(value: Any, low: int, high: int) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    if number < low or number > high:
        return None
    return number


def _policy_from_settings(stored: Dict[str, str]) -> OperationalPolicy:
    values = DEFAULT_POLICY.to_dict()

    for key, (low, high) in INT_KEYS.items():
        if key in stored:
            parsed = _parse_int(stored[key], low, high)
            if parsed is not None:
                values[key] = parsed
            else:
                logger.warning(f"Ignoring invalid stored policy value {key}={stored[key]!r}")

    for key in BOOL_KEYS:
        if key in stored:
            parsed = _parse_bool(stored[key])
            if parsed is not None:
                values[key] = parsed
            else:
                logger.warning(f"Ignoring invalid stored policy value {key}={stored[key]!r}")

    if values["min_group_members"] > values["max_group_members"]:
        values["min_group_members"] = DEFAULT_POLICY.min_group_members
        values["max_group_members"] = DEFAULT_POLICY.max_group_members

    return OperationalPolicy(**values)


async def get_operational_policy(db: AsyncSession) -> OperationalPolicy:
    """Current policy snapshot. Not locked."""
    result = await db.execute(
        select(SystemSetting).where(SystemSetting.setting_key.in_(KNOWN_KEYS))
    )
    stored = {row.setting_key: row.setting_value for row in result.scalars().all()}
    return _policy_from_settings(stored)


def _normalize_update(payload: Dict[str, Any], current: OperationalPolicy) -> OperationalPolicy:
    unknown = [key for key in payload if key not in KNOWN_KEYS]
    if unknown:
        raise ValidationError(
            f"Unknown policy keys: {', '.join(sorted(unknown))}",
            details={"allowed": list(KNOWN_KEYS)}
        )

    values = current.to_dict()
    for key, value in payload.items():
        if value is None:
            continue
        if key in INT_KEYS:
            low, high = INT_KEYS[key]
            parsed = _parse_int(value, low, high)
            if parsed is None:
                raise ValidationError(
                    f"{key} must be an integer between {low} and {high}",
                    details={"field": key, "value": value}
                )
        else:
            parsed = _parse_bool(value)
            if parsed is None:
                raise ValidationError(f"{key} must be a boolean", details={"field": key, "value": value})
        values[key] = parsed

    if values["min_group_members"] > values["max_group_members"]:
        raise ValidationError(
            "min_group_members cannot be greater than max_group_members",
            code=ErrorCode.VALIDATION_ERROR
        )
    if values["require_leadership_for_activation"] and values["max_group_members"] < LEADERSHIP_ROLE_COUNT:
        raise ValidationError(
            f"max_group_members must be at least {LEADERSHIP_ROLE_COUNT} when leadership is required",
            code=ErrorCode.VALIDATION_ERROR
        )

    return OperationalPolicy(**values)


async def update_operational_policy(
    db: AsyncSession,
    payload: Dict[str, Any],
    actor: Principal
) -> OperationalPolicy:
    """Validate and persist a partial policy update. Admin only."""
    ensure_admin(actor)

    async with transaction(db):
        current = await get_operational_policy(db)
        updated = _normalize_update(payload or {}, current)

        result = await db.execute(
            select(SystemSetting)
            .where(SystemSetting.setting_key.in_(KNOWN_KEYS))
            .with_for_update()
        )
        existing = {row.setting_key: row for row in result.scalars().all()}
        now = datetime.utcnow()

        for key, value in updated.to_dict().items():
            stored_value = str(value).lower() if isinstance(value, bool) else str(value)
            row = existing.get(key)
            if row is None:
                db.add(SystemSetting(
                    setting_key=key,
                    setting_value=stored_value,
                    updated_by_user_id=actor.user_id,
                    updated_at=now,
                ))
            else:
                row.setting_value = stored_value
                row.updated_by_user_id = actor.user_id
                row.updated_at = now

    logger.info(f"Operational policy updated by user {actor.user_id}: {updated.to_dict()}")
    await audit_service.log_action_safe(
        db,
        action="POLICY_UPDATED",
        entity_type="SYSTEM_SETTINGS",
        entity_id=None,
        actor=actor,
        details=updated.to_dict(),
    )
    return updated

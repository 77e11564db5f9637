"""
group_tiers/state_machines/group_status.py
Derived group status.

ACTIVE / INACTIVE are never set directly: they are recomputed from the ACTIVE
membership rows after every mutation that can change them. FROZEN is an admin
override; recomputation leaves a frozen group untouched and only unfreeze
returns it to the derived states.
"""
import logging
from typing import Any, Dict, Iterable, List

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.errors import ConflictError, ErrorCode, NotFoundError
from group_tiers.orm.group import Group, GroupStatus
from group_tiers.orm.membership import LEADERSHIP_ROLES, Membership, MembershipStatus

logger = logging.getLogger(__name__)


async def lock_group(db: AsyncSession, group_id: int) -> Group:
    """
    Take the group's write lock and load the row. NotFound when absent.

    The version bump is a write, so on SQLite every other writer queues
    behind this transaction before any member count is read. PostgreSQL
    row-locks on the UPDATE.
    """
    await db.flush()
    bumped = await db.execute(
        update(Group)
        .where(Group.id == group_id)
        .values(version=Group.version + 1, updated_at=Group.updated_at)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount == 0:
        raise NotFoundError("Group", group_id)

    result = await db.execute(
        select(Group)
        .where(Group.id == group_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def count_active_members(db: AsyncSession, group_id: int) -> int:
    result = await db.execute(
        select(func.count(Membership.id)).where(
            Membership.group_id == group_id,
            Membership.status == MembershipStatus.ACTIVE.value,
        )
    )
    return int(result.scalar() or 0)


async def held_leadership_roles(db: AsyncSession, group_id: int) -> List[str]:
    result = await db.execute(
        select(Membership.role).where(
            Membership.group_id == group_id,
            Membership.status == MembershipStatus.ACTIVE.value,
            Membership.role.in_(LEADERSHIP_ROLES),
        )
    )
    held = set(result.scalars().all())
    return [role for role in LEADERSHIP_ROLES if role in held]


class GroupStatusMachine:
    """Recomputes and overrides group status."""

    # Admin overrides only; ACTIVE <-> INACTIVE is derived, not requested.
    ALLOWED_OVERRIDES: Dict[str, List[str]] = {
        GroupStatus.ACTIVE.value: [GroupStatus.FROZEN.value],
        GroupStatus.INACTIVE.value: [GroupStatus.FROZEN.value],
        GroupStatus.FROZEN.value: [GroupStatus.ACTIVE.value, GroupStatus.INACTIVE.value],
    }

    @staticmethod
    def resolve(current_status: str, active_count: int, held_roles: Iterable[str], policy) -> str:
        """
        ACTIVE iff the member count is within [min, max] and, when the policy
        requires it, every leadership role is held. FROZEN is sticky.
        """
        if current_status == GroupStatus.FROZEN.value:
            return GroupStatus.FROZEN.value

        within_bounds = policy.min_group_members <= active_count <= policy.max_group_members
        if not within_bounds:
            return GroupStatus.INACTIVE.value

        if policy.require_leadership_for_activation:
            held = set(held_roles)
            if not all(role in held for role in LEADERSHIP_ROLES):
                return GroupStatus.INACTIVE.value

        return GroupStatus.ACTIVE.value

    @staticmethod
    async def leadership_snapshot(db: AsyncSession, group_id: int) -> Dict[str, Any]:
        held = await held_leadership_roles(db, group_id)
        active_count = await count_active_members(db, group_id)
        return {
            "group_id": group_id,
            "active_member_count": active_count,
            "held_roles": held,
            "missing_roles": [role for role in LEADERSHIP_ROLES if role not in held],
            "active_leadership_count": len(held),
        }

    @classmethod
    async def refresh(cls, db: AsyncSession, group: Group, policy) -> str:
        """Recompute the derived status of a locked group and store it."""
        await db.flush()
        active_count = await count_active_members(db, group.id)
        held = await held_leadership_roles(db, group.id)
        new_status = cls.resolve(group.status, active_count, held, policy)

        if new_status != group.status:
            logger.info(
                f"Group {group.id} status {group.status} -> {new_status} "
                f"(members={active_count}, leadership={held})"
            )
            group.status = new_status
            await db.flush()
        return new_status

    @classmethod
    def _validate_override(cls, group: Group, target: str) -> None:
        allowed = cls.ALLOWED_OVERRIDES.get(group.status, [])
        if target not in allowed:
            raise ConflictError(
                f"Group {group.id} cannot move from {group.status} to {target}",
                code=ErrorCode.INVALID_STATUS,
                details={"current_status": group.status, "requested_status": target}
            )

    @classmethod
    async def freeze(cls, db: AsyncSession, group: Group) -> str:
        cls._validate_override(group, GroupStatus.FROZEN.value)
        logger.info(f"Group {group.id} frozen (was {group.status})")
        group.status = GroupStatus.FROZEN.value
        await db.flush()
        return group.status

    @classmethod
    async def unfreeze(cls, db: AsyncSession, group: Group, policy) -> str:
        """Lift the override and fall back to the derived status."""
        if group.status != GroupStatus.FROZEN.value:
            raise ConflictError(
                f"Group {group.id} is not frozen",
                code=ErrorCode.INVALID_STATUS,
                details={"current_status": group.status}
            )
        group.status = GroupStatus.INACTIVE.value
        new_status = await cls.refresh(db, group, policy)
        logger.info(f"Group {group.id} unfrozen -> {new_status}")
        return new_status


def ensure_not_frozen(group: Group, message: str = None) -> None:
    if group.is_frozen:
        raise ConflictError(
            message or f"Group {group.group_code} is frozen",
            code=ErrorCode.GROUP_FROZEN,
            details={"group_id": group.id}
        )

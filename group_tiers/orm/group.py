"""
group_tiers/orm/group.py
Competitive student group.

Status is partly derived: ACTIVE/INACTIVE are recomputed from membership
composition by state_machines.group_status, FROZEN is an admin override that
the recomputation never overwrites.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String

from group_tiers.orm.base import Base


class GroupTier(str, Enum):
    """Ordered strength classes, lowest first."""
    D = "D"
    C = "C"
    B = "B"
    A = "A"


TIER_ORDER = [GroupTier.D.value, GroupTier.C.value, GroupTier.B.value, GroupTier.A.value]


def tier_rank(tier: str) -> int:
    """Position of a tier in TIER_ORDER, -1 when unknown."""
    value = str(tier or "").strip().upper()
    return TIER_ORDER.index(value) if value in TIER_ORDER else -1


class GroupStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    FROZEN = "FROZEN"


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_code = Column(String(50), nullable=False, unique=True, index=True)
    group_name = Column(String(255), nullable=False)
    tier = Column(String(1), nullable=False, default=GroupTier.D.value)
    status = Column(String(20), nullable=False, default=GroupStatus.INACTIVE.value)
    # Bumped by every locked mutation
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("tier IN ('D', 'C', 'B', 'A')", name="ck_group_tier_valid"),
        CheckConstraint(
            "status IN ('ACTIVE', 'INACTIVE', 'FROZEN')",
            name="ck_group_status_valid"
        ),
        Index("idx_group_status", "status"),
    )

    @property
    def is_frozen(self) -> bool:
        return self.status == GroupStatus.FROZEN.value

    def __repr__(self):
        return f"<Group(id={self.id}, code='{self.group_code}', tier={self.tier}, status={self.status})>"

    def to_dict(self):
        return {
            "group_id": self.id,
            "group_code": self.group_code,
            "group_name": self.group_name,
            "tier": self.tier,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

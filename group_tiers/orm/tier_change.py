"""
group_tiers/orm/tier_change.py
Applied tier-change decisions. One row per (phase, group), never updated.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
)

from group_tiers.orm.base import Base


class TierChangeAction(str, Enum):
    PROMOTE = "PROMOTE"
    DEMOTE = "DEMOTE"
    SAME = "SAME"


class TierRuleCode(str, Enum):
    LAST_PHASE_ELIGIBLE_PROMOTE = "LAST_PHASE_ELIGIBLE_PROMOTE"
    LAST_PHASE_ELIGIBLE_TOP_TIER = "LAST_PHASE_ELIGIBLE_TOP_TIER"
    LAST_TWO_NOT_ELIGIBLE_DEMOTE = "LAST_TWO_NOT_ELIGIBLE_DEMOTE"
    LAST_TWO_NOT_ELIGIBLE_BOTTOM_TIER = "LAST_TWO_NOT_ELIGIBLE_BOTTOM_TIER"
    LAST_PHASE_NOT_ELIGIBLE_PREVIOUS_ELIGIBLE_SAME = "LAST_PHASE_NOT_ELIGIBLE_PREVIOUS_ELIGIBLE_SAME"
    LAST_PHASE_NOT_ELIGIBLE_PREVIOUS_MISSING_SAME = "LAST_PHASE_NOT_ELIGIBLE_PREVIOUS_MISSING_SAME"
    LAST_PHASE_ELIGIBILITY_MISSING_SAME = "LAST_PHASE_ELIGIBILITY_MISSING_SAME"


class TierChangeRecord(Base):
    __tablename__ = "group_tier_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phase_id = Column(String(36), ForeignKey("phases.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    previous_phase_id = Column(String(36), nullable=True)
    current_tier = Column(String(1), nullable=False)
    recommended_tier = Column(String(1), nullable=False)
    change_action = Column(String(10), nullable=False)
    last_phase_eligible = Column(Boolean, nullable=True)
    previous_phase_eligible = Column(Boolean, nullable=True)
    rule_code = Column(String(60), nullable=False)
    approved_by_admin_id = Column(Integer, nullable=False)
    applied_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("phase_id", "group_id", name="uq_tier_change_phase_group"),
        CheckConstraint("change_action IN ('PROMOTE', 'DEMOTE', 'SAME')", name="ck_tier_change_action_valid"),
    )

    def to_dict(self):
        return {
            "tier_change_id": self.id,
            "phase_id": self.phase_id,
            "group_id": self.group_id,
            "previous_phase_id": self.previous_phase_id,
            "current_tier": self.current_tier,
            "recommended_tier": self.recommended_tier,
            "change_action": self.change_action,
            "last_phase_eligible": self.last_phase_eligible,
            "previous_phase_eligible": self.previous_phase_eligible,
            "rule_code": self.rule_code,
            "approved_by_admin_id": self.approved_by_admin_id,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
        }

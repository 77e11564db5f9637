"""
group_tiers/orm/eligibility.py
Per-phase eligibility snapshots. Overwritten on every evaluation run.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint

from group_tiers.orm.base import Base


class EligibilityReason(str, Enum):
    INDIVIDUAL_TARGET_NOT_CONFIGURED = "INDIVIDUAL_TARGET_NOT_CONFIGURED"
    INDIVIDUAL_TARGET_MET = "INDIVIDUAL_TARGET_MET"
    INDIVIDUAL_TARGET_NOT_MET = "INDIVIDUAL_TARGET_NOT_MET"
    GROUP_TARGET_NOT_CONFIGURED = "GROUP_TARGET_NOT_CONFIGURED"
    GROUP_TARGET_MET = "GROUP_TARGET_MET"
    GROUP_TARGET_NOT_MET = "GROUP_TARGET_NOT_MET"


class IndividualEligibility(Base):
    __tablename__ = "individual_phase_eligibility"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phase_id = Column(String(36), ForeignKey("phases.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    this_phase_base_points = Column(Integer, nullable=False, default=0)
    individual_target = Column(Float, nullable=True)
    is_eligible = Column(Boolean, nullable=False, default=False)
    reason_code = Column(String(40), nullable=False)
    evaluated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("phase_id", "student_id", name="uq_individual_eligibility_phase_student"),
    )

    def to_dict(self):
        return {
            "phase_id": self.phase_id,
            "student_id": self.student_id,
            "this_phase_base_points": self.this_phase_base_points,
            "individual_target": self.individual_target,
            "is_eligible": self.is_eligible,
            "reason_code": self.reason_code,
        }


class GroupEligibility(Base):
    __tablename__ = "group_phase_eligibility"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phase_id = Column(String(36), ForeignKey("phases.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    tier = Column(String(1), nullable=False)
    this_phase_group_points = Column(Integer, nullable=False, default=0)
    group_target = Column(Float, nullable=True)
    is_eligible = Column(Boolean, nullable=False, default=False)
    reason_code = Column(String(40), nullable=False)
    evaluated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("phase_id", "group_id", name="uq_group_eligibility_phase_group"),
    )

    def to_dict(self):
        return {
            "phase_id": self.phase_id,
            "group_id": self.group_id,
            "tier": self.tier,
            "this_phase_group_points": self.this_phase_group_points,
            "group_target": self.group_target,
            "is_eligible": self.is_eligible,
            "reason_code": self.reason_code,
        }

"""
group_tiers/orm/membership.py
Student-to-group membership rows.

Rows are never deleted: leaving sets status LEFT and stamps leave_date and
the rejoin deadline. Two partial unique indexes back the invariants:
- one ACTIVE membership per student
- one ACTIVE holder per leadership role per group
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, text

from group_tiers.orm.base import Base


class MembershipRole(str, Enum):
    MEMBER = "MEMBER"
    CAPTAIN = "CAPTAIN"
    VICE_CAPTAIN = "VICE_CAPTAIN"
    STRATEGIST = "STRATEGIST"
    MANAGER = "MANAGER"


LEADERSHIP_ROLES = [
    MembershipRole.CAPTAIN.value,
    MembershipRole.VICE_CAPTAIN.value,
    MembershipRole.STRATEGIST.value,
    MembershipRole.MANAGER.value,
]

ALL_ROLES = LEADERSHIP_ROLES + [MembershipRole.MEMBER.value]


class MembershipStatus(str, Enum):
    ACTIVE = "ACTIVE"
    LEFT = "LEFT"


_ACTIVE_ONLY = text("status = 'ACTIVE'")
_ACTIVE_LEADERSHIP = text("status = 'ACTIVE' AND role <> 'MEMBER'")


class Membership(Base):
    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False, default=MembershipRole.MEMBER.value)
    status = Column(String(10), nullable=False, default=MembershipStatus.ACTIVE.value)
    join_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    leave_date = Column(DateTime, nullable=True)
    rejoin_deadline_at = Column(DateTime, nullable=True)
    incubation_end_date = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "role IN ('MEMBER', 'CAPTAIN', 'VICE_CAPTAIN', 'STRATEGIST', 'MANAGER')",
            name="ck_membership_role_valid"
        ),
        CheckConstraint("status IN ('ACTIVE', 'LEFT')", name="ck_membership_status_valid"),
        CheckConstraint(
            "(status != 'LEFT') OR (leave_date IS NOT NULL)",
            name="ck_membership_left_has_date"
        ),
        Index(
            "uq_membership_active_student",
            "student_id",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
        Index(
            "uq_membership_active_leadership_role",
            "group_id",
            "role",
            unique=True,
            sqlite_where=_ACTIVE_LEADERSHIP,
            postgresql_where=_ACTIVE_LEADERSHIP,
        ),
        Index("idx_membership_group_status", "group_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE.value

    def __repr__(self):
        return (
            f"<Membership(id={self.id}, student={self.student_id}, group={self.group_id}, "
            f"role={self.role}, status={self.status})>"
        )

    def to_dict(self):
        return {
            "membership_id": self.id,
            "student_id": self.student_id,
            "group_id": self.group_id,
            "role": self.role,
            "status": self.status,
            "join_date": self.join_date.isoformat() if self.join_date else None,
            "leave_date": self.leave_date.isoformat() if self.leave_date else None,
            "rejoin_deadline_at": self.rejoin_deadline_at.isoformat() if self.rejoin_deadline_at else None,
            "incubation_end_date": self.incubation_end_date.isoformat() if self.incubation_end_date else None,
        }

"""
group_tiers/orm/requests.py
Apply/decide request rows: join, leadership-role and group-tier-change.

Each request is created PENDING and decided exactly once. A partial unique
index per subject key keeps at most one PENDING row at a time.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text, text

from group_tiers.orm.base import Base


# =============================================================================
# Enums
# =============================================================================

class RequestStatus(str, Enum):
    """PENDING -> APPROVED | REJECTED, never re-opened."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


DECISION_STATUSES = [RequestStatus.APPROVED.value, RequestStatus.REJECTED.value]


class TierRequestType(str, Enum):
    PROMOTION = "PROMOTION"
    DEMOTION = "DEMOTION"


_PENDING_ONLY = text("status = 'PENDING'")
_STATUS_CHECK = "status IN ('PENDING', 'APPROVED', 'REJECTED')"


def _iso(value):
    return value.isoformat() if value else None


# =============================================================================
# Models
# =============================================================================

class JoinRequest(Base):
    __tablename__ = "group_join_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(10), nullable=False, default=RequestStatus.PENDING.value)
    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    decided_by_user_id = Column(Integer, nullable=True)
    decided_by_role = Column(String(20), nullable=True)
    decision_reason = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(_STATUS_CHECK, name="ck_join_request_status_valid"),
        Index(
            "uq_join_request_pending",
            "student_id",
            "group_id",
            unique=True,
            sqlite_where=_PENDING_ONLY,
            postgresql_where=_PENDING_ONLY,
        ),
        Index("idx_join_request_group_status", "group_id", "status"),
    )

    def to_dict(self):
        return {
            "request_id": self.id,
            "student_id": self.student_id,
            "group_id": self.group_id,
            "status": self.status,
            "requested_at": _iso(self.requested_at),
            "decided_by_user_id": self.decided_by_user_id,
            "decided_by_role": self.decided_by_role,
            "decision_reason": self.decision_reason,
            "decided_at": _iso(self.decided_at),
        }


class LeadershipRoleRequest(Base):
    __tablename__ = "leadership_role_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    membership_id = Column(Integer, ForeignKey("memberships.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    requested_role = Column(String(20), nullable=False)
    request_reason = Column(Text, nullable=True)
    status = Column(String(10), nullable=False, default=RequestStatus.PENDING.value)
    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    decided_by_user_id = Column(Integer, nullable=True)
    decision_reason = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(_STATUS_CHECK, name="ck_leadership_request_status_valid"),
        CheckConstraint(
            "requested_role IN ('CAPTAIN', 'VICE_CAPTAIN', 'STRATEGIST', 'MANAGER')",
            name="ck_leadership_request_role_valid"
        ),
        Index(
            "uq_leadership_request_pending",
            "student_id",
            "group_id",
            unique=True,
            sqlite_where=_PENDING_ONLY,
            postgresql_where=_PENDING_ONLY,
        ),
        Index("idx_leadership_request_group_status", "group_id", "status"),
    )

    def to_dict(self):
        return {
            "request_id": self.id,
            "membership_id": self.membership_id,
            "student_id": self.student_id,
            "group_id": self.group_id,
            "requested_role": self.requested_role,
            "request_reason": self.request_reason,
            "status": self.status,
            "requested_at": _iso(self.requested_at),
            "decided_by_user_id": self.decided_by_user_id,
            "decision_reason": self.decision_reason,
            "decided_at": _iso(self.decided_at),
        }


class GroupTierChangeRequest(Base):
    __tablename__ = "group_tier_change_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    current_tier = Column(String(1), nullable=False)
    requested_tier = Column(String(1), nullable=False)
    request_type = Column(String(10), nullable=False)
    request_reason = Column(Text, nullable=True)
    status = Column(String(10), nullable=False, default=RequestStatus.PENDING.value)

    requested_by_user_id = Column(Integer, nullable=False)
    requested_by_role = Column(String(20), nullable=False)
    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    decided_by_user_id = Column(Integer, nullable=True)
    decision_reason = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(_STATUS_CHECK, name="ck_tier_request_status_valid"),
        CheckConstraint("request_type IN ('PROMOTION', 'DEMOTION')", name="ck_tier_request_type_valid"),
        CheckConstraint("current_tier <> requested_tier", name="ck_tier_request_tier_differs"),
        Index(
            "uq_tier_request_pending",
            "group_id",
            unique=True,
            sqlite_where=_PENDING_ONLY,
            postgresql_where=_PENDING_ONLY,
        ),
    )

    def to_dict(self):
        return {
            "request_id": self.id,
            "group_id": self.group_id,
            "current_tier": self.current_tier,
            "requested_tier": self.requested_tier,
            "request_type": self.request_type,
            "request_reason": self.request_reason,
            "status": self.status,
            "requested_by_user_id": self.requested_by_user_id,
            "requested_by_role": self.requested_by_role,
            "requested_at": _iso(self.requested_at),
            "decided_by_user_id": self.decided_by_user_id,
            "decision_reason": self.decision_reason,
            "decided_at": _iso(self.decided_at),
        }

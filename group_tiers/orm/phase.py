"""
group_tiers/orm/phase.py
Scoring windows (phases), their targets and the holiday calendar.

Lifecycle: ACTIVE (on creation) -> COMPLETED (finalization sweep), or
ACTIVE -> INACTIVE when displaced by a newer phase. A partial unique index
keeps at most one ACTIVE phase.
"""
import uuid
from datetime import datetime, time
from enum import Enum

from sqlalchemy import (
    CheckConstraint, Column, Date, DateTime, Float, ForeignKey, Index, Integer, String,
    UniqueConstraint, text
)

from group_tiers.orm.base import Base


class PhaseStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    COMPLETED = "COMPLETED"


_ACTIVE_ONLY = text("status = 'ACTIVE'")


def _parse_time(value: str) -> time:
    return datetime.strptime(value, "%H:%M:%S").time()


class Phase(Base):
    __tablename__ = "phases"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    phase_name = Column(String(255), nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    start_time = Column(String(8), nullable=False, default="00:00:00")
    end_time = Column(String(8), nullable=False, default="23:59:59")
    total_working_days = Column(Integer, nullable=False, default=10)
    change_day_number = Column(Integer, nullable=False, default=5)
    change_day = Column(Date, nullable=False)
    status = Column(String(10), nullable=False, default=PhaseStatus.ACTIVE.value)
    created_by_user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('ACTIVE', 'INACTIVE', 'COMPLETED')", name="ck_phase_status_valid"),
        CheckConstraint("total_working_days > 0", name="ck_phase_working_days_positive"),
        CheckConstraint(
            "change_day_number >= 1 AND change_day_number < total_working_days",
            name="ck_phase_change_day_in_range"
        ),
        CheckConstraint("end_date >= start_date", name="ck_phase_dates_ordered"),
        Index(
            "uq_phase_single_active",
            "status",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
        Index("idx_phase_start_date", "start_date"),
    )

    @property
    def window_start(self) -> datetime:
        return datetime.combine(self.start_date, _parse_time(self.start_time))

    @property
    def window_end(self) -> datetime:
        return datetime.combine(self.end_date, _parse_time(self.end_time))

    def __repr__(self):
        return f"<Phase(id={self.id}, start={self.start_date}, end={self.end_date}, status={self.status})>"

    def to_dict(self):
        return {
            "phase_id": self.id,
            "phase_name": self.phase_name,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "total_working_days": self.total_working_days,
            "change_day_number": self.change_day_number,
            "change_day": self.change_day.isoformat() if self.change_day else None,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class PhaseTarget(Base):
    """Per-tier group point target for one phase."""
    __tablename__ = "phase_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phase_id = Column(String(36), ForeignKey("phases.id", ondelete="CASCADE"), nullable=False, index=True)
    tier = Column(String(1), nullable=False)
    group_target = Column(Float, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("phase_id", "tier", name="uq_phase_target_tier"),
        CheckConstraint("tier IN ('D', 'C', 'B', 'A')", name="ck_phase_target_tier_valid"),
        CheckConstraint("group_target >= 0", name="ck_phase_target_non_negative"),
    )


class IndividualPhaseTarget(Base):
    """Phase-wide individual point target."""
    __tablename__ = "individual_phase_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phase_id = Column(String(36), ForeignKey("phases.id", ondelete="CASCADE"), nullable=False, unique=True)
    individual_target = Column(Float, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("individual_target >= 0", name="ck_individual_target_non_negative"),
    )


class Holiday(Base):
    """Non-working date skipped by every working-day calculation."""
    __tablename__ = "holidays"

    id = Column(Integer, primary_key=True, autoincrement=True)
    holiday_date = Column(Date, nullable=False, unique=True)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "holiday_id": self.id,
            "holiday_date": self.holiday_date.isoformat(),
            "description": self.description,
        }

"""
group_tiers/orm/points.py
Append-only base points ledger plus the derived running total per student.
"""
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, String

from group_tiers.orm.base import Base


class BasePointHistory(Base):
    __tablename__ = "base_point_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    activity_date = Column(Date, nullable=False)
    activity_at = Column(DateTime, nullable=False)
    points = Column(Integer, nullable=False)
    reason = Column(String(500), nullable=False)
    recorded_by_user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_base_points_student_activity", "student_id", "activity_at"),
    )

    def to_dict(self):
        return {
            "history_id": self.id,
            "student_id": self.student_id,
            "activity_date": self.activity_date.isoformat(),
            "activity_at": self.activity_at.isoformat(),
            "points": self.points,
            "reason": self.reason,
            "recorded_by_user_id": self.recorded_by_user_id,
        }


class BasePointsTotal(Base):
    __tablename__ = "base_points_totals"

    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), primary_key=True)
    total_base_points = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)

"""
group_tiers/orm/audit_log.py
Append-only audit trail of group lifecycle actions.

Written best-effort after the business transaction commits. Never updated or
deleted.
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String

from group_tiers.orm.base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(60), nullable=False)
    entity_type = Column(String(40), nullable=False)
    entity_id = Column(String(64), nullable=True)
    actor_user_id = Column(Integer, nullable=True)
    actor_role = Column(String(20), nullable=True)
    reason_code = Column(String(60), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action_created", "action", "created_at"),
    )

    def to_dict(self):
        return {
            "audit_id": self.id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_user_id": self.actor_user_id,
            "actor_role": self.actor_role,
            "reason_code": self.reason_code,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

"""
group_tiers/services/audit_service.py
Best-effort audit sink.

Called after the business transaction has committed. Entries are written on
a separate session bound to the same engine; a failure is logged and
swallowed so it can never roll back or block the operation it describes.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.orm.audit_log import AuditLog

logger = logging.getLogger(__name__)


async def log_action_safe(
    db: AsyncSession,
    action: str,
    entity_type: str,
    entity_id: Any = None,
    actor=None,
    reason_code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Optional[AuditLog]:
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        actor_user_id=getattr(actor, "user_id", None),
        actor_role=getattr(actor, "role", None),
        reason_code=reason_code,
        details=details,
    )
    async with AsyncSession(db.bind, expire_on_commit=False) as audit_db:
        try:
            audit_db.add(entry)
            await audit_db.commit()
            return entry
        except Exception as e:
            logger.error(f"Audit write failed for {action} on {entity_type}:{entity_id}: {e}")
            await audit_db.rollback()
            return None


async def list_audit_logs(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Any = None,
    action: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    query = select(AuditLog)
    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.where(AuditLog.entity_id == str(entity_id))
    if action:
        query = query.where(AuditLog.action == action)
    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
    result = await db.execute(query)
    return [row.to_dict() for row in result.scalars().all()]

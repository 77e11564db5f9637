"""
group_tiers/routes/policy.py
Operational policy and audit log endpoints
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import get_db
from group_tiers.rbac import Principal, get_current_principal, require_admin
from group_tiers.services import audit_service, policy_service

router = APIRouter(tags=["policy"])


@router.get("/policy")
async def get_policy(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    policy = await policy_service.get_operational_policy(db)
    return policy.to_dict()


@router.put("/policy")
async def update_policy(
    payload: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    """Partial update; unknown keys are rejected."""
    policy = await policy_service.update_operational_policy(db, payload, admin)
    return policy.to_dict()


@router.get("/audit-logs")
async def list_audit_logs(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await audit_service.list_audit_logs(
        db, entity_type=entity_type, entity_id=entity_id, action=action, limit=limit
    )

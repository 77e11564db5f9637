"""
group_tiers/routes/groups.py
Group administration endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import get_db
from group_tiers.rbac import Principal, get_current_principal, require_admin
from group_tiers.services import group_service, membership_service

router = APIRouter(prefix="/groups", tags=["groups"])


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreateGroupRequest(BaseModel):
    group_code: str = Field(..., min_length=1, max_length=50)
    group_name: str = Field(..., min_length=1, max_length=255)
    tier: Optional[str] = "D"


class FreezeGroupRequest(BaseModel):
    reason: Optional[str] = None


# =============================================================================
# Routes
# =============================================================================

@router.post("", status_code=201)
async def create_group(
    body: CreateGroupRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """Admins always; students only when the policy allows it."""
    return await group_service.create_group(db, body.model_dump(), principal)


@router.get("")
async def list_groups(
    status: Optional[str] = Query(None),
    tier: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await group_service.list_groups(db, status=status, tier=tier)


@router.get("/{group_id}")
async def get_group(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await group_service.get_group(db, group_id)


@router.get("/{group_id}/members")
async def list_members(
    group_id: int,
    include_left: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await membership_service.list_group_members(db, group_id, include_left=include_left)


@router.post("/{group_id}/freeze")
async def freeze_group(
    group_id: int,
    body: Optional[FreezeGroupRequest] = None,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await group_service.freeze_group(db, group_id, admin, reason=body.reason if body else None)


@router.post("/{group_id}/unfreeze")
async def unfreeze_group(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await group_service.unfreeze_group(db, group_id, admin)

"""
group_tiers/routes/tier_changes.py
End-of-phase tier change preview and apply
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import get_db
from group_tiers.rbac import Principal, require_admin
from group_tiers.services import tier_change_service

router = APIRouter(prefix="/tier-changes", tags=["tier-changes"])


@router.get("/phases/{phase_id}/preview")
async def preview(
    phase_id: str,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await tier_change_service.preview_tier_change(db, phase_id, admin)


@router.post("/phases/{phase_id}/groups/{group_id}/apply")
async def apply(
    phase_id: str,
    group_id: int,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    """Persist the recommendation once per (phase, group)."""
    return await tier_change_service.apply_tier_change(db, phase_id, group_id, admin)


@router.get("/phases/{phase_id}")
async def list_applied(
    phase_id: str,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await tier_change_service.list_tier_changes(db, phase_id, admin)

"""
group_tiers/routes/phases.py
Phase calendar, targets, holidays and finalization endpoints
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import get_db
from group_tiers.rbac import Principal, get_current_principal, require_admin
from group_tiers.services import phase_service

router = APIRouter(prefix="/phases", tags=["phases"])


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreatePhaseRequest(BaseModel):
    phase_name: Optional[str] = Field(None, max_length=255)
    start_date: str
    total_working_days: Optional[int] = None
    change_day_number: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    targets: Optional[List[Dict[str, Any]]] = None
    individual_target: Optional[Any] = None


class PhaseTargetsRequest(BaseModel):
    targets: List[Dict[str, Any]]
    individual_target: Optional[Any] = None


class HolidayRequest(BaseModel):
    holiday_date: str
    description: Optional[str] = Field(None, max_length=255)


# =============================================================================
# Routes (static paths before /{phase_id})
# =============================================================================

@router.post("", status_code=201)
async def create_phase(
    body: CreatePhaseRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    """Create the new active phase; any previously active phase is deactivated."""
    return await phase_service.create_phase(db, body.model_dump(), admin)


@router.get("")
async def list_phases(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await phase_service.get_all_phases(db)


@router.get("/current")
async def current_phase(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return {"phase": await phase_service.get_current_phase(db)}


@router.post("/finalize")
async def finalize_phases(
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    """Run the finalization sweep now. Returns [] while another sweep runs."""
    finalized = await phase_service.finalize_expired_active_phases(db)
    return {"finalized_phase_ids": finalized}


@router.post("/holidays", status_code=201)
async def add_holiday(
    body: HolidayRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await phase_service.add_holiday(db, body.holiday_date, body.description, admin)


@router.get("/holidays")
async def list_holidays(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await phase_service.list_holidays(db)


@router.get("/{phase_id}")
async def get_phase(
    phase_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await phase_service.get_phase_by_id(db, phase_id)


@router.put("/{phase_id}/targets")
async def set_targets(
    phase_id: str,
    body: PhaseTargetsRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await phase_service.set_phase_targets(db, phase_id, body.targets, body.individual_target, admin)


@router.get("/{phase_id}/targets")
async def get_targets(
    phase_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await phase_service.get_phase_targets(db, phase_id)


@router.get("/{phase_id}/change-day")
async def change_day(
    phase_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await phase_service.is_change_day(db, phase_id)

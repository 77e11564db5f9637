"""
group_tiers/routes/eligibility.py
Base-point ledger and phase eligibility endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import get_db
from group_tiers.rbac import Principal, get_current_principal, require_admin
from group_tiers.services import eligibility_service, identity_service

router = APIRouter(prefix="/eligibility", tags=["eligibility"])


class BasePointsRequest(BaseModel):
    student_id: int
    points: int
    reason: str
    activity_at: Optional[str] = None
    activity_date: Optional[str] = None


@router.post("/base-points", status_code=201)
async def record_base_points(
    body: BasePointsRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await eligibility_service.record_base_points(db, body.model_dump(), admin)


@router.get("/base-points/me")
async def my_base_points(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    student_id = await identity_service.resolve_student_id(db, principal)
    return await eligibility_service.get_student_base_points(db, student_id)


@router.get("/base-points/{student_id}")
async def student_base_points(
    student_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await eligibility_service.get_student_base_points(db, student_id, limit=limit)


@router.post("/phases/{phase_id}/evaluate")
async def evaluate_phase(
    phase_id: str,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await eligibility_service.evaluate_phase_eligibility(db, phase_id, admin)


@router.get("/phases/{phase_id}/individual")
async def individual_eligibility(
    phase_id: str,
    student_id: Optional[int] = Query(None),
    is_eligible: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await eligibility_service.get_individual_eligibility(
        db, phase_id, student_id=student_id, is_eligible=is_eligible
    )


@router.get("/phases/{phase_id}/groups")
async def group_eligibility(
    phase_id: str,
    group_id: Optional[int] = Query(None),
    is_eligible: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await eligibility_service.get_group_eligibility(
        db, phase_id, group_id=group_id, is_eligible=is_eligible
    )


@router.get("/me/history")
async def my_eligibility_history(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    student_id = await identity_service.resolve_student_id(db, principal)
    return await eligibility_service.get_student_eligibility_history(db, student_id)

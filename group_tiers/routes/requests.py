"""
group_tiers/routes/requests.py
Apply/decide endpoints for join, leadership-role and tier-change requests
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import get_db
from group_tiers.rate_limit import APPLY_LIMIT, limiter
from group_tiers.rbac import Principal, get_current_principal, require_admin
from group_tiers.services import (
    join_request_service, leadership_request_service, tier_request_service
)

router = APIRouter(tags=["requests"])


# =============================================================================
# Pydantic Request Models
# =============================================================================

class JoinRequestCreate(BaseModel):
    group_id: int = Field(..., gt=0)


class LeadershipRequestCreate(BaseModel):
    group_id: int = Field(..., gt=0)
    requested_role: str
    request_reason: Optional[str] = Field(None, max_length=1000)


class TierRequestCreate(BaseModel):
    group_id: int = Field(..., gt=0)
    requested_tier: str
    request_reason: Optional[str] = Field(None, max_length=1000)


class DecisionRequest(BaseModel):
    status: str
    reason: Optional[str] = Field(None, max_length=1000)


# =============================================================================
# Join requests
# =============================================================================

@router.post("/join-requests", status_code=201)
@limiter.limit(APPLY_LIMIT)
async def apply_join_request(
    request: Request,
    body: JoinRequestCreate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await join_request_service.apply_join_request(db, principal, body.group_id)


@router.post("/join-requests/{request_id}/decision")
async def decide_join_request(
    request_id: int,
    body: DecisionRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """Group captain or admin."""
    return await join_request_service.decide_join_request(db, request_id, body.status, body.reason, principal)


@router.get("/join-requests/me")
async def my_join_requests(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await join_request_service.list_my_join_requests(db, principal)


@router.get("/join-requests/group/{group_id}/pending")
async def pending_join_requests(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await join_request_service.list_pending_by_group(db, group_id, principal)


# =============================================================================
# Leadership-role requests
# =============================================================================

@router.post("/leadership-requests", status_code=201)
@limiter.limit(APPLY_LIMIT)
async def apply_leadership_request(
    request: Request,
    body: LeadershipRequestCreate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await leadership_request_service.apply_leadership_request(
        db, principal, body.group_id, body.requested_role, body.request_reason
    )


@router.post("/leadership-requests/{request_id}/decision")
async def decide_leadership_request(
    request_id: int,
    body: DecisionRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await leadership_request_service.decide_leadership_request(
        db, request_id, body.status, body.reason, admin
    )


@router.get("/leadership-requests/pending")
async def all_pending_leadership_requests(
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await leadership_request_service.list_all_pending(db, admin)


@router.get("/leadership-requests/group/{group_id}/pending")
async def pending_leadership_requests(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await leadership_request_service.list_pending_by_group(db, group_id, admin)


@router.get("/leadership-requests/me")
async def my_leadership_requests(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await leadership_request_service.list_my_leadership_requests(db, principal)


@router.get("/leadership-requests/admin/summary")
async def leadership_admin_summary(
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await leadership_request_service.get_admin_summary(db, admin)


# =============================================================================
# Group-tier-change requests
# =============================================================================

@router.post("/tier-requests", status_code=201)
@limiter.limit(APPLY_LIMIT)
async def apply_tier_request(
    request: Request,
    body: TierRequestCreate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """Group captain or admin."""
    return await tier_request_service.apply_tier_request(
        db, principal, body.group_id, body.requested_tier, body.request_reason
    )


@router.post("/tier-requests/{request_id}/decision")
async def decide_tier_request(
    request_id: int,
    body: DecisionRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await tier_request_service.decide_tier_request(db, request_id, body.status, body.reason, admin)


@router.get("/tier-requests/pending")
async def all_pending_tier_requests(
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await tier_request_service.list_all_pending(db, admin)


@router.get("/tier-requests/group/{group_id}/pending")
async def pending_tier_requests(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await tier_request_service.list_pending_by_group(db, group_id, principal)


@router.get("/tier-requests/me")
async def my_tier_requests(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await tier_request_service.list_my_tier_requests(db, principal)

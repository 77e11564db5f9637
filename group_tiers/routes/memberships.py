"""
group_tiers/routes/memberships.py
Membership endpoints: join, leave, switch, role changes, admin removal
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import get_db
from group_tiers.rbac import Principal, get_current_principal, require_admin
from group_tiers.services import identity_service, membership_service

router = APIRouter(prefix="/memberships", tags=["memberships"])


class GroupTarget(BaseModel):
    group_id: int = Field(..., gt=0)


class AdminAddMemberRequest(BaseModel):
    student_id: int = Field(..., gt=0)
    group_id: int = Field(..., gt=0)
    bypass_rejoin_deadline: bool = False


class AdminLeaveRequest(BaseModel):
    student_id: int = Field(..., gt=0)
    group_id: int = Field(..., gt=0)
    bypass_change_day: bool = False


class SwitchGroupRequest(BaseModel):
    new_group_id: int = Field(..., gt=0)


class UpdateRoleRequest(BaseModel):
    role: str


@router.post("/join", status_code=201)
async def join_group(
    body: GroupTarget,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    student_id = await identity_service.resolve_student_id(db, principal)
    return await membership_service.join(db, student_id, body.group_id, actor=principal)


@router.post("/admin/add", status_code=201)
async def admin_add_member(
    body: AdminAddMemberRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await membership_service.join(
        db, body.student_id, body.group_id,
        bypass_rejoin_deadline=body.bypass_rejoin_deadline,
        actor=admin,
    )


@router.post("/leave")
async def leave_group(
    body: GroupTarget,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    student_id = await identity_service.resolve_student_id(db, principal)
    return await membership_service.leave(db, student_id, body.group_id, actor=principal)


@router.post("/admin/leave")
async def admin_leave(
    body: AdminLeaveRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    """Leave on a student's behalf, optionally outside Change Day."""
    return await membership_service.leave(
        db, body.student_id, body.group_id,
        bypass_change_day=body.bypass_change_day,
        actor=admin,
    )


@router.post("/switch")
async def switch_group(
    body: SwitchGroupRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    student_id = await identity_service.resolve_student_id(db, principal)
    return await membership_service.switch_group(db, student_id, body.new_group_id, actor=principal)


@router.get("/me")
async def my_group(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    student_id = await identity_service.resolve_student_id(db, principal)
    return await membership_service.get_my_group(db, student_id)


@router.get("")
async def list_memberships(
    status: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await membership_service.list_memberships(db, status=status)


@router.patch("/{membership_id}/role")
async def update_role(
    membership_id: int,
    body: UpdateRoleRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """Group captain or admin."""
    return await membership_service.update_role(db, membership_id, body.role, principal)


@router.post("/{membership_id}/remove")
async def admin_remove(
    membership_id: int,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    return await membership_service.admin_remove(db, membership_id, admin)

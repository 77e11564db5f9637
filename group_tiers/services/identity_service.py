"""
group_tiers/services/identity_service.py
Resolve authenticated principals to student / admin ids.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.database import transaction
from group_tiers.errors import ErrorCode, ForbiddenError, NotFoundError
from group_tiers.orm.identity import Admin, Student
from group_tiers.rbac import Principal

logger = logging.getLogger(__name__)


async def get_student_by_user_id(db: AsyncSession, user_id: int) -> Optional[Student]:
    result = await db.execute(select(Student).where(Student.user_id == user_id))
    return result.scalar_one_or_none()


async def get_admin_by_user_id(db: AsyncSession, user_id: int) -> Optional[Admin]:
    result = await db.execute(select(Admin).where(Admin.user_id == user_id))
    return result.scalar_one_or_none()


async def resolve_student_id(db: AsyncSession, principal: Principal) -> int:
    """Student id of the principal. Admin principals have none."""
    if principal.is_admin:
        raise ForbiddenError("This action is only available to students", code=ErrorCode.FORBIDDEN)
    student = await get_student_by_user_id(db, principal.user_id)
    if not student:
        raise NotFoundError("Student profile", principal.user_id)
    return student.id


async def resolve_admin_id(db: AsyncSession, principal: Principal) -> int:
    if not principal.is_admin:
        raise ForbiddenError("This action requires an admin", code=ErrorCode.ADMIN_REQUIRED)
    admin = await get_admin_by_user_id(db, principal.user_id)
    if not admin:
        raise NotFoundError("Admin profile", principal.user_id)
    return admin.id


async def register_student(
    db: AsyncSession,
    user_id: int,
    name: str,
    email: Optional[str] = None,
    department: Optional[str] = None,
) -> Student:
    async with transaction(db):
        student = Student(user_id=user_id, name=name, email=email, department=department)
        db.add(student)
        await db.flush()
    logger.info(f"Registered student {student.id} for user {user_id}")
    return student


async def register_admin(db: AsyncSession, user_id: int, name: str) -> Admin:
    async with transaction(db):
        admin = Admin(user_id=user_id, name=name)
        db.add(admin)
        await db.flush()
    logger.info(f"Registered admin {admin.id} for user {user_id}")
    return admin

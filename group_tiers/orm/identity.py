"""
group_tiers/orm/identity.py
Identity rows mapping authenticated user ids to student/admin ids.

Credentials live with the auth collaborator; these tables only resolve a
trusted principal to the ids the core works with.
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from group_tiers.orm.base import Base


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    department = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Student(id={self.id}, user_id={self.user_id})>"

    def to_dict(self):
        return {
            "student_id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "department": self.department,
        }


class Admin(Base):
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Admin(id={self.id}, user_id={self.user_id})>"

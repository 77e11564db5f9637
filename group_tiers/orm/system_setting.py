"""
group_tiers/orm/system_setting.py
Key/value store backing the operational policy.
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from group_tiers.orm.base import Base


class SystemSetting(Base):
    __tablename__ = "system_settings"

    setting_key = Column(String(100), primary_key=True)
    setting_value = Column(String(255), nullable=False)
    updated_by_user_id = Column(Integer, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

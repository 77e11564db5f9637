"""
group_tiers/rate_limit.py
Shared slowapi limiter for request-creating endpoints.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from group_tiers.config.settings import settings

limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

APPLY_LIMIT = settings.APPLY_RATE_LIMIT

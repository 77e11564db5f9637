"""Constants and helpers shared by the test modules."""
from datetime import datetime

from group_tiers.rbac import Principal, create_access_token

ADMIN_USER_ID = 1

# Monday; with 10 working days and change day 5 the phase runs
# 2026-01-05 .. 2026-01-16 and Change Day is Friday 2026-01-09.
PHASE_START = "2026-01-05"
CHANGE_DAY = datetime(2026, 1, 9, 10, 0, 0)
MID_PHASE = datetime(2026, 1, 7, 10, 0, 0)
AFTER_PHASE = datetime(2026, 1, 19, 9, 0, 0)

DEFAULT_TARGETS = [
    {"tier": "D", "group_target": 100},
    {"tier": "C", "group_target": 150},
    {"tier": "B", "group_target": 200},
    {"tier": "A", "group_target": 250},
]


def auth_headers(principal: Principal) -> dict:
    token = create_access_token(principal.user_id, principal.role)
    return {"Authorization": f"Bearer {token}"}

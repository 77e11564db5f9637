from fastapi import APIRouter

from group_tiers.routes import (
    eligibility, groups, memberships, phases, policy, requests, tier_changes
)

router = APIRouter()
router.include_router(groups.router)
router.include_router(memberships.router)
router.include_router(requests.router)
router.include_router(phases.router)
router.include_router(eligibility.router)
router.include_router(tier_changes.router)
router.include_router(policy.router)

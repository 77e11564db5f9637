"""
group_tiers/orm
ORM models. Importing this package registers every table on Base.metadata.
"""
from group_tiers.orm.base import Base
from group_tiers.orm.identity import Student, Admin
from group_tiers.orm.group import Group, GroupTier, GroupStatus, TIER_ORDER, tier_rank
from group_tiers.orm.membership import (
    Membership, MembershipRole, MembershipStatus, LEADERSHIP_ROLES, ALL_ROLES
)
from group_tiers.orm.requests import (
    JoinRequest, LeadershipRoleRequest, GroupTierChangeRequest,
    RequestStatus, TierRequestType, DECISION_STATUSES
)
from group_tiers.orm.phase import Phase, PhaseStatus, PhaseTarget, IndividualPhaseTarget, Holiday
from group_tiers.orm.points import BasePointHistory, BasePointsTotal
from group_tiers.orm.eligibility import IndividualEligibility, GroupEligibility, EligibilityReason
from group_tiers.orm.tier_change import TierChangeRecord, TierChangeAction, TierRuleCode
from group_tiers.orm.system_setting import SystemSetting
from group_tiers.orm.audit_log import AuditLog

__all__ = [
    "Base",
    "Student", "Admin",
    "Group", "GroupTier", "GroupStatus", "TIER_ORDER", "tier_rank",
    "Membership", "MembershipRole", "MembershipStatus", "LEADERSHIP_ROLES", "ALL_ROLES",
    "JoinRequest", "LeadershipRoleRequest", "GroupTierChangeRequest",
    "RequestStatus", "TierRequestType", "DECISION_STATUSES",
    "Phase", "PhaseStatus", "PhaseTarget", "IndividualPhaseTarget", "Holiday",
    "BasePointHistory", "BasePointsTotal",
    "IndividualEligibility", "GroupEligibility", "EligibilityReason",
    "TierChangeRecord", "TierChangeAction", "TierRuleCode",
    "SystemSetting",
    "AuditLog",
]

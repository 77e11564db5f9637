"""
Apply/decide workflows for join, leadership-role and tier-change requests.
"""
import asyncio

import pytest
from sqlalchemy import func, select

from group_tiers.errors import (
    APIError, ConflictError, ErrorCode, ForbiddenError, NotFoundError, ValidationError
)
from group_tiers.orm.group import Group
from group_tiers.orm.membership import Membership, MembershipStatus
from group_tiers.orm.requests import JoinRequest
from group_tiers.services import (
    group_service, join_request_service, leadership_request_service,
    membership_service, tier_request_service
)
from group_tiers.tests.helpers import MID_PHASE


async def make_captain(db, admin, make_student, group_id: int):
    student_id, principal = await make_student()
    membership = await membership_service.join(db, student_id, group_id, now=MID_PHASE)
    await membership_service.update_role(db, membership["membership_id"], "CAPTAIN", admin)
    return student_id, principal


# =============================================================================
# Join requests
# =============================================================================

class TestJoinRequests:

    @pytest.mark.asyncio
    async def test_duplicate_pending_join_request_rejected(self, db, small_policy, make_student, make_group):
        group_id = await make_group("G1")
        _, principal = await make_student()

        first = await join_request_service.apply_join_request(db, principal, group_id, now=MID_PHASE)
        assert first["status"] == "PENDING"

        with pytest.raises(ConflictError) as exc:
            await join_request_service.apply_join_request(db, principal, group_id, now=MID_PHASE)
        assert exc.value.code == ErrorCode.DUPLICATE_PENDING_REQUEST

    @pytest.mark.asyncio
    async def test_new_request_allowed_after_rejection(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1")
        _, principal = await make_student()

        first = await join_request_service.apply_join_request(db, principal, group_id, now=MID_PHASE)
        rejected = await join_request_service.decide_join_request(
            db, first["request_id"], "rejected", "not this term", admin, now=MID_PHASE
        )
        assert rejected["status"] == "REJECTED"
        assert rejected["membership"] is None
        assert rejected["decision_reason"] == "not this term"

        second = await join_request_service.apply_join_request(db, principal, group_id, now=MID_PHASE)
        assert second["request_id"] != first["request_id"]

    @pytest.mark.asyncio
    async def test_second_decision_conflicts_without_mutation(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1")
        student_id, principal = await make_student()
        request = await join_request_service.apply_join_request(db, principal, group_id, now=MID_PHASE)

        await join_request_service.decide_join_request(db, request["request_id"], "APPROVED", None, admin, now=MID_PHASE)
        with pytest.raises(ConflictError) as exc:
            await join_request_service.decide_join_request(db, request["request_id"], "REJECTED", None, admin, now=MID_PHASE)

        assert exc.value.code == ErrorCode.ALREADY_PROCESSED
        stored = await db.get(JoinRequest, request["request_id"])
        await db.refresh(stored)
        assert stored.status == "APPROVED"
        memberships = await db.execute(
            select(func.count(Membership.id)).where(Membership.student_id == student_id)
        )
        assert memberships.scalar() == 1

    @pytest.mark.asyncio
    async def test_concurrent_decisions_have_one_winner(
        self, db, session_factory, admin, small_policy, make_student, make_group
    ):
        group_id = await make_group("G1")
        student_id, principal = await make_student()
        request = await join_request_service.apply_join_request(db, principal, group_id, now=MID_PHASE)

        async def decide(status):
            async with session_factory() as session:
                return await join_request_service.decide_join_request(
                    session, request["request_id"], status, None, admin, now=MID_PHASE
                )

        results = await asyncio.gather(decide("APPROVED"), decide("REJECTED"), return_exceptions=True)

        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, APIError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].status_code in (409, 503)

        async with session_factory() as fresh:
            stored = await fresh.get(JoinRequest, request["request_id"])
            assert stored.status == winners[0]["status"]
            count = (await fresh.execute(
                select(func.count(Membership.id)).where(Membership.student_id == student_id)
            )).scalar()
            assert count == (1 if stored.status == "APPROVED" else 0)

    @pytest.mark.asyncio
    async def test_approval_revalidates_capacity(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1")
        _, principal = await make_student()
        request = await join_request_service.apply_join_request(db, principal, group_id, now=MID_PHASE)

        for _ in range(4):
            other, _ = await make_student()
            await membership_service.join(db, other, group_id, now=MID_PHASE)

        with pytest.raises(ConflictError) as exc:
            await join_request_service.decide_join_request(
                db, request["request_id"], "APPROVED", None, admin, now=MID_PHASE
            )
        assert exc.value.code == ErrorCode.GROUP_FULL

        pending = await join_request_service.list_pending_by_group(db, group_id, admin)
        assert [row["request_id"] for row in pending] == [request["request_id"]]

    @pytest.mark.asyncio
    async def test_only_captain_or_admin_decides(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1")
        _, applicant = await make_student()
        outsider_id, outsider = await make_student()
        await membership_service.join(db, outsider_id, group_id, now=MID_PHASE)
        request = await join_request_service.apply_join_request(db, applicant, group_id, now=MID_PHASE)

        with pytest.raises(ForbiddenError) as exc:
            await join_request_service.decide_join_request(
                db, request["request_id"], "APPROVED", None, outsider, now=MID_PHASE
            )
        assert exc.value.code == ErrorCode.CAPTAIN_REQUIRED

        _, captain = await make_captain(db, admin, make_student, group_id)
        decided = await join_request_service.decide_join_request(
            db, request["request_id"], "APPROVED", None, captain, now=MID_PHASE
        )
        assert decided["decided_by_role"] == "STUDENT"

    @pytest.mark.asyncio
    async def test_invalid_decision_status(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1")
        _, principal = await make_student()
        request = await join_request_service.apply_join_request(db, principal, group_id, now=MID_PHASE)

        with pytest.raises(ValidationError):
            await join_request_service.decide_join_request(
                db, request["request_id"], "MAYBE", None, admin, now=MID_PHASE
            )

    @pytest.mark.asyncio
    async def test_apply_rejects_member_and_frozen_group(self, db, admin, small_policy, make_student, make_group):
        g1 = await make_group("G1")
        g2 = await make_group("G2")
        student_id, principal = await make_student()
        await membership_service.join(db, student_id, g1, now=MID_PHASE)

        with pytest.raises(ConflictError) as exc:
            await join_request_service.apply_join_request(db, principal, g2, now=MID_PHASE)
        assert exc.value.code == ErrorCode.ALREADY_IN_GROUP

        _, newcomer = await make_student()
        await group_service.freeze_group(db, g2, admin)
        with pytest.raises(ConflictError) as exc:
            await join_request_service.apply_join_request(db, newcomer, g2, now=MID_PHASE)
        assert exc.value.code == ErrorCode.GROUP_FROZEN


# =============================================================================
# Leadership-role requests
# =============================================================================

class TestLeadershipRequests:

    @pytest.mark.asyncio
    async def test_member_requests_missing_role_and_admin_approves(
        self, db, admin, small_policy, make_student, make_group
    ):
        group_id = await make_group("G1")
        student_id, principal = await make_student()
        await membership_service.join(db, student_id, group_id, now=MID_PHASE)

        request = await leadership_request_service.apply_leadership_request(
            db, principal, group_id, "strategist", "I plan our sprints", now=MID_PHASE
        )
        assert request["requested_role"] == "STRATEGIST"
        assert request["missing_roles_at_request_time"] == ["CAPTAIN", "VICE_CAPTAIN", "STRATEGIST", "MANAGER"]
        assert request["leadership_alert_triggered"] is True

        decided = await leadership_request_service.decide_leadership_request(
            db, request["request_id"], "APPROVED", None, admin, now=MID_PHASE
        )
        assert decided["status"] == "APPROVED"
        members = await membership_service.list_group_members(db, group_id)
        assert members[0]["role"] == "STRATEGIST"

    @pytest.mark.asyncio
    async def test_filled_role_and_non_member_rejected(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1")
        await make_captain(db, admin, make_student, group_id)
        member_id, member = await make_student()
        await membership_service.join(db, member_id, group_id, now=MID_PHASE)
        _, outsider = await make_student()

        with pytest.raises(ConflictError) as exc:
            await leadership_request_service.apply_leadership_request(db, member, group_id, "CAPTAIN", now=MID_PHASE)
        assert exc.value.code == ErrorCode.ROLE_ALREADY_FILLED

        with pytest.raises(ForbiddenError) as exc:
            await leadership_request_service.apply_leadership_request(db, outsider, group_id, "MANAGER", now=MID_PHASE)
        assert exc.value.code == ErrorCode.MEMBERSHIP_REQUIRED

        with pytest.raises(ValidationError):
            await leadership_request_service.apply_leadership_request(db, member, group_id, "MEMBER", now=MID_PHASE)

    @pytest.mark.asyncio
    async def test_second_approval_for_same_role_conflicts(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1")
        requests = []
        for _ in range(2):
            student_id, principal = await make_student()
            await membership_service.join(db, student_id, group_id, now=MID_PHASE)
            requests.append(await leadership_request_service.apply_leadership_request(
                db, principal, group_id, "MANAGER", now=MID_PHASE
            ))

        pending = await leadership_request_service.list_pending_by_group(db, group_id, admin)
        assert len(pending) == 2

        await leadership_request_service.decide_leadership_request(
            db, requests[0]["request_id"], "APPROVED", None, admin, now=MID_PHASE
        )
        with pytest.raises(ConflictError) as exc:
            await leadership_request_service.decide_leadership_request(
                db, requests[1]["request_id"], "APPROVED", None, admin, now=MID_PHASE
            )
        assert exc.value.code == ErrorCode.ROLE_ALREADY_FILLED

        managers = await db.execute(
            select(func.count(Membership.id)).where(
                Membership.group_id == group_id,
                Membership.role == "MANAGER",
                Membership.status == MembershipStatus.ACTIVE.value,
            )
        )
        assert managers.scalar() == 1

    @pytest.mark.asyncio
    async def test_duplicate_pending_and_decision_is_admin_only(
        self, db, admin, small_policy, make_student, make_group
    ):
        group_id = await make_group("G1")
        student_id, principal = await make_student()
        await membership_service.join(db, student_id, group_id, now=MID_PHASE)
        request = await leadership_request_service.apply_leadership_request(
            db, principal, group_id, "MANAGER", now=MID_PHASE
        )

        with pytest.raises(ConflictError) as exc:
            await leadership_request_service.apply_leadership_request(
                db, principal, group_id, "STRATEGIST", now=MID_PHASE
            )
        assert exc.value.code == ErrorCode.DUPLICATE_PENDING_REQUEST

        with pytest.raises(ForbiddenError):
            await leadership_request_service.decide_leadership_request(
                db, request["request_id"], "APPROVED", None, principal, now=MID_PHASE
            )

    @pytest.mark.asyncio
    async def test_admin_summary_lists_leaderless_groups(self, db, admin, small_policy, make_student, make_group):
        leaderless = await make_group("G1")
        led = await make_group("G2")
        for _ in range(2):
            student_id, _ = await make_student()
            await membership_service.join(db, student_id, leaderless, now=MID_PHASE)
        await make_captain(db, admin, make_student, led)

        summary = await leadership_request_service.get_admin_summary(db, admin)

        assert summary["pending_request_count"] == 0
        assert summary["groups_without_leadership_count"] == 1
        assert summary["groups_without_leadership"][0]["group_id"] == leaderless
        assert summary["groups_without_leadership"][0]["active_member_count"] == 2


# =============================================================================
# Tier-change requests
# =============================================================================

class TestTierRequests:

    @pytest.mark.asyncio
    async def test_captain_requests_promotion_admin_approves(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1", tier="C")
        _, captain = await make_captain(db, admin, make_student, group_id)

        request = await tier_request_service.apply_tier_request(db, captain, group_id, "b", "strong phase", now=MID_PHASE)
        assert request["request_type"] == "PROMOTION"
        assert request["current_tier"] == "C"

        with pytest.raises(ConflictError) as exc:
            await tier_request_service.apply_tier_request(db, captain, group_id, "D", now=MID_PHASE)
        assert exc.value.code == ErrorCode.DUPLICATE_PENDING_REQUEST

        decided = await tier_request_service.decide_tier_request(
            db, request["request_id"], "APPROVED", None, admin, now=MID_PHASE
        )
        assert decided["group_tier"] == "B"
        assert (await group_service.get_group(db, group_id))["tier"] == "B"

    @pytest.mark.asyncio
    async def test_same_tier_and_non_captain_rejected(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1", tier="C")
        member_id, member = await make_student()
        await membership_service.join(db, member_id, group_id, now=MID_PHASE)

        with pytest.raises(ConflictError):
            await tier_request_service.apply_tier_request(db, admin, group_id, "C", now=MID_PHASE)

        with pytest.raises(ForbiddenError) as exc:
            await tier_request_service.apply_tier_request(db, member, group_id, "D", now=MID_PHASE)
        assert exc.value.code == ErrorCode.CAPTAIN_REQUIRED

        demotion = await tier_request_service.apply_tier_request(db, admin, group_id, "D", now=MID_PHASE)
        assert demotion["request_type"] == "DEMOTION"

    @pytest.mark.asyncio
    async def test_unknown_group_is_not_found_for_students(self, db, admin, small_policy, make_student):
        _, student = await make_student()

        with pytest.raises(NotFoundError):
            await tier_request_service.apply_tier_request(db, student, 9999, "C", now=MID_PHASE)
        with pytest.raises(NotFoundError):
            await tier_request_service.apply_tier_request(db, admin, 9999, "C", now=MID_PHASE)

    @pytest.mark.asyncio
    async def test_tier_drift_rejects_approval(self, db, admin, small_policy, make_student, make_group):
        group_id = await make_group("G1", tier="C")
        request = await tier_request_service.apply_tier_request(db, admin, group_id, "B", now=MID_PHASE)

        group = await db.get(Group, group_id)
        group.tier = "D"
        await db.commit()

        with pytest.raises(ConflictError) as exc:
            await tier_request_service.decide_tier_request(
                db, request["request_id"], "APPROVED", None, admin, now=MID_PHASE
            )
        assert exc.value.code == ErrorCode.STATE_DRIFTED
        assert "Group tier changed to D after this request was submitted" in exc.value.message

        pending = await tier_request_service.list_all_pending(db, admin)
        assert [row["request_id"] for row in pending] == [request["request_id"]]

    @pytest.mark.asyncio
    async def test_rejection_leaves_tier_and_blocks_redecision(self, db, admin, small_policy, make_group):
        group_id = await make_group("G1", tier="B")
        request = await tier_request_service.apply_tier_request(db, admin, group_id, "A", now=MID_PHASE)

        decided = await tier_request_service.decide_tier_request(
            db, request["request_id"], "REJECTED", "not yet", admin, now=MID_PHASE
        )
        assert decided["status"] == "REJECTED"
        assert decided["group_tier"] == "B"

        with pytest.raises(ConflictError) as exc:
            await tier_request_service.decide_tier_request(
                db, request["request_id"], "APPROVED", None, admin, now=MID_PHASE
            )
        assert exc.value.code == ErrorCode.ALREADY_PROCESSED
        assert (await group_service.get_group(db, group_id))["tier"] == "B"

"""
Tier-change recommendations and their one-time application.
"""
import asyncio

import pytest
from sqlalchemy import func, select

from group_tiers.errors import APIError, ConflictError, ErrorCode, ForbiddenError, NotFoundError, ValidationError
from group_tiers.orm.tier_change import TierChangeRecord
from group_tiers.services import eligibility_service, group_service, membership_service, tier_change_service
from group_tiers.services.tier_change_service import build_recommendation
from group_tiers.tests.helpers import MID_PHASE


class TestRuleTable:

    def test_eligible_promotes(self):
        assert build_recommendation("C", True, None) == {
            "change_action": "PROMOTE",
            "recommended_tier": "B",
            "rule_code": "LAST_PHASE_ELIGIBLE_PROMOTE",
        }

    def test_eligible_at_top_stays(self):
        result = build_recommendation("A", True, False)
        assert result["change_action"] == "SAME"
        assert result["rule_code"] == "LAST_PHASE_ELIGIBLE_TOP_TIER"

    def test_two_misses_demote(self):
        result = build_recommendation("B", False, False)
        assert result["change_action"] == "DEMOTE"
        assert result["recommended_tier"] == "C"

    def test_two_misses_at_bottom_stay(self):
        assert build_recommendation("D", False, False)["rule_code"] == "LAST_TWO_NOT_ELIGIBLE_BOTTOM_TIER"

    @pytest.mark.parametrize("previous, rule", [
        (True, "LAST_PHASE_NOT_ELIGIBLE_PREVIOUS_ELIGIBLE_SAME"),
        (None, "LAST_PHASE_NOT_ELIGIBLE_PREVIOUS_MISSING_SAME"),
    ])
    def test_single_miss_keeps_tier(self, previous, rule):
        result = build_recommendation("B", False, previous)
        assert result["recommended_tier"] == "B"
        assert result["rule_code"] == rule

    def test_missing_eligibility_keeps_tier(self):
        assert build_recommendation("c", None, True)["rule_code"] == "LAST_PHASE_ELIGIBILITY_MISSING_SAME"

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValidationError):
            build_recommendation("Z", True, True)


async def award(db, admin, student_id, points, activity_at):
    await eligibility_service.record_base_points(
        db, {"student_id": student_id, "points": points, "reason": "Project work", "activity_at": activity_at}, admin
    )


@pytest.fixture
def two_phases(db, admin, small_policy, make_phase, make_student, make_group):
    """First and second phase; returns (p1, p2, {code: group_id}, {code: [student_ids]})."""

    async def factory(tiers):
        p1 = await make_phase()
        groups, members = {}, {}
        for code, tier in tiers.items():
            groups[code] = await make_group(code, tier=tier)
            members[code] = []
            for _ in range(2):
                student_id, _ = await make_student()
                await membership_service.join(db, student_id, groups[code], now=MID_PHASE)
                members[code].append(student_id)
        p2 = await make_phase(start_date="2026-01-19")
        return p1, p2, groups, members

    return factory


class TestApply:

    @pytest.mark.asyncio
    async def test_eligible_group_is_promoted_once(self, db, admin, two_phases):
        """Tier C group meets its target in the second phase: promoted to B exactly once."""
        p1, p2, groups, members = await two_phases({"G1": "C"})
        for student_id in members["G1"]:
            await award(db, admin, student_id, 80, "2026-01-21T10:00:00")
        await eligibility_service.evaluate_phase_eligibility(db, p1["phase_id"], admin)
        await eligibility_service.evaluate_phase_eligibility(db, p2["phase_id"], admin)

        preview = await tier_change_service.preview_tier_change(db, p2["phase_id"], admin)
        assert preview["previous_phase"]["phase_id"] == p1["phase_id"]
        row = preview["rows"][0]
        assert row["change_action"] == "PROMOTE"
        assert row["recommended_tier"] == "B"
        assert row["rule_code"] == "LAST_PHASE_ELIGIBLE_PROMOTE"
        assert row["tier_change"] is None

        applied = await tier_change_service.apply_tier_change(db, p2["phase_id"], groups["G1"], admin)
        assert applied["current_tier"] == "C"
        assert applied["recommended_tier"] == "B"
        assert (await group_service.get_group(db, groups["G1"]))["tier"] == "B"

        with pytest.raises(ConflictError) as exc:
            await tier_change_service.apply_tier_change(db, p2["phase_id"], groups["G1"], admin)
        assert exc.value.code == "ALREADY_APPLIED"
        assert (await group_service.get_group(db, groups["G1"]))["tier"] == "B"

        listed = await tier_change_service.list_tier_changes(db, p2["phase_id"], admin)
        assert [r["group_id"] for r in listed["rows"]] == [groups["G1"]]

    @pytest.mark.asyncio
    async def test_two_missed_phases_demote(self, db, admin, two_phases):
        p1, p2, groups, _ = await two_phases({"G1": "B", "G2": "D"})
        await eligibility_service.evaluate_phase_eligibility(db, p1["phase_id"], admin)
        await eligibility_service.evaluate_phase_eligibility(db, p2["phase_id"], admin)

        preview = await tier_change_service.preview_tier_change(db, p2["phase_id"], admin)
        actions = [(r["group_id"], r["change_action"]) for r in preview["rows"]]
        assert actions == [(groups["G1"], "DEMOTE"), (groups["G2"], "SAME")]

        applied = await tier_change_service.apply_tier_change(db, p2["phase_id"], groups["G1"], admin)
        assert applied["rule_code"] == "LAST_TWO_NOT_ELIGIBLE_DEMOTE"
        assert (await group_service.get_group(db, groups["G1"]))["tier"] == "C"

    @pytest.mark.asyncio
    async def test_unevaluated_phase_keeps_tier(self, db, admin, two_phases):
        _, p2, groups, _ = await two_phases({"G1": "C"})

        applied = await tier_change_service.apply_tier_change(db, p2["phase_id"], groups["G1"], admin)

        assert applied["change_action"] == "SAME"
        assert applied["rule_code"] == "LAST_PHASE_ELIGIBILITY_MISSING_SAME"
        assert (await group_service.get_group(db, groups["G1"]))["tier"] == "C"

    @pytest.mark.asyncio
    async def test_frozen_group_cannot_change_tier(self, db, admin, two_phases):
        _, p2, groups, _ = await two_phases({"G1": "C"})
        await group_service.freeze_group(db, groups["G1"], admin, reason="Audit")

        with pytest.raises(ConflictError):
            await tier_change_service.apply_tier_change(db, p2["phase_id"], groups["G1"], admin)

    @pytest.mark.asyncio
    async def test_apply_requires_admin_and_known_phase(self, db, admin, make_student, make_group):
        group_id = await make_group("G1")
        _, student = await make_student()

        with pytest.raises(ForbiddenError):
            await tier_change_service.apply_tier_change(db, "any", group_id, student)
        with pytest.raises(NotFoundError):
            await tier_change_service.apply_tier_change(db, "missing", group_id, admin)
        with pytest.raises(ForbiddenError):
            await tier_change_service.preview_tier_change(db, "any", student)

    @pytest.mark.asyncio
    async def test_concurrent_apply_records_once(self, db, admin, session_factory, two_phases):
        p1, p2, groups, members = await two_phases({"G1": "C"})
        for student_id in members["G1"]:
            await award(db, admin, student_id, 80, "2026-01-21T10:00:00")
        await eligibility_service.evaluate_phase_eligibility(db, p1["phase_id"], admin)
        await eligibility_service.evaluate_phase_eligibility(db, p2["phase_id"], admin)

        async def apply():
            async with session_factory() as session:
                return await tier_change_service.apply_tier_change(session, p2["phase_id"], groups["G1"], admin)

        results = await asyncio.gather(apply(), apply(), return_exceptions=True)

        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, APIError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].status_code in (409, 503)
        if losers[0].status_code == 409:
            assert losers[0].code in (ErrorCode.ALREADY_APPLIED, ErrorCode.CONCURRENT_MODIFICATION)

        async with session_factory() as fresh:
            count = (await fresh.execute(
                select(func.count(TierChangeRecord.id)).where(TierChangeRecord.group_id == groups["G1"])
            )).scalar()
            assert count == 1
            assert (await group_service.get_group(fresh, groups["G1"]))["tier"] == "B"

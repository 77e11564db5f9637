"""
Operational policy storage and audit trail.
"""
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.errors import ForbiddenError, ValidationError
from group_tiers.orm.system_setting import SystemSetting
from group_tiers.services import audit_service, policy_service
from group_tiers.services.policy_service import DEFAULT_POLICY


class TestPolicy:

    @pytest.mark.asyncio
    async def test_defaults_without_stored_rows(self, db):
        policy = await policy_service.get_operational_policy(db)

        assert policy == DEFAULT_POLICY
        assert policy.min_group_members == 9
        assert policy.max_group_members == 11
        assert policy.require_leadership_for_activation is True

    @pytest.mark.asyncio
    async def test_partial_update_is_persisted(self, db, admin):
        updated = await policy_service.update_operational_policy(
            db, {"max_group_members": "12", "enforce_change_day_for_leave": "false"}, admin
        )

        assert updated.max_group_members == 12
        assert updated.enforce_change_day_for_leave is False
        assert updated.min_group_members == 9

        reread = await policy_service.get_operational_policy(db)
        assert reread == updated

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"colour": "blue"},
        {"min_group_members": 12},
        {"max_group_members": 3},
        {"incubation_duration_days": 99},
        {"allow_student_group_creation": "maybe"},
        {"min_group_members": True},
    ])
    async def test_invalid_update_rejected(self, db, admin, payload):
        with pytest.raises(ValidationError):
            await policy_service.update_operational_policy(db, payload, admin)

        assert await policy_service.get_operational_policy(db) == DEFAULT_POLICY

    @pytest.mark.asyncio
    async def test_small_groups_allowed_without_leadership(self, db, admin):
        updated = await policy_service.update_operational_policy(
            db,
            {"require_leadership_for_activation": False, "min_group_members": 1, "max_group_members": 3},
            admin,
        )
        assert updated.max_group_members == 3

    @pytest.mark.asyncio
    async def test_update_requires_admin(self, db, make_student):
        _, student = await make_student()

        with pytest.raises(ForbiddenError):
            await policy_service.update_operational_policy(db, {"max_group_members": 12}, student)

    @pytest.mark.asyncio
    async def test_junk_stored_values_fall_back(self, db):
        db.add_all([
            SystemSetting(setting_key="max_group_members", setting_value="lots"),
            SystemSetting(setting_key="require_leadership_for_activation", setting_value="perhaps"),
            SystemSetting(setting_key="incubation_duration_days", setting_value="3"),
        ])
        await db.commit()

        policy = await policy_service.get_operational_policy(db)

        assert policy.max_group_members == DEFAULT_POLICY.max_group_members
        assert policy.require_leadership_for_activation is True
        assert policy.incubation_duration_days == 3

    @pytest.mark.asyncio
    async def test_inverted_stored_bounds_fall_back(self, db):
        db.add_all([
            SystemSetting(setting_key="min_group_members", setting_value="8"),
            SystemSetting(setting_key="max_group_members", setting_value="5"),
        ])
        await db.commit()

        policy = await policy_service.get_operational_policy(db)

        assert policy.min_group_members == DEFAULT_POLICY.min_group_members
        assert policy.max_group_members == DEFAULT_POLICY.max_group_members


class TestAuditLog:

    @pytest.mark.asyncio
    async def test_policy_update_is_audited(self, db, admin):
        await policy_service.update_operational_policy(db, {"max_group_members": 12}, admin)

        logs = await audit_service.list_audit_logs(db, action="POLICY_UPDATED")

        assert len(logs) == 1
        assert logs[0]["entity_type"] == "SYSTEM_SETTINGS"
        assert logs[0]["actor_user_id"] == admin.user_id
        assert logs[0]["details"]["max_group_members"] == 12

    @pytest.mark.asyncio
    async def test_filters_by_entity(self, db, admin, make_group):
        group_id = await make_group("G1")
        await make_group("G2")

        logs = await audit_service.list_audit_logs(db, entity_type="GROUP", entity_id=group_id)

        assert [log["entity_id"] for log in logs] == [str(group_id)]

    @pytest.mark.asyncio
    async def test_audit_failure_never_fails_the_operation(self, db, admin, monkeypatch):
        class BrokenSession(AsyncSession):
            async def commit(self):
                raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(audit_service, "AsyncSession", BrokenSession)

        policy = await policy_service.update_operational_policy(db, {"max_group_members": 12}, admin)
        assert policy.max_group_members == 12
        assert await audit_service.log_action_safe(db, action="MANUAL", entity_type="GROUP", entity_id=1) is None

        monkeypatch.undo()
        assert await audit_service.list_audit_logs(db, action="POLICY_UPDATED") == []
        assert (await policy_service.get_operational_policy(db)).max_group_members == 12

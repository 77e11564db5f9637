"""
HTTP surface: authentication, error envelopes and a join round trip.
"""
import pytest

from group_tiers.rbac import STUDENT, Principal
from group_tiers.tests.helpers import DEFAULT_TARGETS, auth_headers


class TestAuth:

    @pytest.mark.asyncio
    async def test_health_is_public(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/api/groups")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "AUTH_REQUIRED"

    @pytest.mark.asyncio
    async def test_garbage_token(self, client):
        response = await client.get("/api/groups", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_INVALID"

    @pytest.mark.asyncio
    async def test_admin_endpoint_rejects_student(self, client):
        headers = auth_headers(Principal(user_id=500, role=STUDENT))

        response = await client.put("/api/policy", json={"max_group_members": 12}, headers=headers)

        assert response.status_code == 403
        assert response.json()["code"] == "ADMIN_REQUIRED"

    @pytest.mark.asyncio
    async def test_student_without_profile(self, client):
        headers = auth_headers(Principal(user_id=500, role=STUDENT))

        response = await client.get("/api/memberships/me", headers=headers)

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestGroupsApi:

    @pytest.mark.asyncio
    async def test_create_validation_envelope(self, client, admin):
        response = await client.post("/api/groups", json={"group_code": "G1"}, headers=auth_headers(admin))

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Validation Error"
        assert any("group_name" in detail["loc"] for detail in body["details"])

    @pytest.mark.asyncio
    async def test_student_cannot_create_group_by_default(self, client, make_student):
        _, student = await make_student()

        response = await client.post(
            "/api/groups", json={"group_code": "G1", "group_name": "One"}, headers=auth_headers(student)
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_create_join_and_list_members(self, client, admin, make_student):
        created = await client.post(
            "/api/groups", json={"group_code": "G1", "group_name": "One", "tier": "c"}, headers=auth_headers(admin)
        )
        assert created.status_code == 201
        group = created.json()
        assert group["tier"] == "C"
        assert group["status"] == "INACTIVE"

        duplicate = await client.post(
            "/api/groups", json={"group_code": "G1", "group_name": "Again"}, headers=auth_headers(admin)
        )
        assert duplicate.status_code == 409

        student_id, student = await make_student()
        joined = await client.post(
            "/api/memberships/join", json={"group_id": group["group_id"]}, headers=auth_headers(student)
        )
        assert joined.status_code == 201

        mine = (await client.get("/api/memberships/me", headers=auth_headers(student))).json()
        assert mine["in_group"] is True
        assert mine["group"]["group_id"] == group["group_id"]

        members = (await client.get(
            f"/api/groups/{group['group_id']}/members", headers=auth_headers(student)
        )).json()
        assert [m["student_id"] for m in members] == [student_id]

    @pytest.mark.asyncio
    async def test_unknown_group(self, client, admin):
        response = await client.get("/api/groups/999", headers=auth_headers(admin))

        assert response.status_code == 404
        assert response.json()["message"] == "Group with id '999' not found"


class TestPhasesApi:

    @pytest.mark.asyncio
    async def test_no_current_phase(self, client, admin):
        response = await client.get("/api/phases/current", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json() == {"phase": None}

    @pytest.mark.asyncio
    async def test_create_phase_and_read_targets(self, client, admin):
        created = await client.post(
            "/api/phases",
            json={"phase_name": "Spring", "start_date": "2030-03-04", "targets": DEFAULT_TARGETS, "individual_target": 20},
            headers=auth_headers(admin),
        )
        assert created.status_code == 201
        phase_id = created.json()["phase_id"]

        targets = (await client.get(f"/api/phases/{phase_id}/targets", headers=auth_headers(admin))).json()
        assert targets["individual_target"] == 20
        assert len(targets["targets"]) == 4

    @pytest.mark.asyncio
    async def test_create_phase_with_incomplete_targets(self, client, admin):
        response = await client.post(
            "/api/phases",
            json={"start_date": "2030-03-04", "targets": DEFAULT_TARGETS[:1], "individual_target": 20},
            headers=auth_headers(admin),
        )

        assert response.status_code == 400
        assert response.json()["success"] is False


class TestPolicyApi:

    @pytest.mark.asyncio
    async def test_read_and_update_policy(self, client, admin):
        before = (await client.get("/api/policy", headers=auth_headers(admin))).json()
        assert before["max_group_members"] == 11

        updated = await client.put("/api/policy", json={"max_group_members": 13}, headers=auth_headers(admin))
        assert updated.status_code == 200
        assert updated.json()["max_group_members"] == 13

        logs = (await client.get(
            "/api/audit-logs", params={"action": "POLICY_UPDATED"}, headers=auth_headers(admin)
        )).json()
        assert len(logs) == 1

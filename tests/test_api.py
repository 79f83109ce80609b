"""HTTP surface: envelopes, error codes, role checks and renter-contact redaction."""

from datetime import date, timedelta

from premarket_app.models.enums import GrantAccessStatus, PreMarketStatus

RENTER_CONTACT_KEYS = {"renter_name", "renter_email", "renter_phone"}


def _create_body(**overrides):
    today = date.today()
    body = {
        "requestName": "Sunny 1BR",
        "description": "Close to the subway",
        "movingEarliest": (today + timedelta(days=14)).isoformat(),
        "movingLatest": (today + timedelta(days=45)).isoformat(),
        "priceMin": 2000,
        "priceMax": 2800,
        "locations": [{"borough": "Queens", "neighborhoods": ["Astoria"]}],
        "bedrooms": ["1BR"],
        "bathrooms": ["1"],
        "petPolicy": {"catsAllowed": True},
    }
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# Renter endpoints
# ---------------------------------------------------------------------------

class TestRenterEndpoints:
    async def test_create_wraps_result_in_envelope(self, api, renter):
        api.login(renter)

        res = await api.post("/v2/pre-market/create", json=_create_body())

        assert res.status_code == 201
        body = res.json()
        assert body["success"] is True
        assert body["data"]["request_id"].startswith("R")
        assert body["data"]["renter_id"] == str(renter.id)
        assert body["data"]["status"] == "active"
        assert body["data"]["pet_policy"]["cats_allowed"] is True

    async def test_create_rejects_inverted_moving_window(self, api, renter):
        api.login(renter)
        today = date.today()
        body = _create_body(
            movingEarliest=(today + timedelta(days=30)).isoformat(),
            movingLatest=(today + timedelta(days=5)).isoformat(),
        )

        res = await api.post("/v2/pre-market/create", json=body)

        assert res.status_code == 400
        assert res.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_agent_cannot_create(self, api, agent):
        api.login(agent)

        res = await api.post("/v2/pre-market/create", json=_create_body())

        assert res.status_code == 403
        assert res.json()["error"]["code"] == "FORBIDDEN"

    async def test_unauthenticated_caller_gets_401(self, api):
        res = await api.get("/v2/pre-market/mine")

        assert res.status_code == 401
        assert res.json() == {
            "success": False,
            "message": "Not authenticated",
            "error": {"code": "UNAUTHORIZED", "details": None},
        }

    async def test_toggle_and_soft_delete(self, api, renter, make_pre_market):
        request = await make_pre_market(renter)
        api.login(renter)

        toggled = await api.post(f"/v2/pre-market/{request.id}/toggle-active")
        deleted = await api.delete(f"/v2/pre-market/{request.id}")
        mine = await api.get("/v2/pre-market/mine")

        assert toggled.json()["data"]["is_active"] is False
        assert deleted.json()["data"]["status"] == "deleted"
        assert mine.json()["data"] == []

    async def test_other_renter_cannot_edit(self, api, renter, make_user, make_pre_market):
        request = await make_pre_market(renter)
        intruder = await make_user()
        api.login(intruder)

        res = await api.patch(f"/v2/pre-market/{request.id}", json={"requestName": "x"})

        assert res.status_code == 403


# ---------------------------------------------------------------------------
# Agent views and redaction
# ---------------------------------------------------------------------------

class TestAgentRedaction:
    async def test_locked_detail_has_no_renter_contact(
        self, api, agent, renter, make_pre_market
    ):
        request = await make_pre_market(renter)
        api.login(agent)

        res = await api.get(f"/v2/pre-market/agent/{request.id}")

        data = res.json()["data"]
        assert res.status_code == 200
        assert data["has_access"] is False
        assert not RENTER_CONTACT_KEYS & data.keys()
        assert "renter_id" not in data
        assert renter.email not in res.text
        assert renter.phone_number not in res.text

    async def test_feed_has_no_renter_contact(
        self, api, agent, renter, make_pre_market
    ):
        await make_pre_market(renter)
        await make_pre_market(renter, request_name="Loft")
        api.login(agent)

        res = await api.get("/v2/pre-market/agent/all", params={"page": 1, "limit": 500})

        page = res.json()["data"]
        assert page["total"] == 2
        assert page["limit"] == 100
        assert renter.email not in res.text
        for item in page["items"]:
            assert not RENTER_CONTACT_KEYS & item.keys()

    async def test_free_access_reveals_contact(
        self, api, agent, admin, renter, make_pre_market
    ):
        request = await make_pre_market(renter)

        api.login(agent)
        requested = await api.post(f"/v2/grant-access/{request.id}/request")
        grant_id = requested.json()["data"]["id"]

        api.login(admin)
        decided = await api.post(
            f"/v2/admin/grant-access/{grant_id}/decide", json={"isFree": True}
        )

        api.login(agent)
        res = await api.get(f"/v2/pre-market/agent/{request.id}")

        assert requested.status_code == 201
        assert decided.json()["data"]["status"] == GrantAccessStatus.FREE.value
        data = res.json()["data"]
        assert data["has_access"] is True
        assert data["renter_email"] == renter.email
        assert data["renter_phone"] == renter.phone_number

    async def test_deleted_request_is_hidden_from_agents(
        self, api, agent, renter, make_pre_market
    ):
        request = await make_pre_market(
            renter, status=PreMarketStatus.DELETED, is_active=False
        )
        api.login(agent)

        res = await api.get(f"/v2/pre-market/agent/{request.id}")

        assert res.status_code == 404
        assert res.json()["error"]["code"] == "NOT_FOUND"

    async def test_renter_cannot_use_agent_feed(self, api, renter):
        api.login(renter)

        res = await api.get("/v2/pre-market/agent/all")

        assert res.status_code == 403


# ---------------------------------------------------------------------------
# Grant access endpoints
# ---------------------------------------------------------------------------

class TestGrantAccessEndpoints:
    async def test_duplicate_request_is_409(self, api, agent, renter, make_pre_market):
        request = await make_pre_market(renter)
        api.login(agent)

        await api.post(f"/v2/grant-access/{request.id}/request")
        res = await api.post(f"/v2/grant-access/{request.id}/request")

        assert res.status_code == 409
        assert res.json()["error"]["code"] == "CONFLICT"

    async def test_priced_decision_requires_amount(
        self, api, agent, admin, renter, make_pre_market
    ):
        request = await make_pre_market(renter)
        api.login(agent)
        grant_id = (await api.post(f"/v2/grant-access/{request.id}/request")).json()[
            "data"
        ]["id"]
        api.login(admin)

        res = await api.post(
            f"/v2/admin/grant-access/{grant_id}/decide", json={"isFree": False}
        )

        assert res.status_code == 400
        assert res.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_priced_flow_returns_client_secret(
        self, api, agent, admin, renter, make_pre_market
    ):
        request = await make_pre_market(renter)
        api.login(agent)
        grant_id = (await api.post(f"/v2/grant-access/{request.id}/request")).json()[
            "data"
        ]["id"]
        api.login(admin)
        await api.post(
            f"/v2/admin/grant-access/{grant_id}/decide",
            json={"isFree": False, "chargeAmount": 99.99, "notes": "Standard fee"},
        )
        api.login(agent)

        intent = await api.post(
            "/v2/grant-access/payment/create-intent", json={"grantAccessId": grant_id}
        )
        status = await api.get(f"/v2/grant-access/{request.id}/status")

        assert intent.status_code == 200
        assert intent.json()["data"]["client_secret"] == "pi_1_secret_x"
        assert status.json()["data"]["has_access"] is False
        assert status.json()["data"]["charge_amount"] == 99.99
        assert status.json()["data"]["access"]["kind"] == "locked"

    async def test_admin_endpoints_require_admin(self, api, agent):
        api.login(agent)

        res = await api.get("/v2/admin/grant-access/payments/stats")

        assert res.status_code == 403


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

class TestAdminEndpoints:
    async def _priced_grant_id(self, api, agent, admin, request) -> str:
        api.login(agent)
        grant_id = (await api.post(f"/v2/grant-access/{request.id}/request")).json()[
            "data"
        ]["id"]
        api.login(admin)
        await api.post(
            f"/v2/admin/grant-access/{grant_id}/decide",
            json={"isFree": False, "chargeAmount": 50},
        )
        return grant_id

    async def test_admin_lists_every_request(
        self, api, admin, renter, make_pre_market
    ):
        await make_pre_market(renter)
        await make_pre_market(renter, status=PreMarketStatus.DELETED, is_active=False)
        api.login(admin)

        res = await api.get("/v2/admin/pre-market/all")
        active = await api.get("/v2/admin/pre-market/all", params={"status": "active"})

        assert res.status_code == 200
        assert res.json()["data"]["total"] == 2
        assert active.json()["data"]["total"] == 1

    async def test_soft_delete_restore_and_history(
        self, api, agent, admin, renter, make_pre_market
    ):
        request = await make_pre_market(renter)
        grant_id = await self._priced_grant_id(api, agent, admin, request)

        deleted = await api.delete(
            f"/v2/admin/grant-access/payments/{grant_id}/soft",
            params={"reason": "Duplicate"},
        )
        live = await api.get("/v2/admin/grant-access/payments")
        hidden = await api.get(
            "/v2/admin/grant-access/payments", params={"deleted": "true"}
        )
        restored = await api.put(f"/v2/admin/grant-access/payments/{grant_id}/restore")
        history = await api.get(
            f"/v2/admin/grant-access/payments/{grant_id}/deletion-history"
        )

        assert deleted.status_code == 200
        assert deleted.json()["data"]["payment_deleted"] is True
        assert live.json()["data"]["total"] == 0
        assert hidden.json()["data"]["items"][0]["id"] == grant_id
        assert restored.json()["data"]["payment_deleted"] is False
        entries = history.json()["data"]["entries"]
        assert [e["action"] for e in entries] == ["soft_delete", "restore"]
        assert entries[0]["reason"] == "Duplicate"

    async def test_bulk_and_permanent_delete(
        self, api, agent, other_agent, admin, renter, make_pre_market
    ):
        request = await make_pre_market(renter)
        first = await self._priced_grant_id(api, agent, admin, request)
        second = await self._priced_grant_id(api, other_agent, admin, request)

        bulk = await api.post(
            "/v2/admin/grant-access/payments/bulk-delete",
            json={"grantAccessIds": [first], "reason": "Cleanup"},
        )
        removed = await api.delete(f"/v2/admin/grant-access/payments/{second}")
        again = await api.delete(f"/v2/admin/grant-access/payments/{second}")

        assert bulk.json()["data"] == {"deleted": [first], "skipped": []}
        assert removed.status_code == 200
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "NOT_FOUND"


class TestHealth:
    async def test_health(self, api):
        res = await api.get("/health")

        assert res.json() == {"status": "ok"}

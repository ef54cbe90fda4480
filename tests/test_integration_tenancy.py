"""Tenant isolation, capability checks and session lifecycle over HTTP.

The fake upstream returns every company's data unfiltered, so anything a
caller sees from another company here would be a leak in the broker.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from buyerportal import app as app_module
from buyerportal.storage.models import SessionActivity

PASSWORD = "Sup3rSecret"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def upstream(fake_upstream, runtime):
    fake_upstream.add_account(
        "buyer@acme.test", PASSWORD, "101", company_name="Acme East", parent_company_id="100"
    )
    fake_upstream.add_account(
        "manager@acme.test", PASSWORD, "101", company_name="Acme East", parent_company_id="100"
    )
    fake_upstream.add_account("admin@portal.test", PASSWORD, "100", company_name="Acme Holdings")
    fake_upstream.add_account("buyer@globex.test", PASSWORD, "202", company_name="Globex")

    fake_upstream.add("orders", id=1, companyId=101, status="pending", total=120)
    fake_upstream.add("orders", id=2, companyId="101", status="completed", total=80)
    fake_upstream.add("orders", id=3, companyId=202, status="pending", total=999)
    fake_upstream.add("quotes", id=10, companyId=101, status="open")
    fake_upstream.add("quotes", id=11, companyId=101, status="approved")
    fake_upstream.add("quotes", id=12, companyId=202, status="open")
    # Invoices carry the billed customer first
    fake_upstream.add("invoices", id=20, customerId=101, companyId=202)
    fake_upstream.add("invoices", id=21, customerId=202, companyId=101)
    fake_upstream.add("addresses", id=30, companyId=101, city="Springfield")
    fake_upstream.add("addresses", id=31, companyId=202, city="Shelbyville")
    fake_upstream.add("shopping_lists", id=40, companyId=101, name="Weekly")
    fake_upstream.add("shopping_lists", id=41, companyId=202, name="Secret")

    # Local roles survive upstream sync on login
    runtime.store.create_user("manager@acme.test", role="manager", company_id="101")
    runtime.store.create_user("admin@portal.test", role="admin", company_id="100")
    return fake_upstream


def _login(client, email: str) -> dict:
    response = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    return {"Authorization": f"Bearer {data['accessToken']}", "user": data["user"]}


def _headers(session: dict) -> dict:
    return {"Authorization": session["Authorization"]}


def _ids(response) -> set:
    return {item["id"] for item in response.json()["data"]}


class TestCollectionFiltering:
    def test_buyer_sees_only_own_company_orders(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        response = client.get("/api/orders", headers=_headers(session))
        assert response.status_code == 200
        assert _ids(response) == {1, 2}

    def test_query_params_are_forwarded(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        client.get("/api/orders?search=pipe&sortBy=date&limit=5", headers=_headers(session))
        sent = upstream.requests[-1]
        assert sent.url.params["search"] == "pipe"
        assert sent.url.params["sortBy"] == "date"
        assert sent.url.params["limit"] == "5"

    def test_invoices_owned_by_customer_id(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        assert _ids(client.get("/api/invoices", headers=_headers(session))) == {20}
        assert client.get("/api/invoices/21", headers=_headers(session)).status_code == 403
        pdf = client.get("/api/invoices/20/pdf", headers=_headers(session))
        assert pdf.status_code == 200
        assert pdf.json()["data"]["action"] == "pdf"

    def test_other_kinds_are_filtered(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        assert _ids(client.get("/api/quotes", headers=_headers(session))) == {10, 11}
        assert _ids(client.get("/api/shopping-lists", headers=_headers(session))) == {40}
        assert _ids(client.get("/api/company/addresses", headers=_headers(session))) == {30}

    def test_admin_sees_every_company(self, client, upstream):
        session = _login(client, "admin@portal.test")
        response = client.get("/api/orders", headers=_headers(session))
        assert response.status_code == 200
        assert _ids(response) == {1, 2, 3}

    def test_dashboard_counts_only_own_company(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        stats = client.get("/api/dashboard/stats", headers=_headers(session)).json()["data"]
        assert stats == {
            "totalOrders": 2,
            "pendingOrders": 1,
            "completedOrders": 1,
            "totalQuotes": 2,
            "openQuotes": 1,
            "approvedQuotes": 1,
        }


class TestFetchById:
    def test_foreign_order_is_403(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        response = client.get("/api/orders/3", headers=_headers(session))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_own_order_is_returned(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        response = client.get("/api/orders/1", headers=_headers(session))
        assert response.status_code == 200
        assert response.json()["data"]["total"] == 120

    def test_missing_order_is_404(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        assert client.get("/api/orders/404", headers=_headers(session)).status_code == 404

    def test_malformed_id_is_rejected(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        response = client.get("/api/orders/1;DROP", headers=_headers(session))
        assert response.status_code == 400

    def test_foreign_quote_checkout_is_403(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        assert client.post("/api/quotes/12/checkout", headers=_headers(session)).status_code == 403
        ok = client.post("/api/quotes/10/checkout", headers=_headers(session))
        assert ok.status_code == 200
        assert ok.json()["data"]["action"] == "checkout"


class TestWrites:
    def test_buyer_lacks_address_capability(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        response = client.post(
            "/api/addresses", json={"street1": "1 Main St"}, headers=_headers(session)
        )
        assert response.status_code == 403
        details = response.json()["error"]["details"]
        assert details["required"] == ["manage_addresses"]
        assert details["role"] == "buyer"

    def test_manager_creates_address_in_own_company(self, client, upstream):
        session = _login(client, "manager@acme.test")
        response = client.post(
            "/api/addresses",
            json={"street1": "1 Main St", "city": "Springfield", "isDefault": False},
            headers=_headers(session),
        )
        assert response.status_code == 201
        created = response.json()["data"]
        assert created["companyId"] == "101"
        assert created["street1"] == "1 Main St"

    def test_manager_cannot_create_address_for_other_company(self, client, upstream):
        session = _login(client, "manager@acme.test")
        response = client.post(
            "/api/addresses",
            json={"street1": "1 Main St", "companyId": 202},
            headers=_headers(session),
        )
        assert response.status_code == 403

    def test_manager_cannot_touch_foreign_address(self, client, upstream):
        session = _login(client, "manager@acme.test")
        headers = _headers(session)
        assert client.patch("/api/addresses/31", json={"city": "X"}, headers=headers).status_code == 403
        assert client.delete("/api/addresses/31", headers=headers).status_code == 403
        assert client.patch("/api/addresses/31/set-default", headers=headers).status_code == 403
        assert any(a["id"] == 31 and a["city"] == "Shelbyville" for a in upstream.resources["addresses"])

    def test_manager_cannot_move_address_out_of_company(self, client, upstream):
        session = _login(client, "manager@acme.test")
        response = client.patch(
            "/api/addresses/30", json={"companyId": 202}, headers=_headers(session)
        )
        assert response.status_code == 403

    def test_manager_updates_and_deletes_own_address(self, client, upstream):
        session = _login(client, "manager@acme.test")
        headers = _headers(session)
        updated = client.patch("/api/addresses/30", json={"city": "Capital City"}, headers=headers)
        assert updated.status_code == 200
        assert updated.json()["data"]["city"] == "Capital City"
        default = client.patch("/api/addresses/30/set-default", headers=headers)
        assert default.json()["data"]["isDefault"] is True
        deleted = client.delete("/api/addresses/30", headers=headers)
        assert deleted.json()["data"] == {"deleted": True, "id": "30"}

    def test_quote_creation_is_stamped_with_company(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        response = client.post(
            "/api/quotes", json={"items": [{"sku": "PIPE-1", "qty": 4}]}, headers=_headers(session)
        )
        assert response.status_code == 201
        assert response.json()["data"]["companyId"] == "101"

    def test_buyer_cannot_patch_orders_of_other_company(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        response = client.patch("/api/orders/3", json={"note": "x"}, headers=_headers(session))
        assert response.status_code == 403


class TestCompanyContext:
    def test_hierarchy_and_accessible_set(self, client, upstream, runtime):
        session = _login(client, "buyer@acme.test")
        runtime.store.create_company("Acme West", parent_company_id="100", company_id="102")

        accessible = client.get("/api/company/accessible", headers=_headers(session))
        assert {c["id"] for c in accessible.json()["data"]} == {"100", "101", "102"}

        tree = client.get("/api/company/hierarchy", headers=_headers(session)).json()["data"]
        assert tree["parent"]["id"] == "100"
        assert {c["id"] for c in tree["children"]} == {"101", "102"}

    def test_buyer_lacks_switch_capability(self, client, upstream, runtime):
        session = _login(client, "buyer@acme.test")
        me = client.get("/api/auth/me", headers=_headers(session)).json()["data"]
        assert "switch_companies" not in me["capabilities"]

        response = client.post(
            "/api/company/switch", json={"companyId": "100"}, headers=_headers(session)
        )

        assert response.status_code == 403
        assert response.json()["error"]["details"]["required"] == ["switch_companies"]
        assert runtime.store.get_user(session["user"]["id"]).company_id == "101"

    def test_switch_within_accessible_set(self, client, upstream, runtime):
        session = _login(client, "manager@acme.test")
        runtime.store.create_company("Acme West", parent_company_id="100", company_id="102")

        response = client.post(
            "/api/company/switch", json={"companyId": 102}, headers=_headers(session)
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["company"]["id"] == "102"
        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['accessToken']}"})
        assert me.json()["data"]["user"]["companyId"] == "102"
        company = client.get(
            "/api/company", headers={"Authorization": f"Bearer {data['accessToken']}"}
        )
        assert company.json()["data"]["id"] == "102"

    def test_switch_outside_accessible_set_changes_nothing(self, client, upstream, runtime):
        session = _login(client, "manager@acme.test")
        runtime.store.create_company("Globex", company_id="202")
        user_id = session["user"]["id"]

        response = client.post(
            "/api/company/switch", json={"companyId": "202"}, headers=_headers(session)
        )

        assert response.status_code == 403
        assert runtime.store.get_user(user_id).company_id == "101"
        me = client.get("/api/auth/me", headers=_headers(session))
        assert me.json()["data"]["user"]["companyId"] == "101"


class TestSessionLifecycle:
    def test_upstream_outage_is_502(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        upstream.down = True
        response = client.get("/api/orders", headers=_headers(session))
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "upstream_unavailable"

    def test_upstream_revocation_requires_reauth(self, client, upstream, runtime):
        session = _login(client, "buyer@acme.test")
        upstream.revoke_all()

        first = client.get("/api/orders", headers=_headers(session))
        assert first.status_code == 503
        assert first.json()["error"]["code"] == "reauth_required"

        calls_before = len(upstream.requests)
        second = client.get("/api/orders", headers=_headers(session))
        assert second.status_code == 503
        # Dropped token means no further upstream round trip
        assert len(upstream.requests) == calls_before

    def test_idle_timeout_then_fresh_session(self, client, upstream, runtime):
        session = _login(client, "buyer@acme.test")
        user_id = session["user"]["id"]
        idle_for = runtime.settings.session_idle_timeout_seconds + 1

        asyncio.run(
            runtime.tracker.store.set(
                SessionActivity(
                    user_id=user_id,
                    last_activity_at=datetime.now(timezone.utc) - timedelta(seconds=idle_for),
                )
            )
        )

        timed_out = client.get("/api/orders", headers=_headers(session))
        assert timed_out.status_code == 401
        assert timed_out.json()["error"]["details"]["reason"] == "idle_timeout"

        assert client.get("/api/orders", headers=_headers(session)).status_code == 200

    def test_deactivated_user_is_locked_out(self, client, upstream, runtime):
        session = _login(client, "buyer@acme.test")
        runtime.store.deactivate_user(session["user"]["id"])
        response = client.get("/api/orders", headers=_headers(session))
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "account_disabled"


class TestUserManagement:
    def test_user_listing_is_scoped_to_company(self, client, upstream, runtime):
        runtime.store.create_user("colleague@acme.test", company_id="101")
        runtime.store.create_user("rival@globex.test", company_id="202")

        buyer = _login(client, "buyer@acme.test")
        listed = client.get("/api/users", headers=_headers(buyer))
        assert listed.status_code == 200
        emails = {u["email"] for u in listed.json()["data"]}
        assert "colleague@acme.test" in emails
        assert "rival@globex.test" not in emails
        assert {u["companyId"] for u in listed.json()["data"]} == {"101"}

        admin = _login(client, "admin@portal.test")
        everyone = {u["email"] for u in client.get("/api/users", headers=_headers(admin)).json()["data"]}
        assert {"colleague@acme.test", "rival@globex.test"} <= everyone

    def test_manager_creates_buyer_in_own_company(self, client, upstream):
        session = _login(client, "manager@acme.test")
        response = client.post(
            "/api/users",
            json={"email": "new.buyer@acme.test", "name": "New Buyer"},
            headers=_headers(session),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["companyId"] == "101"
        assert data["role"] == "buyer"

    def test_manager_cannot_grant_admin(self, client, upstream):
        session = _login(client, "manager@acme.test")
        response = client.post(
            "/api/users",
            json={"email": "boss@acme.test", "name": "Boss", "role": "admin"},
            headers=_headers(session),
        )
        assert response.status_code == 403

    def test_buyer_cannot_manage_users(self, client, upstream):
        session = _login(client, "buyer@acme.test")
        response = client.post(
            "/api/users",
            json={"email": "x@acme.test", "name": "X"},
            headers=_headers(session),
        )
        assert response.status_code == 403
        assert response.json()["error"]["details"]["required"] == ["manage_users"]

    def test_deactivate_via_patch_and_delete(self, client, upstream, runtime):
        session = _login(client, "manager@acme.test")
        target = runtime.store.create_user("temp@acme.test", company_id="101")
        other = runtime.store.create_user("other@acme.test", company_id="101")

        patched = client.patch(
            f"/api/users/{target.id}", json={"status": "inactive"}, headers=_headers(session)
        )
        assert patched.status_code == 200
        assert patched.json()["data"]["status"] == "inactive"

        deleted = client.delete(f"/api/users/{other.id}", headers=_headers(session))
        assert deleted.json()["data"]["status"] == "inactive"
        assert runtime.store.get_user(other.id) is not None

    def test_manager_cannot_demote_or_deactivate_privileged_users(self, client, upstream, runtime):
        session = _login(client, "manager@acme.test")
        superadmin = runtime.store.create_user("root@acme.test", role="superadmin", company_id="101")
        admin = runtime.store.create_user("ops@acme.test", role="admin", company_id="101")

        for target in (superadmin, admin):
            demoted = client.patch(
                f"/api/users/{target.id}", json={"role": "buyer"}, headers=_headers(session)
            )
            assert demoted.status_code == 403
            deleted = client.delete(f"/api/users/{target.id}", headers=_headers(session))
            assert deleted.status_code == 403
            stored = runtime.store.get_user(target.id)
            assert stored.role == target.role
            assert stored.status == "active"

    def test_admin_cannot_manage_superadmin(self, client, upstream, runtime):
        session = _login(client, "admin@portal.test")
        superadmin = runtime.store.create_user("root@acme.test", role="superadmin", company_id="101")
        buyer = runtime.store.create_user("plain@acme.test", company_id="101")

        denied = client.patch(
            f"/api/users/{superadmin.id}", json={"status": "inactive"}, headers=_headers(session)
        )
        assert denied.status_code == 403
        assert runtime.store.get_user(superadmin.id).status == "active"

        allowed = client.delete(f"/api/users/{buyer.id}", headers=_headers(session))
        assert allowed.status_code == 200
        assert allowed.json()["data"]["status"] == "inactive"

"""
API tests: routing, ownership checks and error rendering
Operations are patched where main imports them; auth and catalog are overridden
"""
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from fastapi.testclient import TestClient

from backend.auth_supabase import User, get_current_active_user
from backend.config import DowngradePolicy
from backend.db_models import Profile, SubscriptionRecord
from backend.errors import ConcurrentUpdateError, NotFoundError, PlanConfigurationError
from backend.main import app, get_plan_catalog
from conftest import PLUS, make_event

AUTH = {"Authorization": "Bearer test-token"}


@pytest.fixture
def current_user():
    return User(id="user_1", email="user@example.com", email_verified=True)


@pytest.fixture
def client(catalog, current_user):
    app.dependency_overrides[get_current_active_user] = lambda: current_user
    app.dependency_overrides[get_plan_catalog] = lambda: catalog
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealthAndPlans:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["ready"] is True

    def test_list_plans(self, client):
        response = client.get("/api/plans")
        assert response.status_code == 200
        assert [plan["name"] for plan in response.json()["plans"]] == ["Starter", "Plus", "Family Pro"]


class TestChangePlan:

    def test_passes_request_to_resolver(self, client, catalog):
        result = {"success": True, "changeType": "upgrade", "message": "ok", "currentPlan": "Starter", "newPlan": "Plus"}
        with patch("backend.main.resolve_plan_change", new=AsyncMock(return_value=result)) as mock_resolve:
            response = client.post("/api/change-plan", json={"uid": "user_1", "newPriceId": PLUS.plan_id}, headers=AUTH)

        assert response.status_code == 200
        assert response.json() == result
        mock_resolve.assert_awaited_once_with("user_1", PLUS.plan_id, catalog, DowngradePolicy.SCHEDULE)

    def test_reject_policy_from_environment(self, client, catalog, monkeypatch):
        from backend.config import get_settings

        monkeypatch.setenv("DOWNGRADE_POLICY", "reject")
        get_settings.cache_clear()
        with patch("backend.main.resolve_plan_change", new=AsyncMock(return_value={"success": True})) as mock_resolve:
            client.post("/api/change-plan", json={"uid": "user_1", "newPriceId": PLUS.plan_id}, headers=AUTH)

        assert mock_resolve.await_args.args[3] is DowngradePolicy.REJECT

    def test_other_users_uid_is_forbidden(self, client):
        with patch("backend.main.resolve_plan_change", new=AsyncMock()) as mock_resolve:
            response = client.post("/api/change-plan", json={"uid": "user_2", "newPriceId": PLUS.plan_id}, headers=AUTH)

        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden"}
        mock_resolve.assert_not_awaited()

    def test_configuration_error_includes_debug(self, client):
        error = PlanConfigurationError("Invalid plan configuration", debug={"currentPriceId": "a", "newPriceId": "b"})
        with patch("backend.main.resolve_plan_change", new=AsyncMock(side_effect=error)):
            response = client.post("/api/change-plan", json={"uid": "user_1", "newPriceId": "b"}, headers=AUTH)

        assert response.status_code == 400
        assert response.json() == {
            "error": "Invalid plan configuration",
            "debug": {"currentPriceId": "a", "newPriceId": "b"},
        }

    @pytest.mark.parametrize("error,status,body", [
        (NotFoundError("User profile not found"), 404, {"error": "User profile not found"}),
        (ConcurrentUpdateError("Profile was modified concurrently, please retry"), 409,
         {"error": "Profile was modified concurrently, please retry"}),
        (stripe.StripeError("card declined"), 500, {"error": "Internal Server Error"}),
        (RuntimeError("boom"), 500, {"error": "Internal Server Error"}),
    ])
    def test_error_mapping(self, client, error, status, body):
        with patch("backend.main.resolve_plan_change", new=AsyncMock(side_effect=error)):
            response = client.post("/api/change-plan", json={"uid": "user_1", "newPriceId": PLUS.plan_id}, headers=AUTH)

        assert response.status_code == status
        assert response.json() == body

    def test_requires_bearer_token(self, catalog):
        app.dependency_overrides[get_plan_catalog] = lambda: catalog
        try:
            response = TestClient(app).post("/api/change-plan", json={"uid": "user_1", "newPriceId": PLUS.plan_id})
        finally:
            app.dependency_overrides.clear()
        assert response.status_code in (401, 403)


class TestSubscriptionRoutes:

    def test_read_subscription(self, client):
        overview = {"subscription": None, "plan": None, "hasSubscription": False}
        with patch("backend.main.get_subscription_overview", new=AsyncMock(return_value=overview)) as mock_overview:
            response = client.get("/api/manage-subscription", params={"uid": "user_1"}, headers=AUTH)

        assert response.status_code == 200
        assert response.json() == overview
        mock_overview.assert_awaited_once_with("user_1")

    def test_manage_subscription(self, client):
        result = {"success": True, "message": "ok", "subscription": {"id": "sub_123", "cancelAtPeriodEnd": False}}
        with patch("backend.main.manage_subscription", new=AsyncMock(return_value=result)) as mock_manage:
            response = client.post("/api/manage-subscription", json={"uid": "user_1", "action": "reactivate"}, headers=AUTH)

        assert response.status_code == 200
        mock_manage.assert_awaited_once_with("user_1", "reactivate")

    def test_clear_scheduled_change(self, client):
        result = {"success": True, "message": "ok", "hadScheduledChange": False}
        with patch("backend.main.clear_scheduled_change", new=AsyncMock(return_value=result)):
            response = client.post("/api/clear-scheduled-change", json={"uid": "user_1"}, headers=AUTH)
        assert response.json() == result

    def test_confirm_subscription(self, client, catalog):
        result = {"plan": "Plus", "subscriptionId": "sub_123", "status": "active", "customerId": "cus_123"}
        with patch("backend.main.confirm_subscription", new=AsyncMock(return_value=result)) as mock_confirm:
            response = client.post("/api/confirm-subscription", json={"uid": "user_1", "sessionId": "cs_1"}, headers=AUTH)

        assert response.json() == result
        mock_confirm.assert_awaited_once_with("user_1", "cs_1", catalog)


class TestProfileRoutes:

    def test_create_profile(self, client):
        profile = Profile(user_id="user_1", email="user@example.com")
        with patch("backend.main.create_profile_if_not_exists", new=AsyncMock(return_value=profile)) as mock_create:
            response = client.post("/api/profile", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["profile"]["user_id"] == "user_1"
        mock_create.assert_awaited_once_with("user_1", "user@example.com")

    @pytest.mark.parametrize("profile,expected", [
        (None, "subscribe"),
        (Profile(user_id="user_1", subscription=SubscriptionRecord(subscription_id="sub_1", status="active")), "granted"),
    ])
    def test_access(self, client, profile, expected):
        with patch("backend.main.get_profile", new=AsyncMock(return_value=profile)):
            response = client.get("/api/access", headers=AUTH)
        assert response.json() == {"access": expected}


class TestWebhookRoute:

    def test_invalid_signature(self, client):
        error = stripe.SignatureVerificationError("bad", "sig")
        with patch("stripe.Webhook.construct_event", side_effect=error):
            response = client.post("/api/webhook", content=b"{}", headers={"stripe-signature": "sig"})
        assert response.status_code == 400
        assert "Invalid signature" in response.json()["error"]

    def test_missing_signature(self, client):
        response = client.post("/api/webhook", content=b"{}")
        assert response.status_code == 400

    def test_unhandled_event_is_acknowledged(self, client):
        event = make_event("invoice.paid", {"id": "in_1"})
        with patch("stripe.Webhook.construct_event", return_value=event):
            response = client.post("/api/webhook", content=b"{}", headers={"stripe-signature": "sig"})
        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_processing_failure_returns_500(self, client):
        with patch("backend.main.handle_stripe_webhook", new=AsyncMock(side_effect=ConcurrentUpdateError("busy"))):
            response = client.post("/api/webhook", content=b"{}", headers={"stripe-signature": "sig"})
        assert response.status_code == 500
        assert response.json() == {"error": "Webhook handler failed"}

    def test_legacy_path(self, client):
        event = make_event("invoice.paid", {"id": "in_1"})
        with patch("stripe.Webhook.construct_event", return_value=event):
            response = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})
        assert response.json() == {"received": True}

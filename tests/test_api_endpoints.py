"""
Tests for API endpoints
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from incomegoals.core.database import get_db
from incomegoals.core.firebase_service import AuthError, TokenExpiredError
from incomegoals.core.middleware import get_current_user
from incomegoals.core.security import SESSION_COOKIE_NAME, encrypt_session_token
from incomegoals.services.auth_service import get_auth_service
from incomegoals.services.billing_service import BillingService, get_billing_service
from incomegoals.services.subscription_service import get_subscription_service


@pytest.fixture
def app(db_session, subscription_service):
    """Application with the database and subscription collaborators swapped for test doubles"""
    from incomegoals.main import app

    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_subscription_service] = lambda: subscription_service
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def login_as(app):
    """Authenticate requests as the given user"""
    def _login(uid="user_123", email="user@example.com", **claims):
        user = {
            'uid': uid,
            'email': email,
            'token': 'test-token',
            'claims': {'uid': uid, 'email': email, **claims},
        }
        app.dependency_overrides[get_current_user] = lambda: user
        return user
    return _login


@pytest.fixture
def mock_stripe():
    return MagicMock()


@pytest.fixture
def billing(app, mock_stripe):
    service = BillingService(stripe_module=mock_stripe, api_key="sk_test_123", webhook_secret="")
    app.dependency_overrides[get_billing_service] = lambda: service
    return service


class TestHealthEndpoint:
    """Test health check endpoint"""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["environment"] == "test"
        assert "version" in body


class TestAuthentication:
    """Test bearer token handling"""

    def test_missing_token(self, client):
        response = client.get("/api/v1/goals/load")

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "UNAUTHORIZED"

    @patch("incomegoals.core.middleware.verify_firebase_token")
    def test_expired_token(self, mock_verify, client):
        mock_verify.side_effect = TokenExpiredError()

        response = client.get("/api/v1/goals/load", headers={"Authorization": "Bearer old-token"})

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "TOKEN_EXPIRED"

    @patch("incomegoals.core.middleware.verify_firebase_token")
    def test_valid_token(self, mock_verify, client):
        mock_verify.return_value = {'uid': 'user_123', 'email': 'user@example.com'}

        response = client.get("/api/v1/goals/load", headers={"Authorization": "Bearer good-token"})

        assert response.status_code == 200
        assert response.json() == {"message": "No goals found", "goals": None}


class TestGoalEndpoints:
    """Test goal save/load/delete"""

    def test_save_load_delete(self, client, login_as):
        # Setup
        login_as()

        # Execute
        saved = client.post("/api/v1/goals/save", json={"userType": "broker", "goalData": {"annualIncome": 150000}})
        loaded = client.get("/api/v1/goals/load?type=broker")
        deleted = client.delete("/api/v1/goals/delete?type=broker")
        after = client.get("/api/v1/goals/load?type=broker")

        # Verify
        assert saved.status_code == 200
        assert saved.json()["message"] == "Goals saved successfully"
        assert loaded.json()["goals"]["goal_data"] == {"annualIncome": 150000}
        assert deleted.json() == {"message": "Goals deleted successfully", "deleted": 1}
        assert after.json()["goals"] is None

    def test_update_replaces(self, client, login_as):
        login_as()
        client.post("/api/v1/goals/save", json={"userType": "investor", "goalData": {"a": 1}})

        response = client.put("/api/v1/goals/update", json={"userType": "investor", "goalData": {"a": 2}})

        assert response.status_code == 200
        assert response.json()["goals"]["goal_data"] == {"a": 2}

    def test_empty_goal_data(self, client, login_as):
        login_as()

        response = client.post("/api/v1/goals/save", json={"userType": "broker", "goalData": {}})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    def test_invalid_user_type(self, client, login_as):
        login_as()

        response = client.post("/api/v1/goals/save", json={"userType": "landlord", "goalData": {"a": 1}})

        assert response.status_code == 422

    def test_users_are_isolated(self, client, login_as):
        login_as(uid="user_a", email="a@example.com")
        client.post("/api/v1/goals/save", json={"userType": "broker", "goalData": {"a": 1}})

        login_as(uid="user_b", email="b@example.com")
        response = client.get("/api/v1/goals/load")

        assert response.json()["goals"] is None


class TestActivityEndpoints:
    """Test activity save/list/stats"""

    def test_save_and_list(self, client, login_as):
        # Setup
        login_as()
        payload = {"date": "2024-03-15", "attempts": 10, "contacts": 5, "userType": "broker"}

        # Execute
        first = client.post("/api/v1/activities/save", json=payload)
        second = client.post("/api/v1/activities/save", json={**payload, "attempts": 12})
        listed = client.get("/api/v1/activities/list?startDate=2024-03-01&endDate=2024-03-31")

        # Verify
        assert first.status_code == 200
        assert second.json()["activity"]["attempts"] == 12
        activities = listed.json()["activities"]
        assert len(activities) == 1
        assert activities[0]["activity_date"] == "2024-03-15"

    def test_negative_counts_rejected(self, client, login_as):
        login_as()

        response = client.post("/api/v1/activities/save", json={"date": "2024-03-15", "attempts": -1})

        assert response.status_code == 422

    def test_missing_date_rejected(self, client, login_as):
        login_as()

        response = client.post("/api/v1/activities/save", json={"attempts": 1})

        assert response.status_code == 422

    def test_stats_without_data(self, client, login_as):
        login_as()

        response = client.get("/api/v1/activities/stats")

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "No activity data found for the last 30 days"
        assert body["period"] == "30 days"
        assert body["stats"]["totalDays"] == 0
        assert body["stats"]["conversionRates"]["attemptToContact"] == 0

    def test_update_by_date(self, client, login_as):
        login_as()

        response = client.put("/api/v1/activities/update/2024-03-15", json={"closings": 2})

        assert response.status_code == 200
        assert response.json()["activity"]["closings"] == 2


class TestSubscriptionEndpoints:
    """Test plans, status and billing portal"""

    def test_plans_are_public(self, client, billing):
        response = client.get("/api/v1/subscriptions/plans")

        assert response.status_code == 200
        assert [p["id"] for p in response.json()["plans"]] == ["monthly", "yearly", "lifetime"]

    def test_status_is_not_cached(self, client, login_as, make_profile):
        # Setup
        login_as()
        make_profile(subscription_status="lifetime")

        # Execute
        response = client.get("/api/v1/subscriptions/status")

        # Verify
        assert response.status_code == 200
        assert response.json()["subscription"] == {"status": "active", "plan": "lifetime"}
        assert "no-store" in response.headers["Cache-Control"]

    def test_status_without_history(self, client, login_as):
        login_as()

        response = client.get("/api/v1/subscriptions/status")

        assert response.json()["subscription"] == {"status": "inactive", "plan": None}

    def test_billing_portal_refuses_placeholder_customer(self, client, login_as, make_profile, billing, mock_stripe):
        # Setup
        login_as()
        make_profile(stripe_customer_id="temp_customer")

        # Execute
        response = client.post("/api/v1/subscriptions/billing-portal")

        # Verify
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "NO_BILLING_ACCOUNT"
        mock_stripe.billing_portal.Session.create.assert_not_called()

    def test_cancel_without_subscription(self, client, login_as, make_profile, billing):
        login_as()
        make_profile()

        response = client.post("/api/v1/subscriptions/cancel")

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "NO_SUBSCRIPTION"

    def test_checkout_invalid_plan(self, client, login_as, billing):
        login_as()

        response = client.post("/api/v1/subscriptions/checkout", json={"planType": "weekly"})

        assert response.status_code == 422

    def test_guest_checkout(self, client, billing, mock_stripe):
        # Setup
        billing._price_ids = {'monthly': 'price_m', 'yearly': 'price_y', 'lifetime': 'price_l'}
        mock_stripe.checkout.Session.create.return_value = {'id': 'cs_1', 'url': 'https://checkout.test/cs_1'}

        # Execute
        response = client.post("/api/v1/subscriptions/guest-checkout", json={"planType": "lifetime"})

        # Verify
        assert response.status_code == 200
        assert response.json() == {"success": True, "checkoutUrl": "https://checkout.test/cs_1", "sessionId": "cs_1"}
        kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs['metadata']['userId'] == 'guest'
        assert '/register-success?session_id={CHECKOUT_SESSION_ID}&plan=lifetime' in kwargs['success_url']


class TestWebhookEndpoint:
    """Test Stripe webhook delivery"""

    def test_bad_signature(self, client, billing, mock_stripe):
        # Setup
        billing.webhook_secret = "whsec_1"
        mock_stripe.Webhook.construct_event.side_effect = stripe.SignatureVerificationError("bad", "sig")

        # Execute
        response = client.post("/api/v1/webhooks/stripe", content=b'{}', headers={"Stripe-Signature": "sig"})

        # Verify
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"

    def test_checkout_completed(self, client, billing, make_profile, fake_crm):
        # Setup
        make_profile()
        event = {
            'id': 'evt_1',
            'type': 'checkout.session.completed',
            'data': {'object': {
                'id': 'cs_1', 'customer': 'cus_1', 'subscription': 'sub_1',
                'metadata': {'userId': 'user_123', 'planType': 'monthly'},
            }},
        }

        # Execute
        response = client.post("/api/v1/webhooks/stripe", content=json.dumps(event).encode())

        # Verify
        assert response.status_code == 200
        assert response.json() == {"received": True, "handled": True, "action": "plan_changed"}
        assert fake_crm.contacts["user@example.com"]["tags"] == ["income-goals-calculator-monthly"]

    def test_unstored_delivery_answers_500(self, app, client, billing):
        """A delivery the database could not take is refused so Stripe retries it"""
        # Setup
        failing_db = MagicMock()
        failing_db.query.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
        failing_db.commit.side_effect = OperationalError("COMMIT", {}, Exception("connection refused"))
        app.dependency_overrides[get_db] = lambda: failing_db
        event = {
            'id': 'evt_3',
            'type': 'checkout.session.completed',
            'data': {'object': {
                'id': 'cs_3', 'customer': 'cus_1', 'subscription': 'sub_3',
                'customer_email': 'user@example.com',
                'metadata': {'userId': 'user_123', 'planType': 'yearly'},
            }},
        }

        # Execute
        response = client.post("/api/v1/webhooks/stripe", content=json.dumps(event).encode())

        # Verify
        assert response.status_code == 500
        assert response.json()["detail"]["code"] == "WEBHOOK_ERROR"

    def test_unhandled_event_is_acknowledged(self, client, billing):
        event = {'id': 'evt_2', 'type': 'charge.refunded', 'data': {'object': {}}}

        response = client.post("/api/v1/webhooks/stripe", content=json.dumps(event).encode())

        assert response.status_code == 200
        assert response.json()["handled"] is False


class TestAdminEndpoints:
    """Test admin-only routes"""

    def test_non_admin_forbidden(self, client, login_as):
        login_as()

        response = client.post(
            "/api/v1/admin/fix-subscription/user@example.com", json={"subscriptionStatus": "lifetime"},
        )

        assert response.status_code == 403

    def test_fix_subscription(self, client, login_as, make_profile):
        # Setup
        login_as(uid="admin_1", email="admin@example.com")
        make_profile()

        # Execute
        response = client.post(
            "/api/v1/admin/fix-subscription/user@example.com", json={"subscriptionStatus": "lifetime"},
        )
        lookup = client.get("/api/v1/admin/users/user@example.com")

        # Verify
        assert response.status_code == 200
        result = response.json()["result"]
        assert result["original_status"] == "free"
        assert result["status"] == "lifetime"
        events = lookup.json()["events"]
        assert events[0]["event_type"] == "manual_fix"
        assert events[0]["event_data"]["fixed_by"] == "admin@example.com"

    def test_fix_subscription_invalid_status(self, client, login_as, make_profile):
        login_as(uid="admin_1", email="admin@example.com")
        make_profile()

        response = client.post(
            "/api/v1/admin/fix-subscription/user@example.com", json={"subscriptionStatus": "gold"},
        )

        assert response.status_code == 422

    def test_unknown_user(self, client, login_as):
        login_as(uid="admin_1", email="admin@example.com")

        response = client.get("/api/v1/admin/users/nobody@example.com")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "USER_NOT_FOUND"


class TestUserEndpoints:
    """Test export and verification e-mail"""

    def test_csv_export(self, client, login_as, make_profile):
        # Setup
        login_as()
        make_profile()

        # Execute
        response = client.get("/api/v1/user/export?format=csv")

        # Verify
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        disposition = response.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="Income-Goal-Data-')
        assert disposition.endswith('.csv"')
        assert "=== YOUR ACTIVITY TRACKING ===" in response.text

    def test_json_export(self, client, login_as, make_profile):
        login_as()
        make_profile()

        response = client.get("/api/v1/user/export?format=json")

        body = response.json()
        assert body["profile"]["email"] == "user@example.com"
        assert body["goals"] == []
        assert body["activities"] == []

    def test_unsupported_export_format(self, client, login_as):
        login_as()

        response = client.get("/api/v1/user/export?format=xml")

        assert response.status_code == 422

    def test_resend_when_already_verified(self, client, login_as):
        login_as(email_verified=True)

        response = client.post("/api/v1/user/resend-verification")

        assert response.json()["already_verified"] is True


class TestAuthEndpoints:
    """Test auth routes with the auth service mocked"""

    @pytest.fixture
    def mock_auth(self, app):
        auth = MagicMock()
        app.dependency_overrides[get_auth_service] = lambda: auth
        return auth

    def test_login_sets_session_cookie(self, client, mock_auth):
        # Setup
        mock_auth.login = AsyncMock(return_value={
            'user': {'id': 'user_123', 'email': 'user@example.com', 'profile': None},
            'session': {'access_token': 'id-token', 'refresh_token': 'refresh-token', 'expires_in': 3600},
        })

        # Execute
        response = client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": "pw"})

        # Verify
        assert response.status_code == 200
        assert response.json()["session"]["access_token"] == "id-token"
        assert SESSION_COOKIE_NAME in response.cookies

    def test_login_bad_credentials(self, client, mock_auth):
        mock_auth.login = AsyncMock(side_effect=AuthError("Invalid email or password", code="INVALID_CREDENTIALS"))

        response = client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": "pw"})

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "INVALID_CREDENTIALS"

    def test_register_short_password(self, client, mock_auth):
        response = client.post("/api/v1/auth/register", json={
            "email": "new@example.com", "password": "short",
            "firstName": "Ada", "lastName": "Lovelace", "userType": "broker",
        })

        assert response.status_code == 422

    def test_register_duplicate(self, client, mock_auth):
        mock_auth.register = AsyncMock(side_effect=AuthError("exists", code="EMAIL_EXISTS"))

        response = client.post("/api/v1/auth/register", json={
            "email": "new@example.com", "password": "password123",
            "firstName": "Ada", "lastName": "Lovelace", "userType": "broker",
        })

        assert response.status_code == 409

    def test_refresh_from_cookie(self, client, mock_auth):
        # Setup
        mock_auth.refresh = AsyncMock(return_value={
            'uid': 'user_123', 'access_token': 'new-id', 'refresh_token': 'new-refresh', 'expires_in': 3600,
        })
        client.cookies.set(SESSION_COOKIE_NAME, encrypt_session_token("old-refresh"))

        # Execute
        response = client.post("/api/v1/auth/refresh")

        # Verify
        assert response.status_code == 200
        mock_auth.refresh.assert_awaited_once_with("old-refresh")
        assert response.json()["session"]["access_token"] == "new-id"

    def test_refresh_without_token(self, client, mock_auth):
        response = client.post("/api/v1/auth/refresh")

        assert response.status_code == 401

    def test_forgot_password_is_generic(self, client, mock_auth):
        mock_auth.forgot_password = AsyncMock()

        response = client.post("/api/v1/auth/forgot-password", json={"email": "nobody@example.com"})

        assert response.status_code == 200
        assert "If an account with this email exists" in response.json()["message"]

    def test_profile_round_trip(self, client, login_as, make_profile):
        login_as()
        make_profile()

        updated = client.put("/api/v1/auth/profile", json={"first_name": " Ada ", "last_name": "Lovelace"})
        fetched = client.get("/api/v1/auth/profile")

        assert updated.status_code == 200
        assert fetched.json()["user"]["profile"]["first_name"] == "Ada"

    def test_update_profile_missing(self, client, login_as):
        login_as()

        response = client.put("/api/v1/auth/profile", json={"first_name": "Ada", "last_name": "Lovelace"})

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "PROFILE_NOT_FOUND"


class TestHighLevelEndpoints:
    def test_other_users_contact_forbidden(self, client, login_as):
        login_as()

        response = client.get("/api/v1/highlevel/contacts/someone-else@example.com")

        assert response.status_code == 403

    def test_connection_test_is_admin_only(self, client, login_as):
        login_as()

        response = client.get("/api/v1/highlevel/test")

        assert response.status_code == 403

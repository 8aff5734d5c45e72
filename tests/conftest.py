"""
Pytest configuration for testing
"""

import json
import os
from unittest.mock import MagicMock

import pytest

from tests.fakes import FakeBilling, FakeCRM

# Create mock Firebase credentials before any imports
credentials_path = "/tmp/test-creds.json"
if not os.path.exists(credentials_path):
    os.makedirs(os.path.dirname(credentials_path), exist_ok=True)
    with open(credentials_path, "w") as f:
        json.dump({
            "type": "service_account",
            "project_id": "test-project",
            "private_key_id": "test-key-id",
            "client_email": "test@test-project.iam.gserviceaccount.com",
            "client_id": "123456789",
            "token_uri": "https://oauth2.googleapis.com/token",
        }, f)

# Set up environment variables for testing before any imports
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FIREBASE_PROJECT_ID"] = "test-project"
os.environ["FIREBASE_CREDENTIALS_PATH"] = credentials_path
os.environ["FIREBASE_WEB_API_KEY"] = "test-web-api-key"
os.environ["SESSION_ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["REDIS_PASSWORD"] = ""
os.environ["ENVIRONMENT"] = "test"
os.environ["ADMIN_EMAILS"] = "admin@example.com"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["HIGHLEVEL_API_KEY"] = ""
os.environ["HIGHLEVEL_LOCATION_ID"] = ""


# Mock Firebase Admin before it's used
@pytest.fixture(autouse=True)
def mock_firebase_admin(monkeypatch):
    """Mock Firebase Admin SDK initialization and Firestore so tests never reach Google"""
    mock_credentials = MagicMock()
    monkeypatch.setattr("firebase_admin.credentials.Certificate", mock_credentials.Certificate)

    mock_init = MagicMock()
    monkeypatch.setattr("firebase_admin.initialize_app", mock_init)

    mock_firestore = MagicMock()
    monkeypatch.setattr("firebase_admin.firestore.client", mock_firestore)

    yield mock_firestore

    from incomegoals.core.firebase_service import set_firebase_service
    set_firebase_service(None)


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema on the shared in-memory SQLite engine for each test"""
    import incomegoals.models  # noqa: F401
    from incomegoals.core.database import Base, SessionLocal, engine

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.rollback()
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def mock_analytics():
    """Analytics stand-in that records calls"""
    return MagicMock()


@pytest.fixture
def fake_billing():
    return FakeBilling()


@pytest.fixture
def fake_crm():
    return FakeCRM(contacts={'user@example.com': {'id': 'contact_1', 'tags': ['income-goals-calculator-free']}})


@pytest.fixture
def subscription_service(fake_billing, fake_crm, mock_analytics):
    from incomegoals.services.subscription_service import SubscriptionService
    return SubscriptionService(billing=fake_billing, crm=fake_crm, analytics=mock_analytics)


@pytest.fixture
def make_profile(db_session):
    """Insert a profile row"""
    from incomegoals.models.user import UserProfile

    def _make(user_id="user_123", email="user@example.com", subscription_status="free", **kwargs):
        profile = UserProfile(id=user_id, email=email, subscription_status=subscription_status, **kwargs)
        db_session.add(profile)
        db_session.commit()
        return profile

    return _make

"""
Smoke tests for signup and login endpoints.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from polychat.main import app
from polychat.core.auth_dependency import get_db
from polychat.core.plan_catalog import seed_plans
from polychat.core.security import hash_password, verify_password, decode_access_token
from polychat.db.base import Base
from polychat.db.models.user import User
from polychat.db.models.subscription import Subscription, SubscriptionStatus, PaymentStatus

TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def override_get_db():
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=test_engine)
    app.dependency_overrides[get_db] = override_get_db
    db = TestSessionLocal()
    seed_plans(db)
    try:
        yield db
    finally:
        db.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def client(db):
    return TestClient(app)


@pytest.fixture
def test_user(db):
    """Create a test user for login tests."""
    user = User(
        full_name="Test Login User",
        email="test_login@example.com",
        password_hash=hash_password("testpass123"),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return {"email": "test_login@example.com", "password": "testpass123", "user": user}


def test_password_hash_roundtrip():
    hashed = hash_password("testpass123")
    assert verify_password("testpass123", hashed)
    assert not verify_password("wrongpass", hashed)
    assert not verify_password("testpass123", None)


def test_signup_bootstraps_free_plan(client, db):
    response = client.post(
        "/auth/signup",
        json={"full_name": "New User", "email": "new_user@example.com", "password": "testpass123"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["message"] == "User created successfully"
    assert data["credits_remaining"] == "5"

    subscription = db.query(Subscription).filter(Subscription.user_id == data["user_id"]).one()
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.payment_status == PaymentStatus.FREE


def test_signup_duplicate_email(client, test_user):
    response = client.post(
        "/auth/signup",
        json={"email": test_user["email"], "password": "anotherpass1"},
    )

    assert response.status_code == 409


def test_signup_short_password(client):
    response = client.post("/auth/signup", json={"email": "short@example.com", "password": "abc"})

    assert response.status_code == 422


def test_login_success(client, test_user):
    response = client.post(
        "/auth/login",
        data={
            "username": test_user["email"],  # OAuth2PasswordRequestForm uses 'username'
            "password": test_user["password"]
        },
        headers={"Content-Type": "application/x-www-form-urlencoded"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["token_type"] == "bearer"
    assert decode_access_token(data["access_token"]) == test_user["email"]


def test_login_wrong_password(client, test_user):
    response = client.post(
        "/auth/login",
        data={"username": test_user["email"], "password": "wrongpass"},
        headers={"Content-Type": "application/x-www-form-urlencoded"}
    )

    assert response.status_code == 401


def test_login_unknown_user(client):
    response = client.post(
        "/auth/login",
        data={"username": "nobody@example.com", "password": "whatever1"},
        headers={"Content-Type": "application/x-www-form-urlencoded"}
    )

    assert response.status_code == 401

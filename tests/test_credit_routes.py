"""
Tests for balance, ledger and chat endpoints.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from polychat.main import app
from polychat.core.auth_dependency import get_db
from polychat.core.plan_catalog import seed_plans
from polychat.core.security import create_access_token
from polychat.db.base import Base
from polychat.db.models.user import User
from polychat.services import subscription_service

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
def auth_headers(db):
    user = User(full_name="Credit User", email="credits@example.com", credits_remaining="0")
    db.add(user)
    db.commit()
    subscription_service.create_free_subscription(db, user)
    token = create_access_token({"sub": user.email})
    return {"Authorization": f"Bearer {token}"}


def test_credits_balance(client, auth_headers):
    response = client.get("/me/credits", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"credits_remaining": "5", "credits_display": "5.00", "ledger_consistent": True}


def test_chat_completion_flow(client, auth_headers):
    chat = client.post("/chats", json={"title": "Pricing"}, headers=auth_headers).json()

    response = client.post(
        f"/chats/{chat['id']}/completions",
        json={"model": "ChatGPT", "user_input": "Hi", "api_response": "Hello", "prompt_tokens": 639, "completion_tokens": 0},
        headers=auth_headers,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["credits_charged"] == "0.50"
    assert body["credits_remaining"] == "4.5"

    detail = client.get(f"/chats/{chat['id']}", headers=auth_headers).json()
    assert len(detail["messages"]) == 1
    assert detail["messages"][0]["credits_deducted"] == "0.5"

    ledger = client.get("/me/credit-transactions", headers=auth_headers).json()
    assert ledger["total"] == 2
    assert ledger["entries"][0]["payment_method"] == "Usage"

    usage = client.get("/chats/usage", headers=auth_headers).json()
    assert usage["total"] == 1


def test_chat_completion_insufficient_credits(client, auth_headers):
    chat = client.post("/chats", json={}, headers=auth_headers).json()

    response = client.post(
        f"/chats/{chat['id']}/completions",
        json={"model": "Claude", "user_input": "Hi", "prompt_tokens": 8880},
        headers=auth_headers,
    )

    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "insufficient_credits"
    assert body["remaining"] == "5"


def test_deleted_chat_not_found(client, auth_headers):
    chat = client.post("/chats", json={"title": "Gone"}, headers=auth_headers).json()

    assert client.delete(f"/chats/{chat['id']}", headers=auth_headers).status_code == 200
    response = client.get(f"/chats/{chat['id']}", headers=auth_headers)

    assert response.status_code == 404
    assert client.post(f"/chats/{chat['id']}/restore", headers=auth_headers).status_code == 200

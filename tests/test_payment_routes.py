# tests/test_payment_routes.py
import time

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from api import server
from api.auth import SESSION_COOKIE, AuthConfig, require_user
from conftest import WEB_ORIGIN, signed_notification
from services.tbank_client import TBankClient
from tasks.reconciliation import ReconcilerConfig

SUPABASE_URL = "https://project.supabase.test"
JWT_SECRET = "jwt-test-secret"


def session_token(sub="user-1", email="student@example.com", **overrides):
    claims = {
        "sub": sub,
        "email": email,
        "aud": "authenticated",
        "iss": f"{SUPABASE_URL}/auth/v1",
        "exp": int(time.time()) + 3600,
        **overrides,
    }
    return jwt.encode(claims, JWT_SECRET, algorithm="HS256")


@pytest.fixture
def components(store, grant_store, catalog, checkout, tbank_config, fake_tbank):
    return server.Components(
        store=store,
        grant_store=grant_store,
        catalog=catalog,
        client=TBankClient(tbank_config, transport=httpx.MockTransport(fake_tbank.handler)),
        checkout=checkout,
        reconciler_config=ReconcilerConfig(enabled=False),
        auth=AuthConfig(supabase_url=SUPABASE_URL, jwt_secret=JWT_SECRET),
    )


@pytest.fixture
def app(components):
    return server.create_app(components)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def signed_in(client):
    client.cookies.set(SESSION_COOKIE, session_token())
    return client


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["reconciler"]["enabled"] is False
    assert "X-Response-Time-Ms" in response.headers


def test_init_requires_session(client):
    response = client.post("/api/payments/tbank/init", json={"courseId": "course-1"})

    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHORIZED"


@pytest.mark.parametrize("token", [
    session_token(aud="anon"),
    session_token(iss="https://elsewhere.test/auth/v1"),
    session_token(exp=int(time.time()) - 10),
    jwt.encode({"sub": "user-1", "aud": "authenticated"}, "wrong-secret", algorithm="HS256"),
])
def test_invalid_sessions_are_rejected(client, token):
    client.cookies.set(SESSION_COOKIE, token)

    response = client.post("/api/payments/tbank/init", json={"courseId": "course-1"})

    assert response.status_code == 401


def test_init_returns_payment_url(signed_in, fake_tbank):
    response = signed_in.post(
        "/api/payments/tbank/init",
        json={"courseId": "course-1"},
        headers={"Origin": WEB_ORIGIN},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["paymentUrl"] == "https://pay.tbank.test/1001"
    assert body["orderId"]
    assert fake_tbank.requests[0][1]["Amount"] == 190000


def test_init_validation_errors(signed_in):
    response = signed_in.post("/api/payments/tbank/init", json={})

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_REQUEST"


def test_unknown_course(signed_in):
    response = signed_in.post("/api/payments/tbank/init", json={"courseId": "missing"})

    assert response.status_code == 404
    assert response.json() == {"error": "COURSE_NOT_FOUND", "message": "Course not found."}


def test_provider_rejection_is_502(signed_in, fake_tbank):
    fake_tbank.init_response = {"Success": False, "ErrorCode": "9", "Message": "Terminal blocked", "Raw": "x"}

    response = signed_in.post("/api/payments/tbank/init", json={"courseId": "course-1"})

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "TBANK_INIT_REJECTED"
    assert body["details"] == {"ErrorCode": "9", "Message": "Terminal blocked"}


def test_details_are_hidden_in_production(signed_in, fake_tbank, monkeypatch):
    monkeypatch.setattr(server.config, "ENV", "production")
    fake_tbank.init_response = {"Success": False, "ErrorCode": "9", "Message": "Terminal blocked"}

    response = signed_in.post("/api/payments/tbank/init", json={"courseId": "course-1"})

    assert response.status_code == 502
    assert "details" not in response.json()


def test_notification_then_sync_then_courses(signed_in, fake_tbank):
    order_id = signed_in.post("/api/payments/tbank/init", json={"courseId": "course-1"}).json()["orderId"]

    ack = signed_in.post(
        "/api/payments/tbank/notification",
        json=signed_notification(OrderId=order_id, PaymentId=1001, Status="CONFIRMED", Amount=190000),
    )
    assert ack.status_code == 200
    assert ack.json() == {"ok": True}

    fake_tbank.states["1001"] = "CONFIRMED"
    synced = signed_in.post("/api/payments/tbank/sync", json={"orderId": order_id})
    assert synced.status_code == 200
    body = synced.json()
    assert body["status"] == "confirmed"
    assert body["courseId"] == "course-1"
    assert body["paidAt"] is not None

    courses = signed_in.get("/api/purchases/courses")
    assert courses.json() == {"courseIds": ["course-1"]}


def test_notification_with_bad_token_is_forbidden(client):
    payload = signed_notification(OrderId="order-1", Status="CONFIRMED")
    payload["Token"] = "0" * 64

    response = client.post("/api/payments/tbank/notification", json=payload)

    assert response.status_code == 403
    assert response.json()["error"] == "INVALID_TOKEN"


def test_malformed_notification_is_400(client):
    response = client.post(
        "/api/payments/tbank/notification",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_NOTIFICATION"


def test_sync_unknown_order(app, client, user):
    app.dependency_overrides[require_user] = lambda: user

    response = client.post("/api/payments/tbank/sync", json={"orderId": "nope"})

    assert response.status_code == 404
    assert response.json()["error"] == "PURCHASE_NOT_FOUND"

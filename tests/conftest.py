# tests/conftest.py
import json
from datetime import datetime, timezone

import httpx
import pytest

from pipeline.purchase_lifecycle import CheckoutConfig, PurchaseLifecycle
from schemas.payment_definitions import AuthenticatedUser, Course
from services.access_grants import AccessGrantService, InMemoryAccessGrantStore
from services.course_catalog import InMemoryCourseCatalog
from services.tbank_client import TBankClient, TBankConfig
from services.tbank_signature import DEFAULT_EXCLUDE, DEFAULT_MODES, TOKEN_FIELD, sign
from storage.purchase_store import InMemoryPurchaseStore

TERMINAL_KEY = "TestTerminal"
PASSWORD = "test-password"
API_URL = "https://tbank.test/v2"
WEB_ORIGIN = "https://app.example"

INVALID_TOKEN_RESPONSE = {
    "Success": False,
    "ErrorCode": "204",
    "Message": "Неверный токен. Проверьте пару TerminalKey/SecretKey.",
    "Details": "Invalid token",
}


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeTBank:
    """
    Scripted provider behind httpx.MockTransport.

    Records every request as (operation, body, mode) where mode is the token
    mode the body was signed with (None when no mode matches).
    """

    def __init__(self):
        self.requests = []
        self.rejected_modes = set()
        self.states = {}
        self.next_payment_id = 1000
        self.init_response = None
        self.get_state_error = None

    @staticmethod
    def mode_of(body):
        fields = {k: v for k, v in body.items() if k != TOKEN_FIELD}
        for mode in DEFAULT_MODES:
            if sign(fields, PASSWORD, mode, DEFAULT_EXCLUDE) == body.get(TOKEN_FIELD):
                return mode
        return None

    def operations(self):
        return [operation for operation, _, _ in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        operation = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content)
        mode = self.mode_of(body)
        self.requests.append((operation, body, mode))

        if mode is None or mode in self.rejected_modes:
            return httpx.Response(200, json=INVALID_TOKEN_RESPONSE)

        if operation == "Init":
            if self.init_response is not None:
                return httpx.Response(200, json=self.init_response)
            self.next_payment_id += 1
            payment_id = str(self.next_payment_id)
            self.states.setdefault(payment_id, "NEW")
            return httpx.Response(200, json={
                "Success": True,
                "ErrorCode": "0",
                "TerminalKey": body["TerminalKey"],
                "Status": "NEW",
                "PaymentId": payment_id,
                "OrderId": body["OrderId"],
                "Amount": body["Amount"],
                "PaymentURL": f"https://pay.tbank.test/{payment_id}",
            })

        if operation == "GetState":
            if self.get_state_error is not None:
                raise self.get_state_error
            payment_id = str(body["PaymentId"])
            return httpx.Response(200, json={
                "Success": True,
                "ErrorCode": "0",
                "TerminalKey": body["TerminalKey"],
                "PaymentId": payment_id,
                "Status": self.states.get(payment_id, "NEW"),
            })

        return httpx.Response(404, json={"Success": False})


def signed_notification(**fields):
    """A provider callback body carrying a valid password_key token."""
    payload = {"TerminalKey": TERMINAL_KEY, "Success": True, "ErrorCode": "0", **fields}
    payload[TOKEN_FIELD] = sign(payload, PASSWORD, DEFAULT_MODES[0])
    return payload


@pytest.fixture
def fake_tbank():
    return FakeTBank()


@pytest.fixture
def tbank_config():
    return TBankConfig(
        api_url=API_URL,
        terminal_key=TERMINAL_KEY,
        password=PASSWORD,
        timeout_ms=2000,
        slow_log_ms=1000,
    )


@pytest.fixture
def tbank_client(tbank_config, fake_tbank):
    return TBankClient(tbank_config, transport=httpx.MockTransport(fake_tbank.handler))


@pytest.fixture
def store():
    return InMemoryPurchaseStore()


@pytest.fixture
def grant_store():
    return InMemoryAccessGrantStore()


@pytest.fixture
def grants(grant_store):
    return AccessGrantService(grant_store)


@pytest.fixture
def catalog():
    return InMemoryCourseCatalog([
        Course(id="course-1", title="Python для начинающих", price=2500, sale_price=1900),
        Course(id="course-free", title="Intro", price=0),
        Course(id="course-broken", title="Broken", price="n/a"),
    ])


@pytest.fixture
def checkout():
    return CheckoutConfig(web_origins=[WEB_ORIGIN], public_base_url="https://api.example")


@pytest.fixture
def lifecycle(store, tbank_client, grants, catalog, checkout):
    return PurchaseLifecycle(store, tbank_client, grants, catalog, checkout)


@pytest.fixture
def user():
    return AuthenticatedUser(id="user-1", email="student@example.com")


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

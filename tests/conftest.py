# tests/conftest.py
from __future__ import annotations

import json
import threading
from typing import Any, Callable, Union

import httpx
import pytest

from paygate.catalog.markets import ProviderRegistry, load_markets, parse_priority
from paygate.providers.http import HttpClient
from paygate.services import metrics
from paygate.settings import Settings

MPESA_OAUTH = "/oauth/v1/generate"
MPESA_STK_PUSH = "/mpesa/stkpush/v1/processrequest"
MPESA_STK_QUERY = "/mpesa/stkpushquery/v1/query"
MOMO_TOKEN = "/collection/token/"
MOMO_DISBURSEMENT_TOKEN = "/disbursement/token/"
MOMO_RTP = "/collection/v1_0/requesttopay"
MOMO_TRANSFER = "/disbursement/v1_0/transfer"
MOMO_BALANCE = "/collection/v1_0/account/balance"
MOMO_ACCOUNT_HOLDER = "/collection/v1_0/accountholder/msisdn"


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "PAYGATE_MODE": "sandbox",
        "PAYGATE_STRICT_STARTUP_VALIDATION": False,
        "PAYGATE_ENABLED_PROVIDERS": "MPESA,MTN_MOMO",
        "PAYGATE_HTTP_TIMEOUT_S": 5.0,
        "MPESA_CONSUMER_KEY": "ck-123",
        "MPESA_CONSUMER_SECRET": "cs-123",
        "MPESA_BUSINESS_SHORT_CODE": "174379",
        "MPESA_PASSKEY": "passkey-123",
        "MPESA_CALLBACK_URL": "https://hooks.example.test/v1/webhooks/mpesa",
        "MTN_MOMO_PRIMARY_KEY": "primary-123",
        "MTN_MOMO_SECONDARY_KEY": "secondary-123",
        "MTN_MOMO_USER_ID": "user-123",
        "MTN_MOMO_API_KEY": "key-123",
        "MTN_MOMO_CALLBACK_URL": "https://hooks.example.test/v1/webhooks/mtn_momo",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeProviderAPI:
    """
    In-memory provider endpoints behind httpx.MockTransport.

    Routes are keyed by (METHOD, path); a path ending in "*" matches by
    prefix. Every request is recorded in `calls`.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], Responder] = {}
        self.calls: list[httpx.Request] = []
        self._lock = threading.Lock()

    def on(self, method: str, path: str, response: Responder) -> None:
        self.routes[(method.upper(), path)] = response

    def _lookup(self, request: httpx.Request) -> Responder | None:
        key = (request.method, request.url.path)
        if key in self.routes:
            return self.routes[key]
        for (method, path), resp in self.routes.items():
            if method == request.method and path.endswith("*") and request.url.path.startswith(path[:-1]):
                return resp
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.calls.append(request)
        resp = self._lookup(request)
        if resp is None:
            return httpx.Response(404, json={"message": f"no route {request.method} {request.url.path}"})
        if callable(resp):
            return resp(request)
        return resp

    def client(self, timeout_s: float = 5.0) -> HttpClient:
        return HttpClient(timeout_s=timeout_s, transport=httpx.MockTransport(self.handler))

    def count(self, path: str) -> int:
        return sum(1 for r in self.calls if r.url.path == path)

    def last_json(self, path: str) -> dict[str, Any]:
        for r in reversed(self.calls):
            if r.url.path == path:
                return json.loads(r.content)
        raise AssertionError(f"no call to {path}")

    def last_request(self, path: str) -> httpx.Request:
        for r in reversed(self.calls):
            if r.url.path == path:
                return r
        raise AssertionError(f"no call to {path}")


def mpesa_token_ok(api: FakeProviderAPI, token: str = "mpesa-token", expires_in: str = "3599") -> None:
    api.on("GET", MPESA_OAUTH, httpx.Response(200, json={"access_token": token, "expires_in": expires_in}))


def momo_token_ok(api: FakeProviderAPI, token: str = "momo-token", expires_in: int = 3600) -> None:
    # collection and disbursement each issue their own token
    for path in (MOMO_TOKEN, MOMO_DISBURSEMENT_TOKEN):
        api.on(
            "POST",
            path,
            httpx.Response(200, json={"access_token": token, "token_type": "access_token", "expires_in": expires_in}),
        )


def stk_push_ok(api: FakeProviderAPI, checkout_id: str = "ws_CO_191220191020363925") -> None:
    api.on(
        "POST",
        MPESA_STK_PUSH,
        httpx.Response(
            200,
            json={
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_id,
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        ),
    )


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture(scope="session")
def registry() -> ProviderRegistry:
    return ProviderRegistry(load_markets(), parse_priority("mpesa,mtn_momo,airtel_money,orange_money"))

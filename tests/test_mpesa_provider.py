from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from paygate.providers.base import ErrorKind, Provider
from paygate.providers.config import mpesa_config
from paygate.providers.mpesa import EAT, MpesaAdapter, daraja_timestamp, whole_units
from paygate.schemas import PaymentRequest
from tests.conftest import (
    MPESA_OAUTH,
    MPESA_STK_PUSH,
    MPESA_STK_QUERY,
    make_settings,
    mpesa_token_ok,
    stk_push_ok,
)

FIXED_NOW = datetime(2024, 1, 15, 10, 30, 0, tzinfo=EAT)


@pytest.fixture
def adapter(api):
    return MpesaAdapter(mpesa_config(make_settings()), api.client(), now=lambda: FIXED_NOW)


@pytest.fixture
def kenya(registry):
    return registry.market_for(Provider.MPESA, "KES")


def _request(**overrides) -> PaymentRequest:
    values = {
        "amount": Decimal("100"),
        "currency": "KES",
        "phone_number": "254712345678",
        "description": "Maize seed",
        "external_id": "ORD-1",
    }
    values.update(overrides)
    return PaymentRequest(**values)


def _callback(result_code=0, items=None, desc="The service request is processed successfully."):
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResultCode": result_code,
        "ResultDesc": desc,
    }
    if items is not None:
        stk["CallbackMetadata"] = {"Item": items}
    return json.dumps({"Body": {"stkCallback": stk}}).encode()


def test_daraja_timestamp_is_east_africa_time():
    assert daraja_timestamp(datetime(2024, 1, 15, 7, 30, 0, tzinfo=timezone.utc)) == "20240115103000"


def test_whole_units_rounds_half_up():
    assert whole_units(Decimal("99.5")) == 100
    assert whole_units(Decimal("10.49")) == 10
    assert whole_units(Decimal("1")) == 1


def test_initiate_sends_stk_push(api, adapter, kenya):
    mpesa_token_ok(api)
    stk_push_ok(api)

    result = adapter.initiate(_request(), kenya)

    assert result.ok
    assert result.reference_id == "ws_CO_191220191020363925"
    assert result.transaction_id == "29115-34620561-1"
    assert result.native_status == "PROCESSING"
    assert result.amount == Decimal("100")

    sent = api.last_request(MPESA_STK_PUSH)
    assert sent.headers["Authorization"] == "Bearer mpesa-token"
    body = json.loads(sent.content)
    assert body["Amount"] == 100
    assert body["PartyA"] == "254712345678"
    assert body["PhoneNumber"] == "254712345678"
    assert body["PartyB"] == "174379"
    assert body["BusinessShortCode"] == "174379"
    assert body["Timestamp"] == "20240115103000"
    assert body["Password"] == base64.b64encode(b"174379passkey-12320240115103000").decode()
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert body["AccountReference"] == "ORD-1"
    assert body["TransactionDesc"] == "Maize seed"
    assert httpx.URL(body["CallBackURL"]).params["external_id"] == "ORD-1"


def test_initiate_rounds_amount_to_whole_units(api, adapter, kenya):
    mpesa_token_ok(api)
    stk_push_ok(api)

    adapter.initiate(_request(amount=Decimal("149.50")), kenya)
    assert api.last_json(MPESA_STK_PUSH)["Amount"] == 150


def test_initiate_below_minimum_makes_no_call(api, adapter, kenya):
    result = adapter.initiate(_request(amount=Decimal("0.40")), kenya)

    assert result.error_kind == ErrorKind.VALIDATION
    assert not result.retryable
    assert api.calls == []


def test_token_is_reused_between_payments(api, adapter, kenya):
    mpesa_token_ok(api)
    stk_push_ok(api)

    adapter.initiate(_request(external_id="ORD-1"), kenya)
    adapter.initiate(_request(external_id="ORD-2"), kenya)

    assert api.count(MPESA_OAUTH) == 1
    assert api.count(MPESA_STK_PUSH) == 2


def test_unauthorized_invalidates_token(api, adapter, kenya):
    mpesa_token_ok(api)
    api.on("POST", MPESA_STK_PUSH, httpx.Response(401, json={"errorCode": "404.001.03", "errorMessage": "Invalid Access Token"}))

    result = adapter.initiate(_request(), kenya)
    assert result.error_kind == ErrorKind.AUTH_FAILURE
    assert result.retryable
    assert adapter.tokens.peek() is None

    stk_push_ok(api)
    assert adapter.initiate(_request(), kenya).ok
    assert api.count(MPESA_OAUTH) == 2


def test_token_failure_is_auth_failure(api, adapter, kenya):
    api.on("GET", MPESA_OAUTH, httpx.Response(400, json={"errorCode": "400.008.01", "errorMessage": "Invalid Authentication"}))

    result = adapter.initiate(_request(), kenya)

    assert result.error_kind == ErrorKind.AUTH_FAILURE
    assert api.count(MPESA_STK_PUSH) == 0


def test_server_error_is_provider_unavailable(api, adapter, kenya):
    mpesa_token_ok(api)
    api.on("POST", MPESA_STK_PUSH, httpx.Response(503, text="Service Unavailable"))

    result = adapter.initiate(_request(), kenya)
    assert result.error_kind == ErrorKind.PROVIDER_UNAVAILABLE
    assert result.retryable
    assert result.http_status == 503


def test_bad_request_is_rejected_by_provider(api, adapter, kenya):
    mpesa_token_ok(api)
    api.on(
        "POST",
        MPESA_STK_PUSH,
        httpx.Response(400, json={"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"}),
    )

    result = adapter.initiate(_request(), kenya)
    assert result.error_kind == ErrorKind.REJECTED_BY_PROVIDER
    assert not result.retryable
    assert result.native_status == "400.002.02"
    assert result.reason == "Bad Request - Invalid PhoneNumber"


def test_non_zero_response_code_is_rejected(api, adapter, kenya):
    mpesa_token_ok(api)
    api.on("POST", MPESA_STK_PUSH, httpx.Response(200, json={"ResponseCode": "1", "ResponseDescription": "Rejected"}))

    result = adapter.initiate(_request(), kenya)
    assert result.error_kind == ErrorKind.REJECTED_BY_PROVIDER
    assert result.native_status == "1"


def test_network_timeout_is_timeout(api, adapter, kenya):
    mpesa_token_ok(api)

    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    api.on("POST", MPESA_STK_PUSH, timeout)

    result = adapter.initiate(_request(), kenya)
    assert result.error_kind == ErrorKind.TIMEOUT
    assert result.retryable


def test_connection_error_is_provider_unavailable(api, adapter, kenya):
    mpesa_token_ok(api)

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    api.on("POST", MPESA_STK_PUSH, refused)

    result = adapter.initiate(_request(), kenya)
    assert result.error_kind == ErrorKind.PROVIDER_UNAVAILABLE


def test_query_status_completed(api, adapter, kenya):
    mpesa_token_ok(api)
    api.on(
        "POST",
        MPESA_STK_QUERY,
        httpx.Response(
            200,
            json={
                "ResponseCode": "0",
                "ResponseDescription": "The service request has been accepted successsfully",
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResultCode": "0",
                "ResultDesc": "The service request is processed successfully.",
            },
        ),
    )

    result = adapter.query_status("ws_CO_191220191020363925", kenya)

    assert result.ok
    assert result.native_status == "0"
    assert result.currency == "KES"
    assert api.last_json(MPESA_STK_QUERY)["CheckoutRequestID"] == "ws_CO_191220191020363925"


def test_query_status_still_processing(api, adapter):
    mpesa_token_ok(api)
    api.on(
        "POST",
        MPESA_STK_QUERY,
        httpx.Response(500, json={"requestId": "1", "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}),
    )

    result = adapter.query_status("ws_CO_1")
    assert result.ok
    assert result.native_status == "PROCESSING"


def test_query_status_cancelled(api, adapter):
    mpesa_token_ok(api)
    api.on(
        "POST",
        MPESA_STK_QUERY,
        httpx.Response(200, json={"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"}),
    )

    result = adapter.query_status("ws_CO_1")
    assert result.native_status == "1032"
    assert result.reason == "Request cancelled by user"


def test_parse_callback_success(adapter):
    body = _callback(
        0,
        [
            {"Name": "Amount", "Value": 250},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ],
    )

    result = adapter.parse_callback(body, {"external_id": "ORD-1"})

    assert result.ok
    assert result.native_status == "0"
    assert result.reference_id == "ws_CO_191220191020363925"
    assert result.transaction_id == "NLJ7RT61SV"
    assert result.amount == Decimal("250")
    assert result.phone_number == "254712345678"
    assert result.external_id == "ORD-1"


def test_parse_callback_accepts_camel_case_keys(adapter):
    body = json.dumps(
        {
            "body": {
                "stkCallback": {
                    "merchantRequestId": "m-1",
                    "checkoutRequestId": "ws_CO_2",
                    "resultCode": 1032,
                    "resultDesc": "Request cancelled by user",
                }
            }
        }
    ).encode()

    result = adapter.parse_callback(body)
    assert result.ok
    assert result.native_status == "1032"
    assert result.reference_id == "ws_CO_2"
    assert result.transaction_id == "m-1"
    assert result.external_id is None


@pytest.mark.parametrize(
    "body",
    [
        b"",
        b"not json",
        b"[]",
        b'{"Body": {}}',
        b'{"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1"}}}',
        b'{"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": "ok"}}}',
    ],
)
def test_parse_callback_malformed(adapter, body):
    result = adapter.parse_callback(body)
    assert result.error_kind == ErrorKind.MALFORMED_CALLBACK


@pytest.mark.parametrize("value", [float("nan"), float("inf"), "NaN", "-Infinity"])
def test_parse_callback_rejects_non_finite_amount(adapter, value):
    body = _callback(0, [{"Name": "Amount", "Value": value}])

    result = adapter.parse_callback(body)
    assert result.error_kind == ErrorKind.MALFORMED_CALLBACK


def test_parse_callback_rejects_deeply_nested_body(adapter):
    body = b'{"Body": ' + b"[" * 100000 + b"]" * 100000 + b"}"
    assert adapter.parse_callback(body).error_kind == ErrorKind.MALFORMED_CALLBACK

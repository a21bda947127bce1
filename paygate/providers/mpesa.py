from __future__ import annotations

import base64
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional

import httpx

from paygate.catalog.markets import Market, digits_only
from paygate.errors import PaymentError
from paygate.providers.base import ErrorKind, Provider, ProviderResult
from paygate.providers.config import MpesaConfig, mpesa_config
from paygate.providers.http import (
    HttpClient,
    HttpResponse,
    deadline_after,
    failure_kind,
    time_left,
)
from paygate.providers.tokens import Token, TokenManager, basic_auth, exchange_client_credentials
from paygate.schemas import PaymentRequest

logger = logging.getLogger("paygate.mpesa")

# Daraja timestamps are East Africa Time, no DST
EAT = timezone(timedelta(hours=3), "EAT")

# STK query answers this while the customer has not acted on the prompt yet
STILL_PROCESSING_CODE = "500.001.1001"


def daraja_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(EAT)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def stk_password(short_code: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{short_code}{passkey}{timestamp}".encode()).decode()


def whole_units(amount: Decimal) -> int:
    return int(Decimal(amount).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def callback_url_with_external_id(url: str, external_id: str) -> str:
    if not url:
        return url
    return str(httpx.URL(url).copy_merge_params({"external_id": external_id}))


def _get(d: Mapping[str, Any], name: str) -> Any:
    # Daraja uses PascalCase, some relays re-key callbacks in camelCase
    if name in d:
        return d[name]
    low = name.lower()
    for k, v in d.items():
        if isinstance(k, str) and k.lower() == low:
            return v
    return None


class MpesaAdapter:
    """
    Safaricom Daraja STK push (Lipa na M-Pesa Online).

    Amounts go over the wire as whole units of the market currency, rounded
    half-up. The caller's external_id rides on the CallBackURL query string
    because the STK callback body does not echo AccountReference.
    """

    provider = Provider.MPESA
    supports_disbursement = False
    supports_account_queries = False

    def __init__(
        self,
        cfg: Optional[MpesaConfig] = None,
        http: Optional[HttpClient] = None,
        *,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = lambda: datetime.now(EAT),
    ):
        self.cfg = cfg or mpesa_config()
        self.http = http or HttpClient(timeout_s=self.cfg.timeout_s)
        self._now = now
        self.tokens = TokenManager(
            Provider.MPESA,
            self._exchange,
            safety_margin_s=self.cfg.token_margin_s,
            clock=clock,
        )
        self._clock = clock

    # -----------------------
    # Credentials
    # -----------------------

    def _exchange(self, timeout: float | None) -> Token:
        if not (self.cfg.consumer_key and self.cfg.consumer_secret):
            raise PaymentError(ErrorKind.AUTH_FAILURE, "M-Pesa consumer key/secret are not configured.")
        headers = {"Authorization": basic_auth(self.cfg.consumer_key, self.cfg.consumer_secret)}
        return exchange_client_credentials(
            self.http,
            Provider.MPESA,
            "GET",
            self.cfg.oauth_url,
            headers,
            timeout=timeout,
            clock=self._clock,
        )

    def _password(self) -> tuple[str, str]:
        ts = daraja_timestamp(self._now())
        return stk_password(self.cfg.short_code, self.cfg.passkey, ts), ts

    # -----------------------
    # Wire
    # -----------------------

    def _post(self, url: str, body: dict[str, Any], until: float | None) -> tuple[HttpResponse, Token]:
        token = self.tokens.get_token(timeout=time_left(until))
        headers = {
            "Authorization": f"Bearer {token.value}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.http.post(url, headers=headers, json_body=body, timeout=time_left(until), debug=True)
        except httpx.TimeoutException as e:
            raise PaymentError(ErrorKind.TIMEOUT, "M-Pesa did not respond in time.") from e
        except httpx.HTTPError as e:
            raise PaymentError(
                ErrorKind.PROVIDER_UNAVAILABLE,
                f"M-Pesa request failed: {type(e).__name__}",
            ) from e
        return resp, token

    def _raise_for_status(self, resp: HttpResponse, token: Token) -> None:
        if resp.status_code in (200, 201):
            return
        kind = failure_kind(resp.status_code)
        if kind == ErrorKind.AUTH_FAILURE:
            self.tokens.invalidate(token)
        body = resp.json or {}
        raise PaymentError(
            kind,
            f"M-Pesa returned HTTP {resp.status_code}.",
            native_code=_str_or_none(_get(body, "errorCode")),
            native_message=_str_or_none(_get(body, "errorMessage")) or resp.text[:200] or None,
            http_status=resp.status_code,
        )

    def _failed(self, e: PaymentError, **fields: Any) -> ProviderResult:
        logger.warning(
            "mpesa call failed kind=%s native_code=%s http_status=%s",
            e.kind.value,
            e.native_code,
            e.http_status,
        )
        return ProviderResult(
            provider=Provider.MPESA,
            native_status=e.native_code,
            reason=e.native_message,
            error_kind=e.kind,
            error=e.message,
            http_status=e.http_status,
            **fields,
        )

    # -----------------------
    # Operations
    # -----------------------

    def initiate(
        self,
        request: PaymentRequest,
        market: Market,
        *,
        timeout: float | None = None,
    ) -> ProviderResult:
        amount = whole_units(request.amount)
        if request.amount < market.min_amount or amount < 1:
            return ProviderResult(
                provider=Provider.MPESA,
                external_id=request.external_id,
                error_kind=ErrorKind.VALIDATION,
                error=f"Minimum amount for {market.currency} is {market.min_amount}.",
            )

        until = deadline_after(timeout)
        phone = digits_only(request.phone_number)
        reference = (request.reference or request.external_id)[: market.max_reference_length]
        desc = (request.description or "Payment")[: market.max_description_length]

        try:
            password, ts = self._password()
            body = {
                "BusinessShortCode": self.cfg.short_code,
                "Password": password,
                "Timestamp": ts,
                "TransactionType": self.cfg.transaction_type,
                "Amount": amount,
                "PartyA": phone,
                "PartyB": self.cfg.short_code,
                "PhoneNumber": phone,
                "CallBackURL": callback_url_with_external_id(self.cfg.callback_url, request.external_id),
                "AccountReference": reference,
                "TransactionDesc": desc,
            }
            resp, token = self._post(self.cfg.stk_push_url, body, until)
            self._raise_for_status(resp, token)
        except PaymentError as e:
            return self._failed(e, external_id=request.external_id)

        data = resp.json or {}
        code = _str_or_none(_get(data, "ResponseCode"))
        if code != "0":
            return self._failed(
                PaymentError(
                    ErrorKind.REJECTED_BY_PROVIDER,
                    "M-Pesa declined the payment request.",
                    native_code=code,
                    native_message=_str_or_none(_get(data, "ResponseDescription") or _get(data, "errorMessage")),
                    http_status=resp.status_code,
                ),
                external_id=request.external_id,
                response=data,
            )

        checkout_id = _str_or_none(_get(data, "CheckoutRequestID"))
        logger.info(
            "mpesa stk push accepted checkout_request_id=%s external_id=%s",
            checkout_id,
            request.external_id,
        )
        return ProviderResult(
            provider=Provider.MPESA,
            reference_id=checkout_id,
            native_status="PROCESSING",
            external_id=request.external_id,
            transaction_id=_str_or_none(_get(data, "MerchantRequestID")),
            amount=Decimal(amount),
            currency=market.currency,
            phone_number=phone,
            reason=_str_or_none(_get(data, "CustomerMessage")),
            response=data,
        )

    def query_status(
        self,
        reference_id: str,
        market: Market | None = None,
        *,
        timeout: float | None = None,
    ) -> ProviderResult:
        until = deadline_after(timeout)
        try:
            password, ts = self._password()
            body = {
                "BusinessShortCode": self.cfg.short_code,
                "Password": password,
                "Timestamp": ts,
                "CheckoutRequestID": reference_id,
            }
            resp, token = self._post(self.cfg.stk_query_url, body, until)
            data = resp.json or {}
            if _str_or_none(_get(data, "errorCode")) == STILL_PROCESSING_CODE:
                return ProviderResult(
                    provider=Provider.MPESA,
                    reference_id=reference_id,
                    native_status="PROCESSING",
                    reason=_str_or_none(_get(data, "errorMessage")),
                    response=data,
                )
            self._raise_for_status(resp, token)
        except PaymentError as e:
            return self._failed(e, reference_id=reference_id)

        result_code = _str_or_none(_get(data, "ResultCode"))
        if result_code is None:
            return self._failed(
                PaymentError(
                    ErrorKind.REJECTED_BY_PROVIDER,
                    "M-Pesa status query was not accepted.",
                    native_code=_str_or_none(_get(data, "ResponseCode")),
                    native_message=_str_or_none(_get(data, "ResponseDescription")),
                    http_status=resp.status_code,
                ),
                reference_id=reference_id,
                response=data,
            )

        return ProviderResult(
            provider=Provider.MPESA,
            reference_id=reference_id,
            native_status=result_code,
            transaction_id=_str_or_none(_get(data, "MerchantRequestID")),
            currency=market.currency if market else None,
            reason=_str_or_none(_get(data, "ResultDesc")),
            response=data,
        )

    def parse_callback(self, body: bytes, query: Mapping[str, str] | None = None) -> ProviderResult:
        try:
            payload = json.loads(body or b"")
        except (ValueError, UnicodeDecodeError, RecursionError):
            return _malformed("callback body is not JSON")
        if not isinstance(payload, dict):
            return _malformed("callback body is not an object")

        envelope = _get(payload, "Body")
        stk = _get(envelope, "stkCallback") if isinstance(envelope, dict) else None
        if not isinstance(stk, dict):
            return _malformed("missing Body.stkCallback")

        checkout_id = _str_or_none(_get(stk, "CheckoutRequestID"))
        code = _get(stk, "ResultCode")
        if not checkout_id or isinstance(code, bool) or not _is_code(code):
            return _malformed("missing CheckoutRequestID/ResultCode")

        items: dict[str, Any] = {}
        meta = _get(stk, "CallbackMetadata")
        if isinstance(meta, dict) and isinstance(_get(meta, "Item"), list):
            for item in _get(meta, "Item"):
                if isinstance(item, dict) and _get(item, "Name"):
                    items[str(_get(item, "Name"))] = _get(item, "Value")

        amount = None
        if items.get("Amount") is not None:
            try:
                amount = Decimal(str(items["Amount"]))
            except InvalidOperation:
                return _malformed("Amount is not a number")
            if not amount.is_finite():
                return _malformed("Amount is not finite")

        external_id = (query or {}).get("external_id") or _str_or_none(items.get("AccountReference"))

        return ProviderResult(
            provider=Provider.MPESA,
            reference_id=checkout_id,
            native_status=str(code).strip(),
            external_id=external_id,
            transaction_id=_str_or_none(items.get("MpesaReceiptNumber")) or _str_or_none(_get(stk, "MerchantRequestID")),
            amount=amount,
            phone_number=_str_or_none(items.get("PhoneNumber")),
            reason=_str_or_none(_get(stk, "ResultDesc")),
            response=payload,
        )


def _is_code(value: Any) -> bool:
    if isinstance(value, int):
        return True
    return isinstance(value, str) and value.strip().isdigit()


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _malformed(why: str) -> ProviderResult:
    logger.warning("mpesa callback rejected: %s", why)
    return ProviderResult(
        provider=Provider.MPESA,
        error_kind=ErrorKind.MALFORMED_CALLBACK,
        error=why,
    )

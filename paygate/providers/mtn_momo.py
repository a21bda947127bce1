from __future__ import annotations

import json
import logging
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional

import httpx

from paygate.catalog.markets import Market, digits_only
from paygate.errors import PaymentError
from paygate.providers.base import ErrorKind, Provider, ProviderResult
from paygate.providers.config import MomoConfig, momo_config
from paygate.providers.http import (
    HttpClient,
    HttpResponse,
    deadline_after,
    failure_kind,
    time_left,
)
from paygate.providers.tokens import Token, TokenManager, basic_auth, exchange_client_credentials
from paygate.schemas import PaymentRequest

logger = logging.getLogger("paygate.mtn_momo")


def decimal_string(amount: Decimal) -> str:
    # "100" not "1E+2", "100.5" not "100.50"
    return format(Decimal(amount).normalize(), "f")


def callback_url_with_reference(url: str, reference_id: str) -> str:
    if not url:
        return url
    return str(httpx.URL(url).copy_merge_params({"reference_id": reference_id}))


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Decimal for a provider amount, None when absent. Raises ValueError for
    anything that is not a finite number ("NaN", "Infinity", "lots").
    """
    if value is None:
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"amount is not a number: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"amount is not finite: {value!r}")
    return amount


class MtnMomoAdapter:
    """
    MTN MoMo Open API: collections (request-to-pay) and disbursements.

    Amounts are sent as decimal strings in major units. MTN answers 202 with
    an empty body and the X-Reference-Id we generated becomes the reference
    for status queries.

    Access tokens are scoped per product, so the adapter holds one
    TokenManager for collections and one for disbursements, each exchanged
    with that product's subscription key.
    """

    provider = Provider.MTN_MOMO
    supports_disbursement = True
    supports_account_queries = True

    def __init__(
        self,
        cfg: Optional[MomoConfig] = None,
        http: Optional[HttpClient] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or momo_config()
        self.http = http or HttpClient(timeout_s=self.cfg.timeout_s)
        self._clock = clock
        self.tokens = TokenManager(
            Provider.MTN_MOMO,
            lambda timeout: self._exchange(self.cfg.token_url, self.cfg.collection_key, timeout),
            safety_margin_s=self.cfg.token_margin_s,
            clock=clock,
        )
        self.disbursement_tokens = TokenManager(
            Provider.MTN_MOMO,
            lambda timeout: self._exchange(self.cfg.disbursement_token_url, self.cfg.disbursement_key, timeout),
            safety_margin_s=self.cfg.token_margin_s,
            clock=clock,
        )

    def _exchange(self, url: str, subscription_key: str, timeout: float | None) -> Token:
        cfg = self.cfg
        if not (cfg.api_user and cfg.api_key and subscription_key):
            raise PaymentError(ErrorKind.AUTH_FAILURE, "MTN MoMo API user/key are not configured.")
        headers = {
            "Authorization": basic_auth(cfg.api_user, cfg.api_key),
            "Ocp-Apim-Subscription-Key": subscription_key,
        }
        return exchange_client_credentials(
            self.http,
            Provider.MTN_MOMO,
            "POST",
            url,
            headers,
            timeout=timeout,
            clock=self._clock,
        )

    def target_environment(self, market: Market | None) -> Optional[str]:
        """
        X-Target-Environment for a call. In production it comes from the
        market (e.g. "mtnuganda"); None when there is no market to ask.
        """
        if self.cfg.mode != "production":
            return self.cfg.target_env
        if market is None:
            return None
        return market.target_environment or self.cfg.target_env

    def _needs_market(self, market: Market | None, **fields: Any) -> Optional[ProviderResult]:
        if self.target_environment(market) is not None:
            return None
        return ProviderResult(
            provider=Provider.MTN_MOMO,
            error_kind=ErrorKind.VALIDATION,
            error="A currency is required to reach the right MTN MoMo market.",
            **fields,
        )

    def wire_currency(self, currency: str) -> str:
        # MTN sandbox only accepts its test currency
        if self.cfg.mode == "sandbox" and self.cfg.sandbox_currency:
            return self.cfg.sandbox_currency
        return currency

    def _send(
        self,
        method: str,
        url: str,
        market: Market | None,
        until: float | None,
        *,
        tokens: TokenManager,
        subscription_key: str,
        extra_headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> tuple[HttpResponse, Token]:
        token = tokens.get_token(timeout=time_left(until))
        headers = {
            "Authorization": f"Bearer {token.value}",
            "X-Target-Environment": self.target_environment(market) or self.cfg.target_env,
            "Ocp-Apim-Subscription-Key": subscription_key,
        }
        headers.update(extra_headers or {})
        try:
            if method == "GET":
                resp = self.http.get(url, headers=headers, timeout=time_left(until), debug=True)
            else:
                headers["Content-Type"] = "application/json"
                resp = self.http.post(url, headers=headers, json_body=body, timeout=time_left(until), debug=True)
        except httpx.TimeoutException as e:
            raise PaymentError(ErrorKind.TIMEOUT, "MTN MoMo did not respond in time.") from e
        except httpx.HTTPError as e:
            raise PaymentError(
                ErrorKind.PROVIDER_UNAVAILABLE,
                f"MTN MoMo request failed: {type(e).__name__}",
            ) from e
        return resp, token

    def _collection_get(self, url: str, market: Market | None, until: float | None) -> tuple[HttpResponse, Token]:
        resp, token = self._send(
            "GET",
            url,
            market,
            until,
            tokens=self.tokens,
            subscription_key=self.cfg.collection_key,
        )
        self._raise_for_status(resp, token, self.tokens, accept=(200,))
        return resp, token

    @staticmethod
    def _raise_for_status(
        resp: HttpResponse,
        token: Token,
        tokens: TokenManager,
        accept: tuple[int, ...],
    ) -> None:
        if resp.status_code in accept:
            return
        kind = failure_kind(resp.status_code)
        if kind == ErrorKind.AUTH_FAILURE:
            tokens.invalidate(token)
        body = resp.json or {}
        raise PaymentError(
            kind,
            f"MTN MoMo returned HTTP {resp.status_code}.",
            native_code=_str_or_none(body.get("code")),
            native_message=_str_or_none(body.get("message")) or resp.text[:200] or None,
            http_status=resp.status_code,
        )

    def _failed(self, e: PaymentError, **fields: Any) -> ProviderResult:
        logger.warning(
            "mtn_momo call failed kind=%s native_code=%s http_status=%s",
            e.kind.value,
            e.native_code,
            e.http_status,
        )
        return ProviderResult(
            provider=Provider.MTN_MOMO,
            native_status=e.native_code,
            reason=e.native_message,
            error_kind=e.kind,
            error=e.message,
            http_status=e.http_status,
            **fields,
        )

    def _below_minimum(self, request: PaymentRequest, market: Market) -> Optional[ProviderResult]:
        if request.amount >= market.min_amount:
            return None
        return ProviderResult(
            provider=Provider.MTN_MOMO,
            external_id=request.external_id,
            error_kind=ErrorKind.VALIDATION,
            error=f"Minimum amount for {market.currency} is {market.min_amount}.",
        )

    def _transfer_body(self, request: PaymentRequest, market: Market, party_key: str) -> dict[str, Any]:
        note = (request.reference or request.external_id)[: market.max_reference_length]
        message = (request.description or note)[: market.max_description_length]
        return {
            "amount": decimal_string(request.amount),
            "currency": self.wire_currency(market.currency),
            "externalId": request.external_id,
            party_key: {"partyIdType": "MSISDN", "partyId": digits_only(request.phone_number)},
            "payerMessage": message,
            "payeeNote": note,
        }

    def _post_transfer(
        self,
        url: str,
        request: PaymentRequest,
        market: Market,
        tokens: TokenManager,
        subscription_key: str,
        party_key: str,
        timeout: float | None,
    ) -> ProviderResult:
        low = self._below_minimum(request, market)
        if low is not None:
            return low

        until = deadline_after(timeout)
        reference_id = str(uuid.uuid4())
        extra = {"X-Reference-Id": reference_id}
        if self.cfg.callback_url:
            extra["X-Callback-Url"] = callback_url_with_reference(self.cfg.callback_url, reference_id)

        try:
            resp, token = self._send(
                "POST",
                url,
                market,
                until,
                tokens=tokens,
                subscription_key=subscription_key,
                extra_headers=extra,
                body=self._transfer_body(request, market, party_key),
            )
            self._raise_for_status(resp, token, tokens, accept=(200, 201, 202))
        except PaymentError as e:
            return self._failed(e, reference_id=reference_id, external_id=request.external_id)

        logger.info(
            "mtn_momo request accepted reference_id=%s external_id=%s target=%s",
            reference_id,
            request.external_id,
            self.target_environment(market),
        )
        return ProviderResult(
            provider=Provider.MTN_MOMO,
            reference_id=reference_id,
            native_status="PENDING",
            external_id=request.external_id,
            amount=request.amount,
            currency=market.currency,
            phone_number=digits_only(request.phone_number),
            response=resp.json,
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
        return self._post_transfer(
            self.cfg.request_to_pay_url,
            request,
            market,
            self.tokens,
            self.cfg.collection_key,
            "payer",
            timeout,
        )

    def send_money(
        self,
        request: PaymentRequest,
        market: Market,
        *,
        timeout: float | None = None,
    ) -> ProviderResult:
        return self._post_transfer(
            self.cfg.transfer_url,
            request,
            market,
            self.disbursement_tokens,
            self.cfg.disbursement_key,
            "payee",
            timeout,
        )

    def query_status(
        self,
        reference_id: str,
        market: Market | None = None,
        *,
        timeout: float | None = None,
    ) -> ProviderResult:
        missing = self._needs_market(market, reference_id=reference_id)
        if missing is not None:
            return missing

        until = deadline_after(timeout)
        try:
            resp, _ = self._collection_get(f"{self.cfg.request_to_pay_url}/{reference_id}", market, until)
        except PaymentError as e:
            return self._failed(e, reference_id=reference_id)

        data = resp.json or {}
        status = _str_or_none(data.get("status"))
        if status is None:
            return self._failed(
                PaymentError(
                    ErrorKind.UNKNOWN,
                    "MTN MoMo status response has no status.",
                    http_status=resp.status_code,
                ),
                reference_id=reference_id,
                response=data,
            )
        return self._status_result(data, reference_id, status.upper())

    def account_balance(
        self,
        market: Market | None = None,
        *,
        timeout: float | None = None,
    ) -> ProviderResult:
        """Collection account balance; `amount`/`currency` carry the answer."""
        missing = self._needs_market(market)
        if missing is not None:
            return missing

        until = deadline_after(timeout)
        try:
            resp, _ = self._collection_get(self.cfg.balance_url, market, until)
        except PaymentError as e:
            return self._failed(e)

        data = resp.json or {}
        try:
            balance = parse_amount(data.get("availableBalance"))
        except ValueError as exc:
            balance = None
            logger.warning("mtn_momo balance unreadable: %s", exc)
        if balance is None:
            return self._failed(
                PaymentError(
                    ErrorKind.UNKNOWN,
                    "MTN MoMo balance response has no usable availableBalance.",
                    http_status=resp.status_code,
                ),
                response=data,
            )
        return ProviderResult(
            provider=Provider.MTN_MOMO,
            amount=balance,
            currency=_str_or_none(data.get("currency")),
            response=data,
        )

    def validate_account_holder(
        self,
        phone_number: str,
        market: Market,
        *,
        timeout: float | None = None,
    ) -> ProviderResult:
        """
        KYC check: is `phone_number` an active MoMo wallet? native_status is
        "ACTIVE" or "INACTIVE".
        """
        phone = digits_only(phone_number)
        missing = self._needs_market(market, phone_number=phone)
        if missing is not None:
            return missing

        until = deadline_after(timeout)
        try:
            resp, _ = self._collection_get(f"{self.cfg.account_holder_url}/{phone}/active", market, until)
        except PaymentError as e:
            return self._failed(e, phone_number=phone)

        data = resp.json or {}
        active = data.get("result") is True
        return ProviderResult(
            provider=Provider.MTN_MOMO,
            native_status="ACTIVE" if active else "INACTIVE",
            phone_number=phone,
            currency=market.currency,
            response=data,
        )

    def parse_callback(self, body: bytes, query: Mapping[str, str] | None = None) -> ProviderResult:
        try:
            payload = json.loads(body or b"")
        except (ValueError, UnicodeDecodeError, RecursionError):
            return _malformed("callback body is not JSON")
        if not isinstance(payload, dict):
            return _malformed("callback body is not an object")

        status = _str_or_none(payload.get("status"))
        if status is None:
            return _malformed("missing status")

        reference_id = _str_or_none(payload.get("referenceId")) or (query or {}).get("reference_id")
        if not reference_id and not _str_or_none(payload.get("externalId")):
            return _malformed("no referenceId or externalId")

        try:
            parse_amount(payload.get("amount"))
        except ValueError as exc:
            return _malformed(str(exc))

        return self._status_result(payload, reference_id, status.upper())

    @staticmethod
    def _status_result(data: dict[str, Any], reference_id: Optional[str], status: str) -> ProviderResult:
        try:
            amount = parse_amount(data.get("amount"))
        except ValueError:
            amount = None

        party = data.get("payer") or data.get("payee") or {}
        reason = data.get("reason")
        if isinstance(reason, dict):
            reason = reason.get("message") or reason.get("code")

        return ProviderResult(
            provider=Provider.MTN_MOMO,
            reference_id=reference_id,
            native_status=status,
            external_id=_str_or_none(data.get("externalId")),
            transaction_id=_str_or_none(data.get("financialTransactionId")),
            amount=amount,
            currency=_str_or_none(data.get("currency")),
            phone_number=_str_or_none(party.get("partyId")) if isinstance(party, dict) else None,
            reason=_str_or_none(reason),
            response=data,
        )


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _malformed(why: str) -> ProviderResult:
    logger.warning("mtn_momo callback rejected: %s", why)
    return ProviderResult(
        provider=Provider.MTN_MOMO,
        error_kind=ErrorKind.MALFORMED_CALLBACK,
        error=why,
    )

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Mapping, Optional, Union

from paygate.catalog.markets import ProviderRegistry, registry_from_settings
from paygate.errors import (
    STATUS_MESSAGES,
    PaymentError,
    canonical_status,
    generic_status_message,
    kind_message,
    status_message,
)
from paygate.normalize import clamp_fields, normalize_phone
from paygate.providers.base import ErrorKind, PaymentAdapter, PaymentStatus, Provider, ProviderResult
from paygate.providers.config import enabled_providers
from paygate.providers.factory import build_adapters
from paygate.providers.http import HttpClient, time_left
from paygate.schemas import (
    AccountBalanceResponse,
    AccountHolderResponse,
    PaymentRequest,
    PaymentResponse,
    new_transaction_id,
)
from paygate.services.metrics import increment_payment_attempt
from paygate.services.redaction import mask_phone, redact_dict
from paygate.settings import Settings, settings as default_settings

logger = logging.getLogger("paygate")

_CLOSED = (PaymentStatus.FAILED, PaymentStatus.CANCELLED)


class PaymentOrchestrator:
    """
    Public facade over the provider adapters.

    Business failures come back as PaymentResponse(success=False, ...), never
    as exceptions. The orchestrator keeps no request history: submitting the
    same external_id twice starts two payments, callers must deduplicate.

    `deadline` is an absolute time.monotonic() instant. What is left of it
    bounds every network call; a deadline that has already passed returns a
    timeout response before any network I/O.
    """

    def __init__(self, registry: ProviderRegistry, adapters: Mapping[Provider, PaymentAdapter]):
        self.registry = registry
        self.adapters: dict[Provider, PaymentAdapter] = dict(adapters)

    @classmethod
    def from_settings(
        cls,
        s: Optional[Settings] = None,
        http: Optional[HttpClient] = None,
    ) -> "PaymentOrchestrator":
        s = s if s is not None else default_settings
        registry = registry_from_settings(s).restrict(enabled_providers(s))
        return cls(registry, build_adapters(s, http))

    # -----------------------
    # Queries
    # -----------------------

    def available_providers(self, currency: str) -> list[Provider]:
        return [p for p in self.registry.providers_for_currency(currency) if p in self.adapters]

    # -----------------------
    # Payments
    # -----------------------

    def process_payment(self, request: PaymentRequest, *, deadline: float | None = None) -> PaymentResponse:
        return self._run(request, deadline, disbursement=False)

    def send_money(self, request: PaymentRequest, *, deadline: float | None = None) -> PaymentResponse:
        return self._run(request, deadline, disbursement=True)

    def check_status(
        self,
        provider: Union[Provider, str],
        provider_reference: str,
        *,
        currency: str | None = None,
        deadline: float | None = None,
    ) -> PaymentResponse:
        transaction_id = new_transaction_id()
        resolved = provider if isinstance(provider, Provider) else Provider.parse(provider)
        adapter = self.adapters.get(resolved) if resolved else None
        base = {
            "transaction_id": transaction_id,
            "provider": resolved,
            "currency": currency.upper() if currency else None,
            "provider_reference": provider_reference,
        }
        if adapter is None:
            return self._failure(ErrorKind.UNSUPPORTED_PROVIDER, kind_message(ErrorKind.UNSUPPORTED_PROVIDER), **base)

        if not (provider_reference or "").strip():
            return self._failure(ErrorKind.VALIDATION, "Provider reference is required.", **base)

        market = self.registry.market_for(resolved, currency) if currency else None
        try:
            timeout = time_left(deadline)
        except PaymentError as e:
            return self._failure(e.kind, kind_message(e.kind), **base)

        result = adapter.query_status(provider_reference, market, timeout=timeout)
        if not result.ok:
            return self._from_failed_result(result, **base)

        status = canonical_status(resolved, result.native_status)
        return PaymentResponse(
            success=status not in _CLOSED,
            transaction_id=transaction_id,
            provider=resolved,
            status=status,
            message=status_message(resolved, result.native_status),
            amount=result.amount,
            currency=result.currency or base["currency"],
            phone_number=result.phone_number,
            external_id=result.external_id,
            provider_reference=result.reference_id or provider_reference,
            provider_transaction_id=result.transaction_id,
            metadata=_provider_metadata({}, result),
        )

    # -----------------------
    # Account queries
    # -----------------------

    def account_balance(
        self,
        provider: Union[Provider, str],
        *,
        currency: str | None = None,
        deadline: float | None = None,
    ) -> AccountBalanceResponse:
        """
        Balance of the merchant's collection account. `currency` picks the
        market (and so the target environment) in production.
        """
        resolved = provider if isinstance(provider, Provider) else Provider.parse(provider)
        base = {"provider": resolved, "currency": currency.upper() if currency else None}

        adapter = self._account_adapter(resolved)
        if adapter is None:
            return _account_failure(AccountBalanceResponse, ErrorKind.UNSUPPORTED_PROVIDER, **base)

        market = None
        if currency:
            market = self.registry.market_for(resolved, currency)
            if market is None:
                return _account_failure(
                    AccountBalanceResponse,
                    ErrorKind.VALIDATION,
                    f"{base['currency']} is not supported by {resolved.value}.",
                    **base,
                )

        try:
            result = adapter.account_balance(market, timeout=time_left(deadline))
        except PaymentError as e:
            return _account_failure(AccountBalanceResponse, e.kind, **base)
        if not result.ok:
            return _account_failure(AccountBalanceResponse, result.error_kind, _result_message(result), **base)

        logger.info("balance fetched provider=%s currency=%s", resolved.value, result.currency)
        return AccountBalanceResponse(
            success=True,
            provider=resolved,
            available_balance=result.amount,
            currency=result.currency or base["currency"],
            message="Balance retrieved.",
        )

    def validate_account_holder(
        self,
        phone_number: str,
        currency: str,
        *,
        provider: Union[Provider, str, None] = None,
        deadline: float | None = None,
    ) -> AccountHolderResponse:
        """Ask the provider whether `phone_number` is an active wallet."""
        if provider is not None:
            resolved = provider if isinstance(provider, Provider) else Provider.parse(provider)
        else:
            resolved = self.registry.detect(phone_number, currency)
        base = {"provider": resolved, "phone_number": phone_number}

        adapter = self._account_adapter(resolved)
        if adapter is None:
            return _account_failure(AccountHolderResponse, ErrorKind.UNSUPPORTED_PROVIDER, **base)

        market = self.registry.market_for(resolved, currency, phone_number)
        if market is None:
            return _account_failure(
                AccountHolderResponse,
                ErrorKind.VALIDATION,
                f"{(currency or '').upper()} is not supported by {resolved.value}.",
                **base,
            )

        try:
            phone = normalize_phone(phone_number, market)
            result = adapter.validate_account_holder(phone, market, timeout=time_left(deadline))
        except PaymentError as e:
            return _account_failure(AccountHolderResponse, e.kind, e.message, **base)
        base["phone_number"] = phone
        if not result.ok:
            return _account_failure(AccountHolderResponse, result.error_kind, _result_message(result), **base)

        active = result.native_status == "ACTIVE"
        logger.info(
            "account holder checked provider=%s market=%s phone=%s active=%s",
            resolved.value,
            market.key,
            mask_phone(phone),
            active,
        )
        return AccountHolderResponse(
            success=True,
            active=active,
            message="The account is active." if active else "The account is not active.",
            **base,
        )

    def _account_adapter(self, provider: Optional[Provider]) -> Optional[PaymentAdapter]:
        adapter = self.adapters.get(provider) if provider else None
        if adapter is None or not getattr(adapter, "supports_account_queries", False):
            return None
        return adapter

    # -----------------------
    # Internals
    # -----------------------

    def _resolve(self, request: PaymentRequest) -> Optional[Provider]:
        if request.provider is not None:
            return request.provider if request.provider in self.adapters else None
        return self.registry.detect(request.phone_number, request.currency)

    def _run(self, request: PaymentRequest, deadline: float | None, *, disbursement: bool) -> PaymentResponse:
        transaction_id = new_transaction_id()
        base = {
            "transaction_id": transaction_id,
            "amount": request.amount,
            "currency": request.currency,
            "phone_number": request.phone_number,
            "external_id": request.external_id,
            "metadata": dict(request.metadata),
        }

        # 1. provider
        provider = self._resolve(request)
        adapter = self.adapters.get(provider) if provider else None
        if adapter is None or (disbursement and not adapter.supports_disbursement):
            logger.info(
                "no provider for payment external_id=%s currency=%s phone=%s detected=%s",
                request.external_id,
                request.currency,
                mask_phone(request.phone_number),
                provider.value if provider else None,
            )
            return self._failure(
                ErrorKind.UNSUPPORTED_PROVIDER,
                kind_message(ErrorKind.UNSUPPORTED_PROVIDER),
                provider=provider,
                **base,
            )
        base["provider"] = provider

        # 2. currency must have a market for this provider
        market = self.registry.market_for(provider, request.currency, request.phone_number)
        if market is None:
            return self._failure(
                ErrorKind.VALIDATION,
                f"{request.currency} is not supported by {provider.value}.",
                **base,
            )

        # 3. phone + text fields
        try:
            phone = normalize_phone(request.phone_number, market)
        except PaymentError as e:
            return self._failure(e.kind, e.message, **base)
        base["phone_number"] = phone
        wire_request = clamp_fields(request.model_copy(update={"phone_number": phone}), market)

        # 4. adapter call
        try:
            timeout = time_left(deadline)
        except PaymentError as e:
            return self._failure(e.kind, kind_message(e.kind), **base)

        if disbursement:
            result = adapter.send_money(wire_request, market, timeout=timeout)
        else:
            result = adapter.initiate(wire_request, market, timeout=timeout)

        if not result.ok:
            return self._from_failed_result(result, **base)

        increment_payment_attempt(provider.value, "accepted")
        logger.info(
            "payment initiated provider=%s market=%s transaction_id=%s external_id=%s reference=%s phone=%s",
            provider.value,
            market.key,
            transaction_id,
            request.external_id,
            result.reference_id,
            mask_phone(phone),
        )
        status = canonical_status(provider, result.native_status)
        return PaymentResponse(
            success=True,
            status=status,
            message=_initiated_message(status, disbursement),
            provider_reference=result.reference_id,
            provider_transaction_id=result.transaction_id,
            **{**base, "metadata": _provider_metadata(base["metadata"], result)},
        )

    def _from_failed_result(self, result: ProviderResult, **base: Any) -> PaymentResponse:
        kind = result.error_kind or ErrorKind.UNKNOWN
        diagnostics = {
            "kind": kind.value,
            "native_code": result.native_status,
            "native_message": result.reason,
            "http_status": result.http_status,
            "detail": result.error,
        }
        metadata = _provider_metadata(base.pop("metadata", {}) or {}, result)
        metadata["diagnostics"] = redact_dict({k: v for k, v in diagnostics.items() if v is not None})

        provider = base.get("provider") or result.provider
        base["provider"] = provider
        base.setdefault("provider_reference", result.reference_id)

        if kind == ErrorKind.VALIDATION and result.error:
            message = result.error
        elif kind == ErrorKind.REJECTED_BY_PROVIDER and (result.native_status or "").upper() in STATUS_MESSAGES.get(provider, {}):
            message = status_message(provider, result.native_status)
        else:
            message = kind_message(kind)

        return self._failure(kind, message, metadata=metadata, **base)

    @staticmethod
    def _failure(kind: ErrorKind, message: str, **fields: Any) -> PaymentResponse:
        provider = fields.get("provider")
        increment_payment_attempt(provider.value if provider else "none", kind.value)
        fields.setdefault("metadata", {})
        logger.info(
            "payment not accepted kind=%s provider=%s transaction_id=%s external_id=%s",
            kind.value,
            provider.value if provider else None,
            fields.get("transaction_id"),
            fields.get("external_id"),
        )
        return PaymentResponse(
            success=False,
            status=PaymentStatus.FAILED,
            message=message,
            error_kind=kind,
            **fields,
        )


def _provider_metadata(metadata: dict[str, Any], result: ProviderResult) -> dict[str, Any]:
    out = dict(metadata)
    if result.response:
        out["provider_response"] = redact_dict(result.response)
    return out


def _initiated_message(status: PaymentStatus, disbursement: bool) -> str:
    if status != PaymentStatus.PENDING:
        return generic_status_message(status)
    if disbursement:
        return "The transfer has been submitted and is being processed."
    return "A payment prompt has been sent to the customer's phone. Waiting for confirmation."


def _result_message(result: ProviderResult) -> str:
    kind = result.error_kind or ErrorKind.UNKNOWN
    if kind == ErrorKind.VALIDATION and result.error:
        return result.error
    return kind_message(kind)


def _account_failure(response_cls, kind: ErrorKind, message: str | None = None, **fields: Any):
    provider = fields.get("provider")
    logger.info(
        "account query failed kind=%s provider=%s",
        kind.value,
        provider.value if provider else None,
    )
    return response_cls(success=False, message=message or kind_message(kind), error_kind=kind, **fields)


@lru_cache
def get_gateway() -> PaymentOrchestrator:
    return PaymentOrchestrator.from_settings()

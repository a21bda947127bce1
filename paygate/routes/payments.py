# paygate/routes/payments.py
from __future__ import annotations

import time
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from paygate.orchestrator import PaymentOrchestrator, get_gateway
from paygate.providers.base import Provider
from paygate.schemas import (
    AccountBalanceResponse,
    AccountHolderResponse,
    FxQuoteResponse,
    PaymentRequest,
    PaymentResponse,
    ProviderListResponse,
)
from paygate.services.fx import convert_currency

router = APIRouter(prefix="/v1", tags=["payments"])


def request_deadline(
    x_request_timeout: Optional[float] = Header(default=None, alias="X-Request-Timeout"),
) -> Optional[float]:
    # seconds the caller is willing to wait, turned into a monotonic deadline
    if x_request_timeout is None:
        return None
    if x_request_timeout <= 0:
        raise HTTPException(status_code=400, detail="INVALID_REQUEST_TIMEOUT")
    return time.monotonic() + x_request_timeout


@router.post("/payments", response_model=PaymentResponse)
def create_payment(
    body: PaymentRequest,
    deadline: Optional[float] = Depends(request_deadline),
    gateway: PaymentOrchestrator = Depends(get_gateway),
):
    return gateway.process_payment(body, deadline=deadline)


@router.post("/payments/disbursements", response_model=PaymentResponse)
def create_disbursement(
    body: PaymentRequest,
    deadline: Optional[float] = Depends(request_deadline),
    gateway: PaymentOrchestrator = Depends(get_gateway),
):
    return gateway.send_money(body, deadline=deadline)


@router.get("/payments/{provider}/{provider_reference}", response_model=PaymentResponse)
def get_payment_status(
    provider: str,
    provider_reference: str,
    currency: Optional[str] = None,
    deadline: Optional[float] = Depends(request_deadline),
    gateway: PaymentOrchestrator = Depends(get_gateway),
):
    return gateway.check_status(provider, provider_reference, currency=currency, deadline=deadline)


@router.get("/providers", response_model=ProviderListResponse)
def list_providers(currency: str, gateway: PaymentOrchestrator = Depends(get_gateway)):
    cur = currency.strip().upper()
    if len(cur) != 3:
        raise HTTPException(status_code=400, detail="INVALID_CURRENCY")
    providers: list[Provider] = gateway.available_providers(cur)
    return ProviderListResponse(currency=cur, providers=providers)


@router.get("/fx/convert", response_model=FxQuoteResponse)
def fx_convert(amount: Decimal, from_currency: str, to_currency: str):
    try:
        converted = convert_currency(amount, from_currency, to_currency)
    except ValueError:
        raise HTTPException(status_code=404, detail="FX_RATE_NOT_CONFIGURED")
    return FxQuoteResponse(
        from_currency=from_currency.strip().upper(),
        to_currency=to_currency.strip().upper(),
        amount=amount,
        converted_amount=converted,
    )


@router.get("/providers/{provider}/balance", response_model=AccountBalanceResponse)
def get_provider_balance(
    provider: str,
    currency: Optional[str] = None,
    deadline: Optional[float] = Depends(request_deadline),
    gateway: PaymentOrchestrator = Depends(get_gateway),
):
    return gateway.account_balance(provider, currency=currency, deadline=deadline)


@router.get("/accountholders/{phone_number}", response_model=AccountHolderResponse)
def get_account_holder(
    phone_number: str,
    currency: str,
    provider: Optional[str] = None,
    deadline: Optional[float] = Depends(request_deadline),
    gateway: PaymentOrchestrator = Depends(get_gateway),
):
    return gateway.validate_account_holder(phone_number, currency, provider=provider, deadline=deadline)

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from paygate.providers.base import ErrorKind, PaymentStatus, Provider


def new_transaction_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -------- REQUESTS --------
class PaymentRequest(BaseModel):
    # major units (e.g. 100 == KES 100); adapters convert to their wire format
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    phone_number: str = Field(min_length=1)
    description: str = ""
    external_id: str = Field(min_length=1, max_length=128)
    reference: Optional[str] = None
    provider: Optional[Provider] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("provider", mode="before")
    @classmethod
    def _parse_provider(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Provider.parse(v) or v
        return v


# -------- RESPONSES --------
class PaymentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    transaction_id: str = Field(default_factory=new_transaction_id)
    provider: Optional[Provider] = None
    status: PaymentStatus
    message: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    phone_number: Optional[str] = None
    external_id: Optional[str] = None
    provider_reference: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class CallbackEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    status: PaymentStatus
    provider: Optional[Provider] = None
    external_id: Optional[str] = None
    provider_reference: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    phone_number: Optional[str] = None
    native_status: Optional[str] = None
    reason: Optional[str] = None
    message: str = ""


class ProviderListResponse(BaseModel):
    currency: str
    providers: list[Provider]


class FxQuoteResponse(BaseModel):
    from_currency: str
    to_currency: str
    amount: Decimal
    converted_amount: Decimal


class AccountBalanceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    provider: Optional[Provider] = None
    available_balance: Optional[Decimal] = None
    currency: Optional[str] = None
    message: str = ""
    error_kind: Optional[ErrorKind] = None


class AccountHolderResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    provider: Optional[Provider] = None
    phone_number: Optional[str] = None
    # None when the provider could not be asked
    active: Optional[bool] = None
    message: str = ""
    error_kind: Optional[ErrorKind] = None

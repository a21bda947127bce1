from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Optional, Protocol

if TYPE_CHECKING:
    from paygate.catalog.markets import Market
    from paygate.schemas import PaymentRequest


class Provider(str, Enum):
    MPESA = "mpesa"
    MTN_MOMO = "mtn_momo"
    AIRTEL_MONEY = "airtel_money"
    ORANGE_MONEY = "orange_money"

    @classmethod
    def parse(cls, value: str | None) -> Optional["Provider"]:
        v = (value or "").strip().lower().replace("-", "_").replace(" ", "_")
        if v in ("momo", "mtn"):
            v = "mtn_momo"
        try:
            return cls(v)
        except ValueError:
            return None


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    AUTH_FAILURE = "auth_failure"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    REJECTED_BY_PROVIDER = "rejected_by_provider"
    TIMEOUT = "timeout"
    MALFORMED_CALLBACK = "malformed_callback"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.AUTH_FAILURE, ErrorKind.PROVIDER_UNAVAILABLE, ErrorKind.TIMEOUT}
)


@dataclass(frozen=True)
class ProviderResult:
    provider: Provider
    reference_id: Optional[str] = None
    native_status: Optional[str] = None

    # callback / status-query details, when the provider reports them
    external_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    phone_number: Optional[str] = None
    reason: Optional[str] = None

    # raw provider payload, internal only
    response: Optional[dict[str, Any]] = None

    # None => call went through
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    http_status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def retryable(self) -> bool:
        return self.error_kind in RETRYABLE_KINDS


class PaymentAdapter(Protocol):
    provider: Provider
    supports_disbursement: bool
    supports_account_queries: bool

    def initiate(
        self,
        request: PaymentRequest,
        market: Market,
        *,
        timeout: float | None = None,
    ) -> ProviderResult: ...

    def query_status(
        self,
        reference_id: str,
        market: Market | None = None,
        *,
        timeout: float | None = None,
    ) -> ProviderResult: ...

    def parse_callback(
        self,
        body: bytes,
        query: Mapping[str, str] | None = None,
    ) -> ProviderResult: ...

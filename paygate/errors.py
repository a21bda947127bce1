from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from paygate.providers.base import ErrorKind, PaymentStatus, Provider, RETRYABLE_KINDS

if TYPE_CHECKING:
    from paygate.schemas import PaymentResponse

logger = logging.getLogger("paygate")


class PaymentError(Exception):
    """
    Raised at the token / normalizer seams and caught by adapters and the
    orchestrator, which turn it into a canonical result. Never escapes the
    public facades.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        native_code: Optional[str] = None,
        native_message: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.native_code = native_code
        self.native_message = native_message
        self.http_status = http_status

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def diagnostics(self) -> dict:
        out = {
            "kind": self.kind.value,
            "native_code": self.native_code,
            "native_message": self.native_message,
            "http_status": self.http_status,
        }
        return {k: v for k, v in out.items() if v is not None}


# -----------------------
# Native status -> canonical status
# -----------------------

MPESA_STATUS: dict[str, PaymentStatus] = {
    "0": PaymentStatus.SUCCESS,
    "1": PaymentStatus.FAILED,  # insufficient balance
    "1001": PaymentStatus.FAILED,  # subscriber locked / SIM busy
    "1019": PaymentStatus.FAILED,  # transaction expired
    "1025": PaymentStatus.FAILED,
    "1032": PaymentStatus.CANCELLED,  # cancelled by user
    "1037": PaymentStatus.FAILED,  # handset unreachable
    "2001": PaymentStatus.FAILED,  # wrong PIN
    "9999": PaymentStatus.FAILED,
    "PROCESSING": PaymentStatus.PENDING,
}

MTN_MOMO_STATUS: dict[str, PaymentStatus] = {
    "SUCCESSFUL": PaymentStatus.SUCCESS,
    "PENDING": PaymentStatus.PENDING,
    "FAILED": PaymentStatus.FAILED,
    "REJECTED": PaymentStatus.FAILED,
    "TIMEOUT": PaymentStatus.CANCELLED,
}

NATIVE_STATUS: dict[Provider, dict[str, PaymentStatus]] = {
    Provider.MPESA: MPESA_STATUS,
    Provider.MTN_MOMO: MTN_MOMO_STATUS,
}

MPESA_MESSAGES: dict[str, str] = {
    "0": "Payment completed successfully.",
    "1": "The customer has insufficient M-Pesa balance.",
    "1001": "The customer's phone is busy with another transaction. Please try again.",
    "1019": "The payment request expired before it was completed.",
    "1025": "The payment could not be completed. Please try again.",
    "1032": "The payment was cancelled by the customer.",
    "1037": "The customer's phone could not be reached. Please try again.",
    "2001": "The customer entered an incorrect M-Pesa PIN.",
    "9999": "The payment request failed. Please try again.",
    "PROCESSING": "The payment is still being processed.",
}

MTN_MOMO_MESSAGES: dict[str, str] = {
    "SUCCESSFUL": "Payment completed successfully.",
    "PENDING": "The payment is being processed.",
    "FAILED": "The payment failed. Please try again.",
    "REJECTED": "The payment was rejected. Please check the mobile money account.",
    "TIMEOUT": "The payment timed out before the customer approved it.",
}

STATUS_MESSAGES: dict[Provider, dict[str, str]] = {
    Provider.MPESA: MPESA_MESSAGES,
    Provider.MTN_MOMO: MTN_MOMO_MESSAGES,
}

KIND_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "The payment request is not valid.",
    ErrorKind.UNSUPPORTED_PROVIDER: "No mobile money provider is available for this phone number and currency.",
    ErrorKind.AUTH_FAILURE: "The payment provider could not authenticate this service. Please try again later.",
    ErrorKind.PROVIDER_UNAVAILABLE: "The payment provider is temporarily unavailable. Please try again shortly.",
    ErrorKind.REJECTED_BY_PROVIDER: "The payment was declined by the provider.",
    ErrorKind.TIMEOUT: "The payment provider did not respond in time. Please try again.",
    ErrorKind.MALFORMED_CALLBACK: "The payment notification could not be read.",
    ErrorKind.UNKNOWN: "The payment could not be processed.",
}

_GENERIC_STATUS_MESSAGES: dict[PaymentStatus, str] = {
    PaymentStatus.SUCCESS: "Payment completed successfully.",
    PaymentStatus.PENDING: "The payment is being processed.",
    PaymentStatus.FAILED: "The payment failed. Please try again.",
    PaymentStatus.CANCELLED: "The payment was cancelled.",
}


def _native_key(native: object) -> str:
    return str(native if native is not None else "").strip().upper()


def canonical_status(provider: Provider, native: object) -> PaymentStatus:
    table = NATIVE_STATUS.get(provider, {})
    # unknown native codes are treated as failures
    return table.get(_native_key(native), PaymentStatus.FAILED)


def status_message(provider: Provider, native: object, reason: Optional[str] = None) -> str:
    key = _native_key(native)
    message = STATUS_MESSAGES.get(provider, {}).get(key)
    if message:
        return message
    if reason and reason.strip():
        text = reason.strip().replace("_", " ")
        text = text[0].upper() + text[1:]
        return text if text.endswith(".") else text + "."
    return generic_status_message(canonical_status(provider, native))


def generic_status_message(status: PaymentStatus) -> str:
    return _GENERIC_STATUS_MESSAGES[status]


def kind_message(kind: ErrorKind) -> str:
    return KIND_MESSAGES.get(kind, KIND_MESSAGES[ErrorKind.UNKNOWN])


# -----------------------
# Retry policy (caller-side)
# -----------------------

@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for retryable failure kinds.

    Adapters never retry on their own; callers wrap the facade call they
    consider safe to repeat. Re-running `process_payment` while the first
    prompt is still in flight can push a second prompt to the customer, so
    callers should only retry it after checking their own records for the
    external_id.
    """

    max_attempts: int = 3
    base_delay_s: float = 0.5
    multiplier: float = 2.0
    max_delay_s: float = 8.0

    def delay_for(self, attempt: int) -> float:
        # attempt is 1-based; the delay follows that attempt
        delay = self.base_delay_s * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_delay_s)

    def should_retry(self, kind: Optional[ErrorKind], attempt: int) -> bool:
        return kind in RETRYABLE_KINDS and attempt < self.max_attempts

    def run(
        self,
        call: Callable[[], "PaymentResponse"],
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "PaymentResponse":
        attempt = 1
        while True:
            response = call()
            if response.success or not self.should_retry(response.error_kind, attempt):
                return response
            delay = self.delay_for(attempt)
            logger.info(
                "retrying payment call attempt=%s kind=%s delay_s=%.2f",
                attempt,
                response.error_kind.value if response.error_kind else None,
                delay,
            )
            sleep(delay)
            attempt += 1

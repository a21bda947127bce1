from __future__ import annotations

import logging
from typing import Optional

from paygate.catalog.markets import Market, to_international
from paygate.errors import PaymentError
from paygate.providers.base import ErrorKind
from paygate.schemas import PaymentRequest

logger = logging.getLogger("paygate")


def normalize_phone(raw: str | None, market: Market) -> str:
    """
    Return the international digits form (country code + subscriber number,
    no "+") for a phone number written in any human format.

    Accepted forms for a market with country code 254, trunk prefix 0 and
    9-digit subscriber numbers:

        +254 712 345 678, 00254712345678, 254712345678 -> 254712345678
        0712345678                                     -> 254712345678
        712345678                                      -> 254712345678
    """
    phone = to_international(raw, market)
    if phone is None:
        raise PaymentError(
            ErrorKind.VALIDATION,
            f"Phone number is not valid for {market.country} ({market.provider.value}).",
        )
    return phone


def _clamp(field: str, value: Optional[str], limit: int, market: Market) -> Optional[str]:
    if value is None or len(value) <= limit:
        return value
    logger.info(
        "field truncated market=%s field=%s length=%s limit=%s",
        market.key,
        field,
        len(value),
        limit,
    )
    return value[:limit]


def clamp_fields(request: PaymentRequest, market: Market) -> PaymentRequest:
    """
    Copy of `request` with description/reference cut to the market's wire
    limits. Reference falls back to external_id.
    """
    description = (request.description or "").strip()
    reference = (request.reference or "").strip() or request.external_id

    return request.model_copy(
        update={
            "description": _clamp("description", description, market.max_description_length, market),
            "reference": _clamp("reference", reference, market.max_reference_length, market),
        }
    )

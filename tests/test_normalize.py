from __future__ import annotations

import logging
from decimal import Decimal

import pytest

from paygate.errors import PaymentError
from paygate.normalize import clamp_fields, normalize_phone
from paygate.providers.base import ErrorKind, Provider
from paygate.schemas import PaymentRequest


def _market(registry, provider, currency):
    return registry.market_for(provider, currency)


@pytest.mark.parametrize(
    "provider,currency,local,international",
    [
        (Provider.MPESA, "KES", "0712345678", "+254712345678"),
        (Provider.MPESA, "KES", "712345678", "254 712 345 678"),
        (Provider.MTN_MOMO, "UGX", "0772-123-456", "00256772123456"),
        (Provider.MTN_MOMO, "GHS", "024 123 4567", "+233241234567"),
        (Provider.MTN_MOMO, "NGN", "08031234567", "+2348031234567"),
        (Provider.ORANGE_MONEY, "XOF", "07 12 34 56 78", "+2250712345678"),
    ],
)
def test_local_and_international_forms_agree(registry, provider, currency, local, international):
    market = _market(registry, provider, currency)
    assert normalize_phone(local, market) == normalize_phone(international, market)


def test_normalize_kenyan_number(registry):
    market = _market(registry, Provider.MPESA, "KES")
    assert normalize_phone("0712345678", market) == "254712345678"
    assert normalize_phone("(+254) 712-345-678", market) == "254712345678"


@pytest.mark.parametrize("raw", ["", "12345", "07123456789012", "+1 415 555 0100", "abc"])
def test_normalize_rejects_unfit_numbers(registry, raw):
    market = _market(registry, Provider.MPESA, "KES")
    with pytest.raises(PaymentError) as ei:
        normalize_phone(raw, market)
    assert ei.value.kind == ErrorKind.VALIDATION
    assert ei.value.retryable is False


def test_clamp_fields_truncates_to_market_limits(registry, caplog):
    market = _market(registry, Provider.MPESA, "KES")
    req = PaymentRequest(
        amount=Decimal("100"),
        currency="KES",
        phone_number="0712345678",
        description="Seasonal fertiliser order for farm block C",
        external_id="ORD-2024-000123",
    )

    caplog.set_level(logging.INFO, logger="paygate")
    clamped = clamp_fields(req, market)

    assert clamped.description == "Seasonal fert"
    assert len(clamped.description) == 13
    # reference defaults to the external id
    assert clamped.reference == "ORD-2024-000"
    assert len(clamped.reference) == 12
    # original request untouched
    assert req.description.startswith("Seasonal fertiliser")
    assert req.reference is None
    assert "field truncated" in caplog.text
    assert "field=description" in caplog.text


def test_clamp_fields_keeps_short_text(registry, caplog):
    market = _market(registry, Provider.MTN_MOMO, "UGX")
    req = PaymentRequest(
        amount=Decimal("5000"),
        currency="UGX",
        phone_number="0772123456",
        description="Seeds",
        external_id="ORD-1",
        reference="INV-9",
    )
    caplog.set_level(logging.INFO, logger="paygate")
    clamped = clamp_fields(req, market)
    assert clamped.description == "Seeds"
    assert clamped.reference == "INV-9"
    assert "field truncated" not in caplog.text

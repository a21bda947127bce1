from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from paygate.settings import settings

logger = logging.getLogger("paygate")


def parse_rates(raw: str | None) -> dict[tuple[str, str], Decimal]:
    """
    Parse "FROM:TO=rate" pairs (comma separated). Malformed items are skipped.
    """
    rates: dict[tuple[str, str], Decimal] = {}
    items = [i.strip().upper() for i in (raw or "").split(",") if i.strip()]
    for item in items:
        if "=" not in item:
            continue
        pair, rate_raw = item.split("=", 1)
        if "->" in pair:
            src, dst = pair.split("->", 1)
        elif ":" in pair:
            src, dst = pair.split(":", 1)
        else:
            continue
        src = src.strip()
        dst = dst.strip()
        try:
            rate = Decimal(rate_raw.strip())
        except InvalidOperation:
            continue
        if src and dst and rate > 0:
            rates[(src, dst)] = rate
    return rates


def convert_currency(
    amount: Decimal,
    from_currency: str,
    to_currency: str,
    *,
    rates: Optional[dict[tuple[str, str], Decimal]] = None,
) -> Decimal:
    """
    Stubbed lookup, not a pricing engine: rates come from PAYGATE_FX_RATES.

    Raises ValueError when no rate is configured for the pair.
    """
    src = (from_currency or "").strip().upper()
    dst = (to_currency or "").strip().upper()
    value = Decimal(amount)
    if src == dst:
        return value

    table = rates if rates is not None else parse_rates(settings.PAYGATE_FX_RATES)
    rate = table.get((src, dst))
    if rate is None:
        inverse = table.get((dst, src))
        if inverse is None:
            raise ValueError(f"No FX rate configured for {src}->{dst}")
        rate = Decimal(1) / inverse

    converted = (value * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    logger.debug("fx convert %s %s -> %s %s", value, src, converted, dst)
    return converted

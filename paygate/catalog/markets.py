from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

from paygate.providers.base import Provider

logger = logging.getLogger("paygate")

DEFAULT_MARKETS_FILE = Path(__file__).with_name("markets.json")

_NON_DIGITS = re.compile(r"\D")


def digits_only(value: str | None) -> str:
    return _NON_DIGITS.sub("", value or "")


def to_international(value: str | None, market: "Market") -> Optional[str]:
    """
    Country code + subscriber digits for `value` read as a number of
    `market`, or None when the digit count does not fit the market.
    """
    digits = digits_only(value)
    if digits.startswith("00"):
        digits = digits[2:]

    cc = market.country_code
    trunk = market.trunk_prefix
    n = market.subscriber_length

    if digits.startswith(cc) and len(digits) == len(cc) + n:
        return digits
    if trunk and digits.startswith(trunk) and len(digits) - len(trunk) == n:
        return cc + digits[len(trunk):]
    if len(digits) == n:
        return cc + digits
    return None


@dataclass(frozen=True)
class Market:
    provider: Provider
    country: str
    currency: str
    country_code: str
    trunk_prefix: str
    subscriber_length: int
    pattern: re.Pattern
    min_amount: Decimal
    max_reference_length: int
    max_description_length: int
    target_environment: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.provider.value}:{self.country}:{self.currency}"

    def matches(self, digits: str) -> bool:
        return bool(self.pattern.match(digits))


class MarketEntry(BaseModel):
    provider: Provider
    country: str = Field(min_length=2, max_length=2)
    currency: str = Field(min_length=3, max_length=3)
    country_code: str = Field(pattern=r"^[0-9]{1,4}$")
    trunk_prefix: str = Field(default="0", pattern=r"^[0-9]*$")
    subscriber_length: int = Field(gt=0, le=15)
    pattern: str
    min_amount: Decimal = Field(default=Decimal("1"), ge=0)
    max_reference_length: int = Field(gt=0)
    max_description_length: int = Field(gt=0)
    target_environment: Optional[str] = None

    @field_validator("country", "currency")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid phone pattern: {exc}") from exc
        return v

    def to_market(self) -> Market:
        return Market(
            provider=self.provider,
            country=self.country,
            currency=self.currency,
            country_code=self.country_code,
            trunk_prefix=self.trunk_prefix,
            subscriber_length=self.subscriber_length,
            pattern=re.compile(self.pattern),
            min_amount=self.min_amount,
            max_reference_length=self.max_reference_length,
            max_description_length=self.max_description_length,
            target_environment=(self.target_environment or "").strip() or None,
        )


class MarketFile(BaseModel):
    markets: list[MarketEntry]


def load_markets(path: str | Path | None = None) -> list[Market]:
    """
    Read the market table from a JSON file (packaged default when no path).

    Raises RuntimeError when the file is missing or does not validate; a
    gateway without a market table cannot route anything.
    """
    source = Path(path) if path else DEFAULT_MARKETS_FILE
    try:
        raw = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise RuntimeError(f"Market table not readable: {source}") from exc

    try:
        parsed = MarketFile.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise RuntimeError(f"Market table invalid: {source}: {exc}") from exc

    markets = [entry.to_market() for entry in parsed.markets]
    logger.info("market table loaded: source=%s markets=%s", source, len(markets))
    return markets


def parse_priority(raw: str | None) -> list[Provider]:
    out: list[Provider] = []
    for item in (raw or "").split(","):
        if not item.strip():
            continue
        provider = Provider.parse(item)
        if provider is None:
            raise RuntimeError(f"Unknown provider in PAYGATE_PROVIDER_PRIORITY: {item.strip()!r}")
        if provider not in out:
            out.append(provider)
    return out


class ProviderRegistry:
    """
    Static provider/market table plus detection.

    Markets are kept in one fixed order: provider priority first, then the
    order they appear in the market file. Every lookup walks that order so
    the answer never depends on dict/set iteration.
    """

    def __init__(self, markets: Iterable[Market], priority: Sequence[Provider] = ()):
        order = list(dict.fromkeys(priority))
        order += [p for p in Provider if p not in order]
        self._priority = tuple(order)
        rank = {p: i for i, p in enumerate(order)}
        self._markets = tuple(sorted(markets, key=lambda m: rank[m.provider]))

    @property
    def markets(self) -> tuple[Market, ...]:
        return self._markets

    @property
    def priority(self) -> tuple[Provider, ...]:
        return self._priority

    @property
    def providers(self) -> list[Provider]:
        return list(dict.fromkeys(m.provider for m in self._markets))

    def restrict(self, providers: Iterable[Provider]) -> "ProviderRegistry":
        keep = set(providers)
        return ProviderRegistry([m for m in self._markets if m.provider in keep], self._priority)

    def supports(self, provider: Provider, currency: str | None) -> bool:
        cur = (currency or "").strip().upper()
        return any(m.provider == provider and m.currency == cur for m in self._markets)

    def providers_for_currency(self, currency: str | None) -> list[Provider]:
        cur = (currency or "").strip().upper()
        return list(dict.fromkeys(m.provider for m in self._markets if m.currency == cur))

    def detect(self, phone_number: str | None, currency: str | None = None) -> Optional[Provider]:
        cur = (currency or "").strip().upper() or None

        # a local number fits several markets; without a currency hint the
        # first one in priority order wins
        if digits_only(phone_number):
            for market in self._markets:
                if cur and market.currency != cur:
                    continue
                candidate = to_international(phone_number, market)
                if candidate and market.matches(candidate):
                    return market.provider

        if cur:
            candidates = self.providers_for_currency(cur)
            if candidates:
                return candidates[0]

        return None

    def market_for(
        self,
        provider: Provider,
        currency: str | None,
        phone_number: str | None = None,
    ) -> Optional[Market]:
        cur = (currency or "").strip().upper()
        candidates = [m for m in self._markets if m.provider == provider and m.currency == cur]
        if len(candidates) <= 1:
            return candidates[0] if candidates else None

        for market in candidates:
            candidate = to_international(phone_number, market)
            if candidate and market.matches(candidate):
                return market
        digits = digits_only(phone_number)
        for market in candidates:
            if digits and digits.lstrip("0").startswith(market.country_code):
                return market
        return candidates[0]


def registry_from_settings(s) -> ProviderRegistry:
    markets = load_markets((s.PAYGATE_MARKETS_FILE or "").strip() or None)
    return ProviderRegistry(markets, parse_priority(s.PAYGATE_PROVIDER_PRIORITY))

# paygate/providers/factory.py
from __future__ import annotations

import logging
from typing import Optional

from paygate.providers.base import PaymentAdapter, Provider
from paygate.providers.config import enabled_providers, momo_config, mpesa_config
from paygate.providers.http import HttpClient
from paygate.settings import Settings, settings as default_settings

logger = logging.getLogger("paygate")


def build_adapter(provider: Provider, s: Settings, http: Optional[HttpClient] = None) -> Optional[PaymentAdapter]:
    if provider == Provider.MPESA:
        from paygate.providers.mpesa import MpesaAdapter

        return MpesaAdapter(mpesa_config(s), http)

    if provider == Provider.MTN_MOMO:
        from paygate.providers.mtn_momo import MtnMomoAdapter

        return MtnMomoAdapter(momo_config(s), http)

    # airtel_money / orange_money: markets only, no adapter yet
    return None


def build_adapters(
    s: Optional[Settings] = None,
    http: Optional[HttpClient] = None,
) -> dict[Provider, PaymentAdapter]:
    """
    One adapter per enabled provider, in PAYGATE_ENABLED_PROVIDERS order.
    Each adapter owns its own TokenManager; `http` may be shared.
    """
    s = s if s is not None else default_settings
    adapters: dict[Provider, PaymentAdapter] = {}
    for provider in enabled_providers(s):
        adapter = build_adapter(provider, s, http)
        if adapter is None:
            logger.warning("provider enabled but has no adapter: provider=%s", provider.value)
            continue
        adapters[provider] = adapter
    return adapters

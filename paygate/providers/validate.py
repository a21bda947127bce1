# paygate/providers/validate.py
from __future__ import annotations

import logging
from typing import Iterable, Optional

from paygate.providers.base import Provider
from paygate.providers.config import (
    gateway_mode,
    is_strict_startup_validation,
    raw_enabled_providers,
)
from paygate.settings import Settings, settings as default_settings

logger = logging.getLogger("paygate")

ALLOWED_PROVIDERS = {p.value.upper() for p in Provider}

# providers that can actually be enabled today
ADAPTER_PROVIDERS = {"MPESA", "MTN_MOMO"}

REQUIRED_SETTINGS: dict[str, tuple[str, ...]] = {
    "MPESA": (
        "MPESA_CONSUMER_KEY",
        "MPESA_CONSUMER_SECRET",
        "MPESA_BUSINESS_SHORT_CODE",
        "MPESA_PASSKEY",
        "MPESA_CALLBACK_URL",
    ),
    "MTN_MOMO": (
        "MTN_MOMO_PRIMARY_KEY",
        "MTN_MOMO_USER_ID",
        "MTN_MOMO_API_KEY",
        "MTN_MOMO_CALLBACK_URL",
    ),
}


def _sorted_csv(items: Iterable[str]) -> str:
    return ", ".join(sorted(set(items)))


def _require(s: Settings, missing: list[str], *names: str) -> None:
    for n in names:
        if not str(getattr(s, n, "") or "").strip():
            missing.append(n)


def validate_gateway_startup(s: Optional[Settings] = None) -> None:
    s = s if s is not None else default_settings
    mode = gateway_mode(s)
    strict = is_strict_startup_validation(s)
    enabled = sorted(set(raw_enabled_providers(s)))

    logger.info(
        "payment gateway startup check: mode=%s strict=%s enabled_providers=%s",
        mode,
        strict,
        ",".join(enabled) if enabled else "<none>",
    )

    if mode not in ("sandbox", "production"):
        raise RuntimeError(
            "Payment gateway startup validation failed. "
            f"Invalid PAYGATE_MODE={mode!r}. Allowed: sandbox, production"
        )

    if mode == "sandbox" and not strict:
        return

    if not enabled:
        raise RuntimeError(
            "Payment gateway startup validation failed. PAYGATE_ENABLED_PROVIDERS is empty."
        )

    unknown = sorted(set(enabled) - ALLOWED_PROVIDERS)
    if unknown:
        raise RuntimeError(
            "Payment gateway startup validation failed. Unknown providers in PAYGATE_ENABLED_PROVIDERS: "
            f"{_sorted_csv(unknown)}. Allowed: {_sorted_csv(ALLOWED_PROVIDERS)}"
        )

    no_adapter = sorted(set(enabled) - ADAPTER_PROVIDERS)
    if no_adapter:
        raise RuntimeError(
            "Payment gateway startup validation failed. No adapter available for: "
            f"{_sorted_csv(no_adapter)}. Available: {_sorted_csv(ADAPTER_PROVIDERS)}"
        )

    missing: list[str] = []
    for p in enabled:
        _require(s, missing, *REQUIRED_SETTINGS.get(p, ()))

    if missing:
        raise RuntimeError(
            "Payment gateway startup validation failed. "
            f"mode={mode} enabled_providers={_sorted_csv(enabled)} "
            "Missing required env vars: " + _sorted_csv(missing)
        )

# paygate/providers/config.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from paygate.providers.base import Provider
from paygate.settings import Settings, settings as default_settings


def _s(s: Optional[Settings]) -> Settings:
    return s if s is not None else default_settings


def gateway_mode(s: Optional[Settings] = None) -> str:
    return (_s(s).PAYGATE_MODE or "sandbox").strip().lower()


def is_strict_startup_validation(s: Optional[Settings] = None) -> bool:
    return bool(_s(s).PAYGATE_STRICT_STARTUP_VALIDATION)


def normalize_provider_name(value: str) -> str:
    v = (value or "").strip().upper().replace("-", "_").replace(" ", "_")
    if v in ("MOMO", "MTN"):
        return "MTN_MOMO"
    return v


def raw_enabled_providers(s: Optional[Settings] = None) -> list[str]:
    raw = _s(s).PAYGATE_ENABLED_PROVIDERS or ""
    names = [normalize_provider_name(p) for p in raw.split(",") if p.strip()]
    return list(dict.fromkeys(names))


def enabled_providers(s: Optional[Settings] = None) -> list[Provider]:
    out: list[Provider] = []
    for name in raw_enabled_providers(s):
        provider = Provider.parse(name)
        if provider is not None:
            out.append(provider)
    return out


@dataclass(frozen=True)
class MpesaConfig:
    mode: str  # "sandbox" | "production"
    base_url: str
    consumer_key: str
    consumer_secret: str
    short_code: str
    passkey: str
    callback_url: str
    transaction_type: str
    oauth_path: str
    stk_push_path: str
    stk_query_path: str
    timeout_s: float
    token_margin_s: float

    @property
    def oauth_url(self) -> str:
        return self.base_url + self.oauth_path

    @property
    def stk_push_url(self) -> str:
        return self.base_url + self.stk_push_path

    @property
    def stk_query_url(self) -> str:
        return self.base_url + self.stk_query_path


def mpesa_config(s: Optional[Settings] = None) -> MpesaConfig:
    s = _s(s)
    mode = gateway_mode(s)
    if mode == "production":
        base = s.MPESA_PRODUCTION_BASE_URL
    else:
        base = s.MPESA_SANDBOX_BASE_URL

    return MpesaConfig(
        mode=mode,
        base_url=(base or "").strip().rstrip("/"),
        consumer_key=(s.MPESA_CONSUMER_KEY or "").strip(),
        consumer_secret=(s.MPESA_CONSUMER_SECRET or "").strip(),
        short_code=(s.MPESA_BUSINESS_SHORT_CODE or "").strip(),
        passkey=(s.MPESA_PASSKEY or "").strip(),
        callback_url=(s.MPESA_CALLBACK_URL or "").strip(),
        transaction_type=(s.MPESA_TRANSACTION_TYPE or "CustomerPayBillOnline").strip(),
        oauth_path=(s.MPESA_OAUTH_PATH or "").strip(),
        stk_push_path=(s.MPESA_STK_PUSH_PATH or "").strip(),
        stk_query_path=(s.MPESA_STK_QUERY_PATH or "").strip(),
        timeout_s=float(s.PAYGATE_HTTP_TIMEOUT_S),
        token_margin_s=float(s.PAYGATE_TOKEN_SAFETY_MARGIN_S),
    )


@dataclass(frozen=True)
class MomoConfig:
    mode: str
    base_url: str
    target_env: str
    collection_key: str
    disbursement_key: str
    api_user: str
    api_key: str
    callback_url: str
    sandbox_currency: str
    token_path: str
    disbursement_token_path: str
    request_to_pay_path: str
    transfer_path: str
    balance_path: str
    account_holder_path: str
    timeout_s: float
    token_margin_s: float

    @property
    def token_url(self) -> str:
        return self.base_url + self.token_path

    @property
    def disbursement_token_url(self) -> str:
        return self.base_url + self.disbursement_token_path

    @property
    def request_to_pay_url(self) -> str:
        return self.base_url + self.request_to_pay_path

    @property
    def transfer_url(self) -> str:
        return self.base_url + self.transfer_path

    @property
    def balance_url(self) -> str:
        return self.base_url + self.balance_path

    @property
    def account_holder_url(self) -> str:
        return self.base_url + self.account_holder_path


def momo_config(s: Optional[Settings] = None) -> MomoConfig:
    s = _s(s)
    mode = gateway_mode(s)
    if mode == "production":
        base = s.MTN_MOMO_PRODUCTION_BASE_URL
    else:
        base = s.MTN_MOMO_SANDBOX_BASE_URL

    collection = (s.MTN_MOMO_PRIMARY_KEY or "").strip()
    return MomoConfig(
        mode=mode,
        base_url=(base or "").strip().rstrip("/"),
        target_env=(s.MTN_MOMO_TARGET_ENV or "sandbox").strip(),
        collection_key=collection,
        # disbursements use their own product key when one is configured
        disbursement_key=(s.MTN_MOMO_SECONDARY_KEY or "").strip() or collection,
        api_user=(s.MTN_MOMO_USER_ID or "").strip(),
        api_key=(s.MTN_MOMO_API_KEY or "").strip(),
        callback_url=(s.MTN_MOMO_CALLBACK_URL or "").strip(),
        sandbox_currency=(s.MTN_MOMO_SANDBOX_CURRENCY or "").strip().upper(),
        token_path=(s.MTN_MOMO_TOKEN_PATH or "").strip(),
        disbursement_token_path=(s.MTN_MOMO_DISBURSEMENT_TOKEN_PATH or "").strip(),
        request_to_pay_path=(s.MTN_MOMO_REQUEST_TO_PAY_PATH or "").strip().rstrip("/"),
        transfer_path=(s.MTN_MOMO_TRANSFER_PATH or "").strip().rstrip("/"),
        balance_path=(s.MTN_MOMO_BALANCE_PATH or "").strip(),
        account_holder_path=(s.MTN_MOMO_ACCOUNT_HOLDER_PATH or "").strip().rstrip("/"),
        timeout_s=float(s.PAYGATE_HTTP_TIMEOUT_S),
        token_margin_s=float(s.PAYGATE_TOKEN_SAFETY_MARGIN_S),
    )

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # -----------------------
    # Gateway (Mode Switch)
    # -----------------------
    PAYGATE_MODE: Literal["sandbox", "production"] = "sandbox"
    PAYGATE_STRICT_STARTUP_VALIDATION: bool = False
    PAYGATE_ENABLED_PROVIDERS: str = "MPESA,MTN_MOMO"

    # tie-break order for detection, first wins
    PAYGATE_PROVIDER_PRIORITY: str = "mpesa,mtn_momo,airtel_money,orange_money"

    # HTTP timeouts
    PAYGATE_HTTP_TIMEOUT_S: float = Field(default=30.0, gt=0)
    PAYGATE_TOKEN_SAFETY_MARGIN_S: int = Field(default=300, ge=0)

    # empty => packaged catalog/markets.json
    PAYGATE_MARKETS_FILE: str = ""

    # stub lookup only, "FROM:TO=rate" pairs
    PAYGATE_FX_RATES: str = "KES:UGX=32.5,KES:GHS=0.35,UGX:KES=0.031,GHS:KES=2.85"

    # -----------------------
    # M-PESA (Daraja)
    # -----------------------
    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_BUSINESS_SHORT_CODE: str = ""
    MPESA_PASSKEY: str = ""
    MPESA_CALLBACK_URL: str = ""
    MPESA_TRANSACTION_TYPE: str = "CustomerPayBillOnline"

    MPESA_SANDBOX_BASE_URL: str = "https://sandbox.safaricom.co.ke"
    MPESA_PRODUCTION_BASE_URL: str = "https://api.safaricom.co.ke"

    MPESA_OAUTH_PATH: str = "/oauth/v1/generate?grant_type=client_credentials"
    MPESA_STK_PUSH_PATH: str = "/mpesa/stkpush/v1/processrequest"
    MPESA_STK_QUERY_PATH: str = "/mpesa/stkpushquery/v1/query"

    # -----------------------
    # MTN MOMO
    # -----------------------
    MTN_MOMO_PRIMARY_KEY: str = ""
    MTN_MOMO_SECONDARY_KEY: str = ""
    MTN_MOMO_USER_ID: str = ""
    MTN_MOMO_API_KEY: str = ""
    MTN_MOMO_CALLBACK_URL: str = ""

    # target env used by MoMo headers in sandbox; production uses the market's own
    MTN_MOMO_TARGET_ENV: str = "sandbox"
    MTN_MOMO_SANDBOX_CURRENCY: str = "EUR"

    MTN_MOMO_SANDBOX_BASE_URL: str = "https://sandbox.momodeveloper.mtn.com"
    MTN_MOMO_PRODUCTION_BASE_URL: str = "https://momodeveloper.mtn.com"

    # tokens are scoped per product: collection vs disbursement
    MTN_MOMO_TOKEN_PATH: str = "/collection/token/"
    MTN_MOMO_DISBURSEMENT_TOKEN_PATH: str = "/disbursement/token/"
    MTN_MOMO_REQUEST_TO_PAY_PATH: str = "/collection/v1_0/requesttopay"
    MTN_MOMO_TRANSFER_PATH: str = "/disbursement/v1_0/transfer"
    MTN_MOMO_BALANCE_PATH: str = "/collection/v1_0/account/balance"
    MTN_MOMO_ACCOUNT_HOLDER_PATH: str = "/collection/v1_0/accountholder/msisdn"


settings = Settings()

import pytest

from paygate.main import create_app
from paygate.providers.validate import validate_gateway_startup
from tests.conftest import make_settings


def test_sandbox_non_strict_does_not_validate():
    # missing credentials are fine in a relaxed sandbox
    validate_gateway_startup(make_settings(MPESA_CONSUMER_KEY="", PAYGATE_ENABLED_PROVIDERS=""))


def test_sandbox_strict_requires_credentials():
    s = make_settings(PAYGATE_STRICT_STARTUP_VALIDATION=True, MPESA_PASSKEY="", MTN_MOMO_API_KEY="")

    with pytest.raises(RuntimeError) as e:
        validate_gateway_startup(s)

    msg = str(e.value)
    assert "MPESA_PASSKEY" in msg
    assert "MTN_MOMO_API_KEY" in msg
    assert "MPESA_CONSUMER_KEY" not in msg


def test_production_always_validates():
    s = make_settings(PAYGATE_MODE="production", PAYGATE_ENABLED_PROVIDERS="MPESA", MPESA_CALLBACK_URL="")

    with pytest.raises(RuntimeError, match="MPESA_CALLBACK_URL"):
        validate_gateway_startup(s)


def test_production_with_full_config_passes():
    validate_gateway_startup(make_settings(PAYGATE_MODE="production"))


def test_empty_enabled_list_fails_when_strict():
    s = make_settings(PAYGATE_STRICT_STARTUP_VALIDATION=True, PAYGATE_ENABLED_PROVIDERS=" , ")

    with pytest.raises(RuntimeError, match="PAYGATE_ENABLED_PROVIDERS is empty"):
        validate_gateway_startup(s)


def test_unknown_provider_fails():
    s = make_settings(PAYGATE_MODE="production", PAYGATE_ENABLED_PROVIDERS="MPESA,PAYPAL")

    with pytest.raises(RuntimeError, match="Unknown providers in PAYGATE_ENABLED_PROVIDERS: PAYPAL"):
        validate_gateway_startup(s)


def test_provider_without_adapter_fails():
    s = make_settings(PAYGATE_MODE="production", PAYGATE_ENABLED_PROVIDERS="MPESA,ORANGE_MONEY")

    with pytest.raises(RuntimeError, match="No adapter available for: ORANGE_MONEY"):
        validate_gateway_startup(s)


def test_create_app_runs_startup_validation():
    with pytest.raises(RuntimeError):
        create_app(make_settings(PAYGATE_MODE="production", MTN_MOMO_PRIMARY_KEY=""))

from __future__ import annotations

from partsmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from partsmarket.integrations.payments.base import PaymentsProvider
from partsmarket.integrations.payments.flutterwave_provider import DEFAULT_BASE_URL, FlutterwavePaymentsProvider
from partsmarket.integrations.payments.mock_provider import MockPaymentsProvider


def _config_value(config, key: str, default=None):
    try:
        value = config.get(key, default)
    except AttributeError:
        value = getattr(config, key, default)
    return default if value is None else value


def build_payments_provider(config) -> PaymentsProvider:
    provider = (_config_value(config, "PAYMENTS_PROVIDER", "mock") or "mock").strip().lower()

    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        return MockPaymentsProvider(currency=_config_value(config, "PAYMENT_CURRENCY", "NGN"))

    if provider != "flutterwave":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (_config_value(config, "FLUTTERWAVE_SECRET_KEY", "") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing FLUTTERWAVE_SECRET_KEY")

    return FlutterwavePaymentsProvider(
        secret_key=secret_key,
        base_url=_config_value(config, "FLUTTERWAVE_BASE_URL", DEFAULT_BASE_URL),
        transfer_callback_url=_config_value(config, "FLUTTERWAVE_TRANSFER_CALLBACK_URL", ""),
    )


def payment_health(config) -> dict:
    provider = (_config_value(config, "PAYMENTS_PROVIDER", "mock") or "mock").strip().lower()
    missing = []
    if provider == "flutterwave":
        for key in ("FLUTTERWAVE_SECRET_KEY", "FLUTTERWAVE_SECRET_HASH"):
            if not (_config_value(config, key, "") or "").strip():
                missing.append(key)
    if provider == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}

from __future__ import annotations

from tianguis.integrations.common import IntegrationMisconfiguredError
from tianguis.integrations.payments.base import PaymentsProvider
from tianguis.integrations.payments.mock_provider import MockPaymentsProvider
from tianguis.integrations.payments.stripe_provider import StripePaymentsProvider


def build_payments_provider(config) -> PaymentsProvider:
    provider = (config.get("PAYMENTS_PROVIDER") or "mock").strip().lower()

    if provider == "mock":
        return MockPaymentsProvider()

    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (config.get("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")

    return StripePaymentsProvider(
        secret_key=secret_key,
        timeout=float(config.get("PAYMENTS_TIMEOUT_SECONDS") or 15),
    )


def payment_health(config) -> dict:
    provider = (config.get("PAYMENTS_PROVIDER") or "mock").strip().lower()
    missing = []
    if provider == "stripe" and not (config.get("STRIPE_SECRET_KEY") or "").strip():
        missing.append("STRIPE_SECRET_KEY")
    if provider not in ("mock", "stripe"):
        status = "misconfigured"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}

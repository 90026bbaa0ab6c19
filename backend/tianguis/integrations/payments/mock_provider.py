from __future__ import annotations

from tianguis.integrations.common import IntegrationResult, IntegrationTimeoutError
from tianguis.integrations.payments.base import PaymentsProvider, PaymentVerifyResult, SUCCEEDED


class MockPaymentsProvider(PaymentsProvider):
    """Offline provider for dev and tests.

    Transaction ids starting with ``fail_`` verify as not paid, ids starting
    with ``timeout_`` raise a timeout; everything else has succeeded.
    """

    name = "mock"

    def verify(self, transaction_id: str) -> PaymentVerifyResult:
        ref = (transaction_id or "").strip()
        if ref.startswith("timeout_"):
            raise IntegrationTimeoutError(f"MOCK_TIMEOUT:{ref}")
        status = "requires_payment_method" if ref.startswith("fail_") else SUCCEEDED
        return PaymentVerifyResult(
            transaction_id=ref,
            status=status,
            amount_minor=0,
            currency="MXN",
            raw={"id": ref, "provider": self.name},
        )

    def refund(self, transaction_id: str, *, amount_minor: int | None = None) -> IntegrationResult:
        return IntegrationResult(
            ok=True,
            code="refunded",
            raw={"payment_intent": transaction_id, "amount": amount_minor, "provider": self.name},
        )

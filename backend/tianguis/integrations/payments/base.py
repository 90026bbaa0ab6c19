from __future__ import annotations

from dataclasses import dataclass

from tianguis.integrations.common import IntegrationResult

SUCCEEDED = "succeeded"


@dataclass
class PaymentVerifyResult:
    transaction_id: str
    status: str
    amount_minor: int
    currency: str
    raw: dict | None = None

    @property
    def succeeded(self) -> bool:
        return (self.status or "").strip().lower() == SUCCEEDED


class PaymentsProvider:
    name = "unknown"

    def verify(self, transaction_id: str) -> PaymentVerifyResult:
        raise NotImplementedError

    def refund(self, transaction_id: str, *, amount_minor: int | None = None) -> IntegrationResult:
        raise NotImplementedError

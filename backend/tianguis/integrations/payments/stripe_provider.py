from __future__ import annotations

import requests

from tianguis.integrations.common import IntegrationRequestError, IntegrationResult, IntegrationTimeoutError
from tianguis.integrations.payments.base import PaymentsProvider, PaymentVerifyResult

STRIPE_API = "https://api.stripe.com/v1"


class StripePaymentsProvider(PaymentsProvider):
    name = "stripe"

    def __init__(self, secret_key: str, *, timeout: float = 15.0):
        self.secret_key = secret_key
        self.timeout = timeout

    def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            r = requests.request(
                method,
                f"{STRIPE_API}{path}",
                auth=(self.secret_key, ""),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.Timeout as e:
            raise IntegrationTimeoutError(f"STRIPE_TIMEOUT:{path}") from e
        except requests.RequestException as e:
            raise IntegrationTimeoutError(f"STRIPE_UNREACHABLE:{type(e).__name__}") from e
        try:
            j = r.json() if r.content else {}
        except ValueError as e:
            raise IntegrationRequestError(f"STRIPE_BAD_RESPONSE:HTTP {r.status_code}") from e
        if r.status_code < 200 or r.status_code >= 300:
            err = j.get("error") if isinstance(j, dict) else None
            msg = ((err if isinstance(err, dict) else {}).get("message") or f"HTTP {r.status_code}").strip()
            raise IntegrationRequestError(f"STRIPE_REQUEST_FAILED:{msg}")
        return j if isinstance(j, dict) else {"payload": j}

    def verify(self, transaction_id: str) -> PaymentVerifyResult:
        ref = (transaction_id or "").strip()
        data = self._call("GET", f"/payment_intents/{ref}")
        return PaymentVerifyResult(
            transaction_id=(data.get("id") or ref),
            status=(data.get("status") or "").strip().lower(),
            amount_minor=int(data.get("amount_received") or data.get("amount") or 0),
            currency=(data.get("currency") or "mxn").strip().upper(),
            raw=data,
        )

    def refund(self, transaction_id: str, *, amount_minor: int | None = None) -> IntegrationResult:
        form = {"payment_intent": (transaction_id or "").strip()}
        if amount_minor is not None:
            form["amount"] = int(amount_minor)
        # Stripe dedupes retried refunds that carry the same key.
        headers = {"Idempotency-Key": f"refund:{form['payment_intent']}"}
        data = self._call("POST", "/refunds", data=form, headers=headers)
        return IntegrationResult(ok=True, code=(data.get("status") or "pending"), raw=data)

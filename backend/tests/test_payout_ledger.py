from __future__ import annotations

import unittest
from decimal import Decimal

from marketplace_case import MarketplaceTestCase
from tianguis.errors import AuthorizationError, PreconditionFailed, ValidationError
from tianguis.extensions import db
from tianguis.models import Order, Payout, PayoutTransition
from tianguis.services import order_service, payout_service
from tianguis.services.reconciliation_service import reconcile_payouts


class PayoutLedgerTestCase(MarketplaceTestCase):
    def _completed_order(self, *, listing=None, txn="pi_test_1") -> Order:
        order = self.make_paid_order(listing=listing, txn=txn)
        order_service.confirm_completion(self.buyer, order.id)
        order_service.confirm_completion(self.seller, order.id)
        return self.reload(Order, order.id)

    def test_payout_created_once_with_fee(self):
        order = self._completed_order()
        payout = payout_service.payout_for_order(order.id)
        self.assertEqual(payout.seller_id, self.seller.id)
        self.assertEqual(payout.gross_amount, Decimal("200.00"))
        self.assertEqual(payout.payout_amount + payout.platform_fee, payout.gross_amount)

        again = payout_service.create_payout_for_order(order)
        self.assertEqual(again.id, payout.id)
        db.session.commit()
        self.assertEqual(Payout.query.count(), 1)

    def test_payout_requires_releasable_order(self):
        order = self.make_paid_order()
        with self.assertRaises(PreconditionFailed) as ctx:
            payout_service.create_payout_for_order(order)
        self.assertEqual(ctx.exception.code, "ORDER_NOT_RELEASABLE")

    def test_mark_completed_requires_bank_profile(self):
        order = self._completed_order()
        payout = payout_service.payout_for_order(order.id)
        with self.assertRaises(PreconditionFailed) as ctx:
            payout_service.advance_payout(self.admin, payout.id, "mark_completed")
        self.assertEqual(ctx.exception.code, "BANK_PROFILE_MISSING")

        self.add_bank_profile(clabe="1234")
        with self.assertRaises(PreconditionFailed) as ctx:
            payout_service.advance_payout(self.admin, payout.id, "mark_completed")
        self.assertEqual(ctx.exception.code, "BANK_PROFILE_INCOMPLETE")
        self.assertEqual(self.reload(Payout, payout.id).status, "pending")

    def test_mark_processing_requires_bank_profile(self):
        order = self._completed_order()
        payout = payout_service.payout_for_order(order.id)
        with self.assertRaises(PreconditionFailed) as ctx:
            payout_service.advance_payout(self.admin, payout.id, "mark_processing")
        self.assertEqual(ctx.exception.code, "BANK_PROFILE_MISSING")
        self.assertEqual(self.reload(Payout, payout.id).status, "pending")
        self.assertEqual(self.reload(Order, order.id).payout_status, "pending")

        self.add_bank_profile()
        payout_service.advance_payout(self.admin, payout.id, "mark_processing")
        self.assertEqual(self.reload(Payout, payout.id).status, "processing")

    def test_payout_status_machine_and_projection(self):
        self.add_bank_profile()
        order = self._completed_order()
        payout = payout_service.payout_for_order(order.id)

        payout_service.advance_payout(self.admin, payout.id, "mark_processing")
        payout_service.advance_payout(self.admin, payout.id, "mark_failed", reason="cuenta cerrada")
        payout = self.reload(Payout, payout.id)
        self.assertEqual(payout.status, "failed")
        self.assertEqual(payout.failure_reason, "cuenta cerrada")
        self.assertEqual(self.reload(Order, order.id).payout_status, "failed")

        payout_service.advance_payout(self.admin, payout.id, "retry")
        payout_service.advance_payout(self.admin, payout.id, "mark_processing")
        payout_service.advance_payout(self.admin, payout.id, "mark_completed", reference="SPEI-001")
        payout = self.reload(Payout, payout.id)
        self.assertEqual(payout.status, "completed")
        self.assertEqual(payout.attempts, 2)
        self.assertEqual(payout.payout_reference, "SPEI-001")
        order = self.reload(Order, order.id)
        self.assertEqual(order.payout_status, "completed")
        self.assertEqual(order.display_status, "completed")

        with self.assertRaises(PreconditionFailed) as ctx:
            payout_service.advance_payout(self.admin, payout.id, "retry")
        self.assertEqual(ctx.exception.code, "PAYOUT_INVALID_STATUS")

        trail = [t.to_status for t in PayoutTransition.query.filter_by(payout_id=payout.id).order_by(PayoutTransition.id)]
        self.assertEqual(trail, ["pending", "processing", "failed", "pending", "processing", "completed"])

    def test_advance_guards(self):
        order = self._completed_order()
        payout = payout_service.payout_for_order(order.id)
        with self.assertRaises(AuthorizationError):
            payout_service.advance_payout(self.seller, payout.id, "mark_processing")
        with self.assertRaises(ValidationError) as ctx:
            payout_service.advance_payout(self.admin, payout.id, "explode")
        self.assertEqual(ctx.exception.code, "INVALID_ACTION")
        with self.assertRaises(PreconditionFailed):
            payout_service.advance_payout(self.admin, payout.id, "mark_failed")

    def test_bank_profile_validation(self):
        with self.assertRaises(ValidationError) as ctx:
            payout_service.upsert_bank_profile(self.seller, clabe="12 34", bank_name="BBVA", holder_name="Ana")
        self.assertEqual(ctx.exception.code, "INVALID_CLABE")
        with self.assertRaises(ValidationError) as ctx:
            payout_service.upsert_bank_profile(self.seller, clabe="0" * 18, bank_name=" ", holder_name="Ana")
        self.assertEqual(ctx.exception.code, "BANK_NAME_REQUIRED")

        profile = payout_service.upsert_bank_profile(
            self.seller, clabe="0121 8000 1234 5678 97", bank_name="BBVA", holder_name="Ana"
        )
        self.assertTrue(profile.is_complete())
        self.assertEqual(profile.to_dict()["clabe"], "0121...7897")
        profile = payout_service.upsert_bank_profile(self.seller, clabe="0" * 18, bank_name="Banorte", holder_name="Ana")
        self.assertEqual(profile.bank_name, "Banorte")

    def test_http_payout_admin_flow(self):
        order = self._completed_order()
        payout = payout_service.payout_for_order(order.id)

        res = self.client.put(
            "/api/payouts/bank-profile",
            json={"clabe": "012180001234567897", "bank_name": "BBVA", "holder_name": "Vendedor"},
            headers=self.auth(self.seller),
        )
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["profile"]["is_complete"])

        res = self.client.get("/api/payouts", headers=self.auth(self.seller))
        self.assertEqual([p["id"] for p in res.get_json()["items"]], [payout.id])

        res = self.client.post(f"/api/admin/payouts/{payout.id}/mark-processing", json={}, headers=self.auth(self.seller))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "ADMIN_REQUIRED")

        res = self.client.post(
            f"/api/admin/payouts/{payout.id}/mark-completed",
            json={"reference": "SPEI-9"},
            headers=self.auth(self.admin),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["payout"]["status"], "completed")

        res = self.client.get("/api/admin/payouts", headers=self.auth(self.admin))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["stats"]["completed"]["count"], 1)
        self.assertEqual(res.get_json()["stats"]["completed"]["amount"], str(Decimal(payout.payout_amount).quantize(Decimal("0.01"))))
        self.assertEqual(res.get_json()["stats"]["failed"]["amount"], "0.00")


class PayoutReconciliationTestCase(MarketplaceTestCase):
    def test_reconciliation_reports_and_repairs_drift(self):
        order = self.make_paid_order()
        order_service.confirm_completion(self.buyer, order.id)
        order_service.confirm_completion(self.seller, order.id)

        # simulate a settlement that skipped the payout ledger
        Payout.query.filter_by(order_id=order.id).delete()
        PayoutTransition.query.delete()
        order = self.reload(Order, order.id)
        order.payout_status = None
        db.session.commit()

        summary = reconcile_payouts()
        self.assertEqual(summary["missing_payouts"], [order.id])
        self.assertEqual(summary["drift_count"], 1)
        self.assertEqual(Payout.query.count(), 0)

        summary = reconcile_payouts(repair=True, actor=self.admin)
        self.assertEqual(summary["repaired"]["payouts_created"], 1)
        self.assertEqual(Payout.query.filter_by(order_id=order.id).count(), 1)
        self.assertEqual(self.reload(Order, order.id).payout_status, "pending")

        clean = reconcile_payouts()
        self.assertEqual(clean["drift_count"], 0)

    def test_reconciliation_detects_projection_drift(self):
        order = self.make_paid_order()
        order_service.confirm_completion(self.buyer, order.id)
        order_service.confirm_completion(self.seller, order.id)
        order = self.reload(Order, order.id)
        order.payout_status = "completed"
        db.session.commit()

        summary = reconcile_payouts()
        self.assertEqual(len(summary["projection_drift"]), 1)
        self.assertEqual(summary["projection_drift"][0]["payout_status"], "pending")

        res = self.client.post("/api/admin/reconcile/payouts", json={"repair": True}, headers=self.auth(self.admin))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["repaired"]["projections_fixed"], 1)
        self.assertEqual(self.reload(Order, order.id).payout_status, "pending")


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import unittest
from decimal import Decimal

from marketplace_case import MarketplaceTestCase
from tianguis.errors import AuthorizationError, ConflictError, PreconditionFailed, ValidationError
from tianguis.models import AuditEvent, Dispute, Order, Payout
from tianguis.services import dispute_service, order_service


class DisputeOpeningTestCase(MarketplaceTestCase):
    def test_dispute_on_paid_order_freezes_it(self):
        order = self.make_paid_order()
        dispute = dispute_service.open_dispute(self.buyer, order.id, reason="not_as_described", description="rayones")
        self.assertEqual(dispute.status, "open")
        order = self.reload(Order, order.id)
        self.assertEqual(order.status, "disputed")
        self.assertEqual(order.disputed_from, "paid")

        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.confirm_completion(self.seller, order.id)
        self.assertEqual(ctx.exception.code, "ORDER_DISPUTED")

    def test_dispute_rejected_before_payment_and_after_cancel(self):
        order = self.make_order()
        with self.assertRaises(PreconditionFailed) as ctx:
            dispute_service.open_dispute(self.buyer, order.id, reason="other")
        self.assertEqual(ctx.exception.code, "ORDER_NOT_DISPUTABLE")

        order_service.cancel_order(self.buyer, order.id)
        with self.assertRaises(PreconditionFailed):
            dispute_service.open_dispute(self.buyer, order.id, reason="other")
        self.assertEqual(Dispute.query.count(), 0)

    def test_second_open_dispute_conflicts(self):
        order = self.make_paid_order()
        dispute_service.open_dispute(self.buyer, order.id, reason="damaged")
        with self.assertRaises(ConflictError) as ctx:
            dispute_service.open_dispute(self.seller, order.id, reason="other")
        self.assertEqual(ctx.exception.code, "DISPUTE_ALREADY_OPEN")

    def test_only_parties_with_known_reason(self):
        order = self.make_paid_order()
        with self.assertRaises(AuthorizationError):
            dispute_service.open_dispute(self.outsider, order.id, reason="damaged")
        with self.assertRaises(ValidationError) as ctx:
            dispute_service.open_dispute(self.buyer, order.id, reason="bored")
        self.assertEqual(ctx.exception.code, "INVALID_REASON")


class DisputeResolutionTestCase(MarketplaceTestCase):
    def _open(self, order_type="meetup"):
        order = self.make_paid_order(order_type=order_type)
        dispute = dispute_service.open_dispute(self.buyer, order.id, reason="not_received")
        return order, dispute

    def test_resolution_requires_arbitrator_and_note(self):
        order, dispute = self._open()
        with self.assertRaises(AuthorizationError) as ctx:
            dispute_service.resolve_dispute(self.buyer, dispute.id, action="refund", note="mine")
        self.assertEqual(ctx.exception.code, "ARBITRATOR_REQUIRED")
        with self.assertRaises(ValidationError) as ctx:
            dispute_service.resolve_dispute(self.arbitrator, dispute.id, action="refund", note="   ")
        self.assertEqual(ctx.exception.code, "RESOLUTION_NOTE_REQUIRED")
        with self.assertRaises(ValidationError):
            dispute_service.resolve_dispute(self.arbitrator, dispute.id, action="split", note="half each")
        self.assertEqual(self.reload(Order, order.id).status, "disputed")

    def test_refund_resolution_creates_no_payout(self):
        order, dispute = self._open()
        dispute_service.resolve_dispute(self.arbitrator, dispute.id, action="refund", note="never delivered")
        order = self.reload(Order, order.id)
        dispute = self.reload(Dispute, dispute.id)
        self.assertEqual(order.status, "resolved_refund")
        self.assertIsNotNone(order.refunded_at)
        self.assertEqual(dispute.status, "resolved_refund")
        self.assertEqual(dispute.resolution_note, "never delivered")
        self.assertIsNone(dispute.open_order_id)
        self.assertEqual(Payout.query.count(), 0)
        self.assertEqual(AuditEvent.query.filter_by(event_type="payment.refund_requested").count(), 1)

    def test_release_resolution_pays_out_like_completion(self):
        released_order, dispute = self._open()
        dispute_service.resolve_dispute(self.arbitrator, dispute.id, action="release", note="item matched photos")
        released = Payout.query.filter_by(order_id=released_order.id).one()

        normal = self.make_paid_order(txn="pi_test_2", listing=self.add_listing(title="Casco"))
        order_service.confirm_completion(self.buyer, normal.id)
        order_service.confirm_completion(self.seller, normal.id)
        completed = Payout.query.filter_by(order_id=normal.id).one()

        self.assertEqual(self.reload(Order, released_order.id).status, "resolved_release")
        self.assertEqual(released.gross_amount, completed.gross_amount)
        self.assertEqual(released.platform_fee, completed.platform_fee)
        self.assertEqual(released.payout_amount, completed.payout_amount)
        self.assertEqual(released.payout_amount, Decimal("190.00"))
        self.assertEqual(released.status, "pending")

    def test_resolved_dispute_cannot_be_resolved_or_reopened(self):
        order, dispute = self._open()
        dispute_service.resolve_dispute(self.admin, dispute.id, action="release", note="ok")
        with self.assertRaises(PreconditionFailed) as ctx:
            dispute_service.resolve_dispute(self.admin, dispute.id, action="refund", note="changed mind")
        self.assertEqual(ctx.exception.code, "DISPUTE_NOT_OPEN")
        with self.assertRaises(PreconditionFailed) as ctx:
            dispute_service.open_dispute(self.buyer, order.id, reason="other")
        self.assertEqual(ctx.exception.code, "DISPUTE_ALREADY_RESOLVED")

    def test_party_cannot_arbitrate_own_order(self):
        self.seller.role = "arbitrator"
        order, dispute = self._open()
        with self.assertRaises(AuthorizationError) as ctx:
            dispute_service.resolve_dispute(self.seller, dispute.id, action="release", note="mine")
        self.assertEqual(ctx.exception.code, "ARBITRATOR_IS_PARTY")

    def test_http_dispute_flow(self):
        order = self.make_paid_order()
        res = self.client.post(
            "/api/disputes",
            json={"order_id": order.id, "reason": "damaged", "description": "llego roto"},
            headers=self.auth(self.buyer),
        )
        self.assertEqual(res.status_code, 201)
        dispute_id = res.get_json()["dispute"]["id"]

        res = self.client.get("/api/admin/disputes?status=open", headers=self.auth(self.buyer))
        self.assertEqual(res.status_code, 403)

        res = self.client.get("/api/admin/disputes?status=open", headers=self.auth(self.arbitrator))
        self.assertEqual(res.status_code, 200)
        self.assertEqual([d["id"] for d in res.get_json()["items"]], [dispute_id])

        res = self.client.post(
            f"/api/admin/disputes/{dispute_id}/resolve",
            json={"action": "refund", "note": ""},
            headers=self.auth(self.arbitrator),
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "RESOLUTION_NOTE_REQUIRED")

        res = self.client.post(
            f"/api/admin/disputes/{dispute_id}/resolve",
            json={"action": "refund", "note": "photos show damage"},
            headers=self.auth(self.arbitrator),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["dispute"]["status"], "resolved_refund")


if __name__ == "__main__":
    unittest.main()

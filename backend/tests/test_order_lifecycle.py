from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from marketplace_case import MarketplaceTestCase
from tianguis.errors import AuthorizationError, PreconditionFailed, ProcessorUnavailable, ValidationError
from tianguis.extensions import db
from tianguis.jobs.order_expiry_runner import expire_unpaid_orders
from tianguis.models import Listing, Order, OrderTransition, Payout
from tianguis.services import order_service


class OrderCreationTestCase(MarketplaceTestCase):
    def test_online_meetup_order_waits_for_payment(self):
        order = self.make_order()
        self.assertEqual(order.status, "pending_payment")
        self.assertEqual(order.total_amount, Decimal("200.00"))
        self.assertEqual(order.shipping_fee, Decimal("0.00"))
        self.assertIsNotNone(order.expires_at)
        self.assertEqual(order.confirmation_state, "unconfirmed")
        self.assertEqual(self.reload(Listing, self.listing.id).status, "active")

    def test_shipping_order_adds_flat_fee(self):
        order = self.make_order(order_type="shipping")
        self.assertEqual(order.shipping_fee, Decimal("50.00"))
        self.assertEqual(order.total_amount, Decimal("250.00"))

    def test_cash_meetup_is_paid_on_creation(self):
        order = self.make_order(payment_method="cash")
        self.assertEqual(order.status, "paid")
        self.assertEqual(order.payment_reference, f"cash:{order.id}")
        self.assertIsNone(order.expires_at)
        self.assertEqual(self.reload(Listing, self.listing.id).status, "sold")

    def test_creation_guards(self):
        with self.assertRaises(ValidationError) as ctx:
            self.make_order(order_type="shipping", payment_method="cash")
        self.assertEqual(ctx.exception.code, "CASH_REQUIRES_MEETUP")
        with self.assertRaises(ValidationError) as ctx:
            self.make_order(order_type="shipping", shipping_address="  ")
        self.assertEqual(ctx.exception.code, "SHIPPING_ADDRESS_REQUIRED")
        with self.assertRaises(ValidationError):
            self.make_order(order_type="teleport")
        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.create_order(self.seller, product_id=self.listing.id, order_type="meetup")
        self.assertEqual(ctx.exception.code, "CANNOT_BUY_OWN_PRODUCT")

        self.make_paid_order()
        with self.assertRaises(PreconditionFailed) as ctx:
            self.make_order()
        self.assertEqual(ctx.exception.code, "PRODUCT_NOT_AVAILABLE")


class PaymentConfirmationTestCase(MarketplaceTestCase):
    def test_confirm_payment_marks_paid_and_replay_is_noop(self):
        order = self.make_order()
        order, replayed = order_service.confirm_payment(order.id, "pi_abc", actor=self.buyer)
        self.assertFalse(replayed)
        self.assertEqual(order.status, "paid")
        self.assertIsNone(order.expires_at)
        self.assertEqual(self.reload(Listing, self.listing.id).status, "sold")
        transitions = OrderTransition.query.filter_by(order_id=order.id).count()

        order, replayed = order_service.confirm_payment(order.id, "pi_abc", actor=self.buyer)
        self.assertTrue(replayed)
        self.assertEqual(OrderTransition.query.filter_by(order_id=order.id).count(), transitions)

        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.confirm_payment(order.id, "pi_other", actor=self.buyer)
        self.assertEqual(ctx.exception.code, "ORDER_ALREADY_PAID")

    def test_unsuccessful_payment_leaves_order_pending(self):
        order = self.make_order()
        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.confirm_payment(order.id, "fail_card_declined", actor=self.buyer)
        self.assertEqual(ctx.exception.code, "PAYMENT_NOT_SUCCESSFUL")
        self.assertEqual(self.reload(Order, order.id).status, "pending_payment")

    def test_processor_timeout_is_retriable_and_changes_nothing(self):
        order = self.make_order()
        with self.assertRaises(ProcessorUnavailable) as ctx:
            order_service.confirm_payment(order.id, "timeout_pi_1", actor=self.buyer)
        self.assertEqual(ctx.exception.code, "PAYMENT_PROCESSOR_TIMEOUT")
        order = self.reload(Order, order.id)
        self.assertEqual(order.status, "pending_payment")
        self.assertIsNone(order.payment_reference)

        order, replayed = order_service.confirm_payment(order.id, "pi_after_timeout", actor=self.buyer)
        self.assertFalse(replayed)
        self.assertEqual(order.status, "paid")

    def test_transaction_cannot_pay_two_orders(self):
        self.make_paid_order(txn="pi_shared")
        other = self.add_listing(title="Casco")
        order = self.make_order(listing=other)
        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.confirm_payment(order.id, "pi_shared", actor=self.buyer)
        self.assertEqual(ctx.exception.code, "TRANSACTION_ALREADY_USED")

    def test_sold_listing_cannot_be_paid_twice(self):
        first = self.make_order()
        second = order_service.create_order(self.outsider, product_id=self.listing.id, order_type="meetup")
        order_service.confirm_payment(first.id, "pi_a", actor=self.buyer)
        self.assertEqual(self.reload(Listing, self.listing.id).status, "sold")

        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.confirm_payment(second.id, "pi_b", actor=self.outsider)
        self.assertEqual(ctx.exception.code, "PRODUCT_NOT_AVAILABLE")
        second = self.reload(Order, second.id)
        self.assertEqual(second.status, "pending_payment")
        self.assertIsNone(second.payment_reference)

    def test_only_buyer_confirms_payment(self):
        order = self.make_order()
        with self.assertRaises(AuthorizationError):
            order_service.confirm_payment(order.id, "pi_1", actor=self.seller)

    def test_cash_order_rejects_online_confirmation(self):
        order = self.make_order(payment_method="cash")
        with self.assertRaises(PreconditionFailed):
            order_service.confirm_payment(order.id, "pi_1", actor=self.buyer)


class MeetupAndShippingTestCase(MarketplaceTestCase):
    def test_meetup_can_be_rearranged_by_either_party(self):
        order = self.make_paid_order()
        order_service.arrange_meetup(
            self.buyer,
            order.id,
            location="Parque Mexico",
            meetup_time="2026-11-02T18:30:00",
            lat="19.41",
            lng="-99.17",
        )
        order = self.reload(Order, order.id)
        self.assertEqual(order.status, "meetup_arranged")
        self.assertEqual(order.meetup_time, datetime(2026, 11, 2, 18, 30))

        order_service.arrange_meetup(self.seller, order.id, location="Metro Chilpancingo")
        order = self.reload(Order, order.id)
        self.assertEqual(order.meetup_location, "Metro Chilpancingo")
        self.assertIsNone(order.meetup_time)
        self.assertIsNone(order.meetup_lat)
        events = [t.event for t in OrderTransition.query.filter_by(order_id=order.id).order_by(OrderTransition.id)]
        self.assertEqual(events[-2:], ["meetup_arranged", "meetup_updated"])

    def test_meetup_guards(self):
        pending = self.make_order()
        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.arrange_meetup(self.buyer, pending.id, location="Zocalo")
        self.assertEqual(ctx.exception.code, "ORDER_NOT_ARRANGEABLE")
        order_service.confirm_payment(pending.id, "pi_1", actor=self.buyer)

        with self.assertRaises(ValidationError) as ctx:
            order_service.arrange_meetup(self.buyer, pending.id, location=" ")
        self.assertEqual(ctx.exception.code, "MEETUP_LOCATION_REQUIRED")
        with self.assertRaises(ValidationError) as ctx:
            order_service.arrange_meetup(self.buyer, pending.id, location="Zocalo", lat="95")
        self.assertEqual(ctx.exception.code, "INVALID_COORDINATES")
        with self.assertRaises(AuthorizationError):
            order_service.arrange_meetup(self.outsider, pending.id, location="Zocalo")

    def test_tracking_is_recorded_once(self):
        order = self.make_paid_order(order_type="shipping")
        with self.assertRaises(AuthorizationError) as ctx:
            order_service.ship_order(self.buyer, order.id, carrier="DHL", tracking_number="MX1")
        self.assertEqual(ctx.exception.code, "NOT_SELLER")

        order_service.ship_order(self.seller, order.id, carrier="DHL", tracking_number="MX123")
        order = self.reload(Order, order.id)
        self.assertEqual(order.status, "shipped")
        self.assertEqual(order.tracking_number, "MX123")

        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.ship_order(self.seller, order.id, carrier="Estafeta", tracking_number="MX999")
        self.assertEqual(ctx.exception.code, "SHIPPING_ALREADY_SET")
        self.assertEqual(self.reload(Order, order.id).tracking_number, "MX123")

    def test_meetup_order_cannot_ship(self):
        order = self.make_paid_order()
        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.ship_order(self.seller, order.id, carrier="DHL", tracking_number="MX1")
        self.assertEqual(ctx.exception.code, "NOT_SHIPPING_ORDER")

    def test_shipping_flow_completes_after_delivery(self):
        with patch.dict(self.app.config, {"PLATFORM_FEE_FUNC": lambda total, currency: Decimal("20")}):
            order = self.make_paid_order(order_type="shipping")
            with self.assertRaises(PreconditionFailed) as ctx:
                order_service.confirm_completion(self.buyer, order.id)
            self.assertEqual(ctx.exception.code, "ORDER_NOT_CONFIRMABLE")

            order_service.ship_order(self.seller, order.id, carrier="DHL", tracking_number="MX123")
            order_service.mark_delivered(self.buyer, order.id)
            self.assertEqual(self.reload(Order, order.id).status, "delivered")

            order_service.confirm_completion(self.buyer, order.id)
            order_service.confirm_completion(self.seller, order.id)

        order = self.reload(Order, order.id)
        self.assertEqual(order.status, "completed")
        payout = Payout.query.filter_by(order_id=order.id).one()
        self.assertEqual(payout.gross_amount, Decimal("250.00"))
        self.assertEqual(payout.platform_fee, Decimal("20.00"))
        self.assertEqual(payout.payout_amount, Decimal("230.00"))


class CompletionConfirmationTestCase(MarketplaceTestCase):
    def _completed_by(self, first, second):
        order = self.make_paid_order()
        order_service.arrange_meetup(self.buyer, order.id, location="Parque Mexico")
        order_service.confirm_completion(first, order.id)
        mid = self.reload(Order, order.id)
        self.assertNotEqual(mid.status, "completed")
        self.assertEqual(Payout.query.count(), 0)
        order_service.confirm_completion(second, order.id)
        return self.reload(Order, order.id)

    def test_buyer_then_seller_completes_with_one_payout(self):
        order = self._completed_by(self.buyer, self.seller)
        self.assertEqual(order.status, "completed")
        self.assertEqual(order.confirmation_state, "confirmed")
        self.assertIsNotNone(order.completed_at)
        self.assertEqual(order.payout_status, "pending")
        self.assertEqual(Payout.query.filter_by(order_id=order.id).count(), 1)

    def test_seller_then_buyer_completes_with_one_payout(self):
        order = self._completed_by(self.seller, self.buyer)
        self.assertEqual(order.status, "completed")
        self.assertEqual(order.display_status, "completed_pending_payout")
        payout = Payout.query.filter_by(order_id=order.id).one()
        # default policy: 5% of 200.00
        self.assertEqual(payout.platform_fee, Decimal("10.00"))
        self.assertEqual(payout.payout_amount, Decimal("190.00"))

    def test_repeat_confirmation_is_rejected_and_keeps_timestamp(self):
        order = self.make_paid_order()
        order_service.confirm_completion(self.buyer, order.id)
        first_stamp = self.reload(Order, order.id).buyer_confirmed_at
        self.assertIsNotNone(first_stamp)

        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.confirm_completion(self.buyer, order.id)
        self.assertEqual(ctx.exception.code, "ALREADY_CONFIRMED")
        order = self.reload(Order, order.id)
        self.assertEqual(order.buyer_confirmed_at, first_stamp)
        self.assertEqual(order.confirmation_state, "buyer_confirmed")

    def test_unpaid_order_cannot_be_confirmed(self):
        order = self.make_order()
        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.confirm_completion(self.buyer, order.id)
        self.assertEqual(ctx.exception.code, "ORDER_NOT_CONFIRMABLE")
        with self.assertRaises(AuthorizationError):
            order_service.confirm_completion(self.outsider, order.id)


class CancellationAndExpiryTestCase(MarketplaceTestCase):
    def test_buyer_cancels_unpaid_order(self):
        order = self.make_order()
        with self.assertRaises(AuthorizationError) as ctx:
            order_service.cancel_order(self.seller, order.id)
        self.assertEqual(ctx.exception.code, "NOT_BUYER")
        order_service.cancel_order(self.buyer, order.id, reason="changed my mind")
        order = self.reload(Order, order.id)
        self.assertEqual(order.status, "cancelled")
        self.assertIsNotNone(order.cancelled_at)

    def test_paid_order_cannot_be_cancelled(self):
        order = self.make_paid_order()
        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.cancel_order(self.buyer, order.id)
        self.assertEqual(ctx.exception.code, "ORDER_NOT_CANCELLABLE")

    def test_expiry_job_cancels_only_lapsed_orders(self):
        lapsed = self.make_order()
        fresh = self.make_order(listing=self.add_listing(title="Casco"))
        lapsed.expires_at = datetime.utcnow() - timedelta(minutes=5)
        db.session.commit()

        result = expire_unpaid_orders()
        self.assertTrue(result["ok"])
        self.assertEqual(result["expired"], 1)
        self.assertEqual(self.reload(Order, lapsed.id).status, "cancelled")
        self.assertEqual(self.reload(Order, fresh.id).status, "pending_payment")
        last = OrderTransition.query.filter_by(order_id=lapsed.id).order_by(OrderTransition.id.desc()).first()
        self.assertEqual(last.event, "expired")
        self.assertEqual(last.actor_type, "system")

        again = expire_unpaid_orders()
        self.assertEqual(again["expired"], 0)


class AdminRefundTestCase(MarketplaceTestCase):
    def test_admin_refund_requires_note_and_held_funds(self):
        order = self.make_paid_order()
        with self.assertRaises(AuthorizationError):
            order_service.admin_refund(self.buyer, order.id, note="nope")
        with self.assertRaises(ValidationError) as ctx:
            order_service.admin_refund(self.admin, order.id, note=" ")
        self.assertEqual(ctx.exception.code, "REFUND_NOTE_REQUIRED")

        order_service.admin_refund(self.admin, order.id, note="seller unreachable")
        order = self.reload(Order, order.id)
        self.assertEqual(order.status, "refunded")
        self.assertIsNotNone(order.refunded_at)
        self.assertEqual(Payout.query.count(), 0)

        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.admin_refund(self.admin, order.id, note="again")
        self.assertEqual(ctx.exception.code, "ORDER_NOT_REFUNDABLE")


if __name__ == "__main__":
    unittest.main()

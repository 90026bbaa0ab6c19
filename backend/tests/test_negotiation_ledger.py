from __future__ import annotations

import unittest
from decimal import Decimal

from marketplace_case import MarketplaceTestCase
from tianguis.errors import AuthorizationError, ConflictError, PreconditionFailed, ValidationError
from tianguis.extensions import db
from tianguis.models import Negotiation, NegotiationOffer
from tianguis.services import negotiation_service, order_service


class NegotiationLedgerTestCase(MarketplaceTestCase):
    def _propose(self, price="100"):
        return negotiation_service.propose_price(
            self.buyer,
            conversation_id=self.conversation.id,
            product_id=self.listing.id,
            proposed_price=price,
        )

    def test_counter_then_accept_settles_on_counter_price(self):
        negotiation = self._propose("100")
        self.assertEqual(negotiation.status, "pending")
        self.assertEqual(negotiation.original_price, Decimal("200.00"))

        negotiation_service.respond_to_negotiation(self.seller, negotiation.id, action="counter", counter_price="80")
        negotiation = self.reload(Negotiation, negotiation.id)
        self.assertEqual(negotiation.status, "countered")
        self.assertEqual(negotiation.counter_price, Decimal("80.00"))

        negotiation_service.respond_to_negotiation(self.buyer, negotiation.id, action="accept")
        negotiation = self.reload(Negotiation, negotiation.id)
        self.assertEqual(negotiation.status, "accepted")
        self.assertEqual(negotiation.final_price, Decimal("80.00"))
        self.assertIsNone(negotiation.active_key)

        actions = [o.action for o in negotiation_service.negotiation_offers(negotiation)]
        self.assertEqual(actions, ["propose", "counter", "accept"])

        order = order_service.create_order(
            self.buyer,
            product_id=self.listing.id,
            order_type="meetup",
            negotiation_id=negotiation.id,
        )
        self.assertEqual(order.product_amount, Decimal("80.00"))
        self.assertEqual(order.total_amount, Decimal("80.00"))

    def test_seller_accepting_proposal_uses_proposed_price(self):
        negotiation = self._propose("150")
        negotiation_service.respond_to_negotiation(self.seller, negotiation.id, action="accepted")
        negotiation = self.reload(Negotiation, negotiation.id)
        self.assertEqual(negotiation.final_price, Decimal("150.00"))

    def test_reject_leaves_no_final_price_and_closes(self):
        negotiation = self._propose("100")
        negotiation_service.respond_to_negotiation(self.seller, negotiation.id, action="reject")
        negotiation = self.reload(Negotiation, negotiation.id)
        self.assertEqual(negotiation.status, "rejected")
        self.assertIsNone(negotiation.final_price)

        with self.assertRaises(PreconditionFailed) as ctx:
            negotiation_service.respond_to_negotiation(self.seller, negotiation.id, action="accept")
        self.assertEqual(ctx.exception.code, "NEGOTIATION_CLOSED")

        # a closed negotiation frees the slot for a new proposal
        fresh = self._propose("120")
        self.assertEqual(fresh.status, "pending")

    def test_only_counterparty_may_respond(self):
        negotiation = self._propose("100")
        with self.assertRaises(AuthorizationError) as ctx:
            negotiation_service.respond_to_negotiation(self.buyer, negotiation.id, action="accept")
        self.assertEqual(ctx.exception.code, "NOT_COUNTERPARTY")

        negotiation_service.respond_to_negotiation(self.seller, negotiation.id, action="counter", counter_price="90")
        with self.assertRaises(AuthorizationError):
            negotiation_service.respond_to_negotiation(self.seller, negotiation.id, action="accept")
        with self.assertRaises(AuthorizationError):
            negotiation_service.respond_to_negotiation(self.outsider, negotiation.id, action="reject")

    def test_one_active_negotiation_per_conversation_and_product(self):
        self._propose("100")
        with self.assertRaises(ConflictError) as ctx:
            self._propose("110")
        self.assertEqual(ctx.exception.code, "NEGOTIATION_ALREADY_ACTIVE")
        self.assertEqual(Negotiation.query.count(), 1)

    def test_proposal_guards(self):
        with self.assertRaises(ValidationError) as ctx:
            self._propose("abc")
        self.assertEqual(ctx.exception.code, "INVALID_PRICE")
        with self.assertRaises(ValidationError):
            self._propose("0")

        with self.assertRaises(AuthorizationError) as ctx:
            negotiation_service.propose_price(
                self.outsider,
                conversation_id=self.conversation.id,
                product_id=self.listing.id,
                proposed_price="100",
            )
        self.assertEqual(ctx.exception.code, "NOT_CONVERSATION_PARTY")

        with self.assertRaises(AuthorizationError) as ctx:
            negotiation_service.propose_price(
                self.seller,
                conversation_id=self.conversation.id,
                product_id=self.listing.id,
                proposed_price="100",
            )
        self.assertEqual(ctx.exception.code, "CANNOT_OFFER_OWN_PRODUCT")

        self.conversation.is_active = False
        db.session.commit()
        with self.assertRaises(PreconditionFailed) as ctx:
            self._propose("100")
        self.assertEqual(ctx.exception.code, "NO_ACTIVE_CONVERSATION")

    def test_counter_requires_valid_price(self):
        negotiation = self._propose("100")
        with self.assertRaises(ValidationError):
            negotiation_service.respond_to_negotiation(self.seller, negotiation.id, action="counter", counter_price=None)
        with self.assertRaises(ValidationError) as ctx:
            negotiation_service.respond_to_negotiation(self.seller, negotiation.id, action="haggle")
        self.assertEqual(ctx.exception.code, "INVALID_ACTION")
        self.assertEqual(NegotiationOffer.query.count(), 1)

    def test_unaccepted_negotiation_cannot_price_an_order(self):
        negotiation = self._propose("100")
        with self.assertRaises(PreconditionFailed) as ctx:
            order_service.create_order(
                self.buyer,
                product_id=self.listing.id,
                order_type="meetup",
                negotiation_id=negotiation.id,
            )
        self.assertEqual(ctx.exception.code, "NEGOTIATION_NOT_ACCEPTED")

    def test_http_propose_and_respond(self):
        res = self.client.post(
            "/api/negotiations/propose",
            json={"conversation_id": self.conversation.id, "product_id": self.listing.id, "proposed_price": 100},
            headers=self.auth(self.buyer),
        )
        self.assertEqual(res.status_code, 201)
        nid = res.get_json()["negotiation"]["id"]

        res = self.client.post(
            f"/api/negotiations/{nid}/respond",
            json={"action": "counter", "counter_price": "80"},
            headers=self.auth(self.seller),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["negotiation"]["status"], "countered")

        res = self.client.get(f"/api/negotiations/{nid}", headers=self.auth(self.buyer))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(len(res.get_json()["offers"]), 2)

        res = self.client.get(
            f"/api/negotiations?conversation_id={self.conversation.id}",
            headers=self.auth(self.outsider),
        )
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "NOT_CONVERSATION_PARTY")


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

from flask import Blueprint, jsonify, request

from tianguis.errors import ValidationError
from tianguis.services.negotiation_service import (
    get_negotiation_for,
    list_negotiations_for,
    negotiation_offers,
    propose_price,
    respond_to_negotiation,
)
from tianguis.utils.auth import require_user
from tianguis.utils.http import json_body

negotiations_bp = Blueprint("negotiations_bp", __name__, url_prefix="/api/negotiations")


@negotiations_bp.post("/propose")
def propose():
    u = require_user()
    data = json_body()
    negotiation = propose_price(
        u,
        conversation_id=data.get("conversation_id"),
        product_id=data.get("product_id"),
        proposed_price=data.get("proposed_price"),
    )
    return jsonify({"ok": True, "negotiation": negotiation.to_dict()}), 201


@negotiations_bp.post("/<int:negotiation_id>/respond")
def respond(negotiation_id: int):
    u = require_user()
    data = json_body()
    negotiation = respond_to_negotiation(
        u,
        negotiation_id,
        action=data.get("action") or "",
        counter_price=data.get("counter_price"),
    )
    return jsonify({"ok": True, "negotiation": negotiation.to_dict()}), 200


@negotiations_bp.get("/<int:negotiation_id>")
def get_one(negotiation_id: int):
    u = require_user()
    negotiation = get_negotiation_for(u, negotiation_id)
    offers = [o.to_dict() for o in negotiation_offers(negotiation)]
    return jsonify({"ok": True, "negotiation": negotiation.to_dict(), "offers": offers}), 200


@negotiations_bp.get("")
def list_for_conversation():
    u = require_user()
    conversation_id = (request.args.get("conversation_id") or "").strip()
    if not conversation_id:
        raise ValidationError("conversation_id is required", code="CONVERSATION_ID_REQUIRED")
    items = [n.to_dict() for n in list_negotiations_for(u, conversation_id)]
    return jsonify({"ok": True, "items": items}), 200

from __future__ import annotations

from flask import Blueprint, jsonify, request

from tianguis.errors import EngineError
from tianguis.services.order_service import (
    admin_refund,
    arrange_meetup,
    cancel_order,
    confirm_completion,
    confirm_payment,
    create_order,
    get_order_for,
    list_orders_for,
    mark_delivered,
    order_timeline,
    ship_order,
)
from tianguis.utils.auth import require_admin, require_user
from tianguis.utils.http import json_body, query_limit
from tianguis.utils.idempotency import lookup_response, release_key, store_response

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")
admin_orders_bp = Blueprint("admin_orders_bp", __name__, url_prefix="/api/admin")


def _order_response(order, status: int = 200, **extra):
    body = {"ok": True, "order": order.to_dict()}
    body.update(extra)
    return jsonify(body), status


@orders_bp.post("/orders")
def create_order_route():
    u = require_user()
    data = json_body()

    idem = lookup_response(int(u.id), "/api/orders", data)
    if idem and idem[0] in ("hit", "conflict", "required"):
        return jsonify(idem[1]), idem[2]
    idem_row = idem[1] if idem and idem[0] == "miss" else None

    try:
        order = create_order(
            u,
            product_id=data.get("product_id"),
            order_type=data.get("order_type") or "",
            payment_method=data.get("payment_method") or "online",
            negotiation_id=data.get("negotiation_id"),
            shipping_address=data.get("shipping_address"),
        )
    except EngineError:
        if idem_row is not None:
            release_key(idem_row)
        raise

    body = {"ok": True, "order": order.to_dict()}
    if idem_row is not None:
        store_response(idem_row, body, 201)
    return jsonify(body), 201


@orders_bp.get("/orders")
def list_my_orders():
    u = require_user()
    orders = list_orders_for(
        u,
        as_role=request.args.get("role"),
        status=request.args.get("status"),
        limit=query_limit(),
    )
    return jsonify({"ok": True, "items": [o.to_dict() for o in orders]}), 200


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    u = require_user()
    return _order_response(get_order_for(u, order_id))


@orders_bp.get("/orders/<int:order_id>/timeline")
def get_timeline(order_id: int):
    u = require_user()
    items = [t.to_dict() for t in order_timeline(u, order_id)]
    return jsonify({"ok": True, "order_id": order_id, "items": items}), 200


@orders_bp.post("/orders/<int:order_id>/confirm-payment")
def confirm_payment_route(order_id: int):
    u = require_user()
    data = json_body()
    order, replayed = confirm_payment(order_id, data.get("transaction_id") or "", actor=u)
    return _order_response(order, replayed=bool(replayed))


@orders_bp.post("/orders/<int:order_id>/meetup")
def arrange_meetup_route(order_id: int):
    u = require_user()
    data = json_body()
    order = arrange_meetup(
        u,
        order_id,
        location=data.get("location") or "",
        meetup_time=data.get("time"),
        lat=data.get("lat"),
        lng=data.get("lng"),
    )
    return _order_response(order)


@orders_bp.post("/orders/<int:order_id>/ship")
def ship_route(order_id: int):
    u = require_user()
    data = json_body()
    order = ship_order(u, order_id, carrier=data.get("carrier") or "", tracking_number=data.get("tracking_number") or "")
    return _order_response(order)


@orders_bp.post("/orders/<int:order_id>/delivered")
def delivered_route(order_id: int):
    u = require_user()
    return _order_response(mark_delivered(u, order_id))


@orders_bp.post("/orders/<int:order_id>/confirm")
def confirm_route(order_id: int):
    u = require_user()
    return _order_response(confirm_completion(u, order_id))


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel_route(order_id: int):
    u = require_user()
    data = json_body()
    return _order_response(cancel_order(u, order_id, reason=data.get("reason") or ""))


@admin_orders_bp.post("/orders/<int:order_id>/refund")
def admin_refund_route(order_id: int):
    admin = require_admin()
    data = json_body()
    return _order_response(admin_refund(admin, order_id, note=data.get("note") or ""))

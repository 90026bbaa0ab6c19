from __future__ import annotations

from flask import Blueprint, jsonify, request

from tianguis.errors import AuthorizationError
from tianguis.services.dispute_service import get_dispute_for, list_disputes, open_dispute, resolve_dispute
from tianguis.utils.auth import is_arbitrator, require_user
from tianguis.utils.http import json_body, query_limit

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api/disputes")
admin_disputes_bp = Blueprint("admin_disputes_bp", __name__, url_prefix="/api/admin/disputes")


@disputes_bp.post("")
def open_dispute_route():
    u = require_user()
    data = json_body()
    dispute = open_dispute(
        u,
        data.get("order_id"),
        reason=data.get("reason") or "",
        description=data.get("description") or "",
    )
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 201


@disputes_bp.get("/<int:dispute_id>")
def get_dispute(dispute_id: int):
    u = require_user()
    return jsonify({"ok": True, "dispute": get_dispute_for(u, dispute_id).to_dict()}), 200


@admin_disputes_bp.get("")
def admin_list_disputes():
    u = require_user()
    if not is_arbitrator(u):
        raise AuthorizationError("Arbitrator role required", code="ARBITRATOR_REQUIRED")
    items = [d.to_dict() for d in list_disputes(status=request.args.get("status"), limit=query_limit())]
    return jsonify({"ok": True, "items": items}), 200


@admin_disputes_bp.post("/<int:dispute_id>/resolve")
def admin_resolve_dispute(dispute_id: int):
    u = require_user()
    data = json_body()
    dispute = resolve_dispute(u, dispute_id, action=data.get("action") or "", note=data.get("note") or "")
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200

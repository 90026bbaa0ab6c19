from __future__ import annotations

from flask import Blueprint, jsonify, request

from tianguis.errors import ValidationError
from tianguis.services.payout_service import (
    advance_payout,
    get_bank_profile,
    list_payouts,
    payout_stats,
    upsert_bank_profile,
)
from tianguis.services.reconciliation_service import reconcile_payouts
from tianguis.utils.auth import require_admin, require_user
from tianguis.utils.http import json_body, query_limit

payouts_bp = Blueprint("payouts_bp", __name__, url_prefix="/api/payouts")
admin_payouts_bp = Blueprint("admin_payouts_bp", __name__, url_prefix="/api/admin")


@payouts_bp.get("/bank-profile")
def get_my_bank_profile():
    u = require_user()
    profile = get_bank_profile(u.id)
    return jsonify({"ok": True, "profile": profile.to_dict() if profile else None}), 200


@payouts_bp.put("/bank-profile")
def put_my_bank_profile():
    u = require_user()
    data = json_body()
    profile = upsert_bank_profile(
        u,
        clabe=str(data.get("clabe") or ""),
        bank_name=str(data.get("bank_name") or ""),
        holder_name=str(data.get("holder_name") or ""),
    )
    return jsonify({"ok": True, "profile": profile.to_dict()}), 200


@payouts_bp.get("")
def list_my_payouts():
    u = require_user()
    items = [p.to_dict() for p in list_payouts(seller_id=int(u.id), status=request.args.get("status"), limit=query_limit())]
    return jsonify({"ok": True, "items": items}), 200


@admin_payouts_bp.get("/payouts")
def admin_list_payouts():
    require_admin()
    seller_id = (request.args.get("seller_id") or "").strip()
    if seller_id and not seller_id.isdigit():
        raise ValidationError("seller_id must be an integer", code="INVALID_SELLER_ID")
    items = list_payouts(
        status=request.args.get("status"),
        seller_id=int(seller_id) if seller_id else None,
        limit=query_limit(),
    )
    return jsonify({"ok": True, "items": [p.to_dict() for p in items], "stats": payout_stats()}), 200


@admin_payouts_bp.post("/payouts/<int:payout_id>/<action>")
def admin_advance_payout(payout_id: int, action: str):
    admin = require_admin()
    data = json_body()
    payout = advance_payout(
        admin,
        payout_id,
        action.replace("-", "_"),
        reference=data.get("reference"),
        reason=data.get("reason"),
    )
    return jsonify({"ok": True, "payout": payout.to_dict()}), 200


@admin_payouts_bp.post("/reconcile/payouts")
def admin_reconcile_payouts():
    admin = require_admin()
    data = json_body()
    summary = reconcile_payouts(repair=bool(data.get("repair")), actor=admin)
    return jsonify(summary), 200

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from flask import current_app, has_request_context, request
from sqlalchemy.exc import IntegrityError

from tianguis.extensions import db
from tianguis.models import IdempotencyKey


def idempotency_enforced() -> bool:
    return bool(current_app.config.get("ENABLE_IDEMPOTENCY_ENFORCEMENT", False))


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(*, method: str, scope: str, payload: Any) -> str:
    raw = f"{method.strip().upper()}|{scope.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _required_key_response(scope: str) -> tuple[str, dict, int]:
    return (
        "required",
        {
            "ok": False,
            "error": "IDEMPOTENCY_KEY_REQUIRED",
            "message": f"Idempotency-Key header is required for {scope or 'this operation'}.",
            "status": 400,
        },
        400,
    )


def _reuse_conflict_response() -> tuple[str, dict, int]:
    return (
        "conflict",
        {
            "ok": False,
            "error": "IDEMPOTENCY_KEY_REUSE",
            "message": "This Idempotency-Key was already used with a different request payload.",
            "status": 409,
        },
        409,
    )


def lookup_response(user_id: int | None, scope: str, payload: Any):
    """Resolve an Idempotency-Key for `scope`.

    Returns None when no key was sent (and none is required), otherwise a
    tuple of (outcome, body_or_row, status) where outcome is one of
    "hit", "miss", "conflict" or "required".
    """
    k = get_idempotency_key()
    if not k:
        if idempotency_enforced():
            return _required_key_response(scope)
        return None

    method = request.method if has_request_context() else "POST"
    req_hash = _hash_request(method=method, scope=scope, payload=payload)
    owner = int(user_id) if user_id is not None else None
    # Keys are private to the caller that sent them.
    row = IdempotencyKey.query.filter_by(scope=scope, user_id=owner, key=k).first()
    if row:
        if (row.request_hash or "") != req_hash:
            return _reuse_conflict_response()
        if row.response_json:
            return ("hit", json.loads(row.response_json), int(row.status_code or 200))
        # first request with this key is still in flight
        return (
            "conflict",
            {
                "ok": False,
                "error": "IDEMPOTENCY_KEY_IN_FLIGHT",
                "message": "A request with this Idempotency-Key is still being processed.",
                "status": 409,
            },
            409,
        )

    row = IdempotencyKey(
        key=k,
        scope=scope,
        user_id=owner,
        request_hash=req_hash,
        response_json=None,
        status_code=200,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return _reuse_conflict_response()
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Forget a key whose request failed so the client may retry with it."""
    db.session.delete(row)
    db.session.commit()

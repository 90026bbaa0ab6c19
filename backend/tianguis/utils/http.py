from __future__ import annotations

from flask import request

from tianguis.errors import ValidationError


def json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("JSON body must be an object", code="INVALID_PAYLOAD")
    return payload


def query_limit(default: int = 100, maximum: int = 500) -> int:
    raw = (request.args.get("limit") or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        raise ValidationError("limit must be an integer", code="INVALID_LIMIT")
    return max(1, min(value, maximum))

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from tianguis.errors import ConflictError
from tianguis.extensions import db
from tianguis.models import OrderTransition


def actor_fields(actor) -> tuple[str, int | None]:
    """(actor_type, actor_id) for a User, or ("system", None)."""
    if actor is None:
        return "system", None
    role = (getattr(actor, "role", None) or "user").strip().lower()
    return role[:32], int(actor.id)


def record_order_transition(
    order,
    *,
    event: str,
    from_status: str,
    to_status: str,
    actor=None,
    reason: str = "",
    metadata: dict | None = None,
) -> OrderTransition:
    actor_type, actor_id = actor_fields(actor)
    # version_id is the pre-write version, so the key is unique per write.
    key = f"{event}:v{int(order.version_id or 0)}"
    row = OrderTransition(
        order_id=int(order.id),
        event=event[:48],
        from_status=from_status or "",
        to_status=to_status or "",
        actor_type=actor_type,
        actor_id=actor_id,
        idempotency_key=key[:160],
        reason=(reason or "")[:240],
        metadata_json=json.dumps(metadata or {}, default=str)[:4000],
        created_at=datetime.utcnow(),
    )
    db.session.add(row)
    return row


@contextmanager
def atomic_transition(subject: str, *, integrity_code: str = "CONCURRENT_MODIFICATION"):
    """Commit everything staged inside the block as one unit, or nothing.

    A version mismatch (another writer got there first) or a unique-key
    violation is reported as ConflictError so the caller refetches. Any
    other error rolls the staged changes back and propagates.
    """
    try:
        yield
        db.session.commit()
    except StaleDataError as e:
        db.session.rollback()
        raise ConflictError(
            f"{subject} was modified concurrently; refetch and retry",
            code="CONCURRENT_MODIFICATION",
        ) from e
    except IntegrityError as e:
        db.session.rollback()
        raise ConflictError(
            f"{subject} conflicts with an existing record",
            code=integrity_code,
        ) from e
    except Exception:
        db.session.rollback()
        raise

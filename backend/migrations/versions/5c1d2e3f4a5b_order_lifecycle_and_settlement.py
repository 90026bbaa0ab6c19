"""order lifecycle, disputes and payout settlement

Revision ID: 5c1d2e3f4a5b
Revises:
Create Date: 2026-10-18 09:40:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "5c1d2e3f4a5b"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _index_exists(bind, table_name: str, index_name: str) -> bool:
    try:
        indexes = sa.inspect(bind).get_indexes(table_name)
        return any((idx.get("name") or "") == index_name for idx in indexes)
    except Exception:
        return False


def _create_index(bind, table_name: str, column: str, *, unique: bool = False) -> None:
    name = f"ix_{table_name}_{column}"
    if not _index_exists(bind, table_name, name):
        op.create_index(name, table_name, [column], unique=unique)


def _money(name: str, *, nullable: bool = False):
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable)


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="user"),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
    _create_index(bind, "users", "email", unique=True)

    if not _table_exists(bind, "listings"):
        op.create_table(
            "listings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("title", sa.String(length=120), nullable=False),
            _money("price"),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="MXN"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
    for col in ("seller_id", "status"):
        _create_index(bind, "listings", col)

    if not _table_exists(bind, "conversations"):
        op.create_table(
            "conversations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint("listing_id", "buyer_id", name="uq_conversation_listing_buyer"),
        )
    for col in ("listing_id", "buyer_id", "seller_id"):
        _create_index(bind, "conversations", col)

    if not _table_exists(bind, "negotiations"):
        op.create_table(
            "negotiations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("conversation_id", sa.Integer(), sa.ForeignKey("conversations.id"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
            sa.Column("proposer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("responder_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            _money("original_price"),
            _money("proposed_price"),
            _money("counter_price", nullable=True),
            _money("final_price", nullable=True),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="MXN"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("active_key", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("responded_at", sa.DateTime(), nullable=True),
            sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
            sa.UniqueConstraint("active_key", name="uq_negotiations_active_key"),
        )
    for col in ("conversation_id", "product_id", "proposer_id", "responder_id", "status"):
        _create_index(bind, "negotiations", col)

    if not _table_exists(bind, "negotiation_offers"):
        op.create_table(
            "negotiation_offers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("negotiation_id", sa.Integer(), sa.ForeignKey("negotiations.id"), nullable=False),
            sa.Column("action", sa.String(length=16), nullable=False),
            _money("price", nullable=True),
            sa.Column("actor_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
    _create_index(bind, "negotiation_offers", "negotiation_id")

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
            sa.Column("negotiation_id", sa.Integer(), sa.ForeignKey("negotiations.id"), nullable=True),
            _money("product_amount"),
            sa.Column("shipping_fee", sa.Numeric(12, 2), nullable=False, server_default="0"),
            _money("total_amount"),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="MXN"),
            sa.Column("order_type", sa.String(length=16), nullable=False),
            sa.Column("payment_method", sa.String(length=16), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending_payment"),
            sa.Column("payment_reference", sa.String(length=128), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("shipping_address", sa.Text(), nullable=True),
            sa.Column("shipping_carrier", sa.String(length=64), nullable=True),
            sa.Column("tracking_number", sa.String(length=128), nullable=True),
            sa.Column("shipped_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("meetup_location", sa.String(length=255), nullable=True),
            sa.Column("meetup_time", sa.DateTime(), nullable=True),
            sa.Column("meetup_lat", sa.Float(), nullable=True),
            sa.Column("meetup_lng", sa.Float(), nullable=True),
            sa.Column("confirmation_state", sa.String(length=24), nullable=False, server_default="unconfirmed"),
            sa.Column("buyer_confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("seller_confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("disputed_from", sa.String(length=32), nullable=True),
            sa.Column("payout_status", sa.String(length=16), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
            sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
            sa.UniqueConstraint("payment_reference", name="uq_orders_payment_reference"),
            sa.CheckConstraint("buyer_id <> seller_id", name="ck_orders_distinct_parties"),
            sa.CheckConstraint("total_amount > 0", name="ck_orders_total_positive"),
        )
    for col in ("buyer_id", "seller_id", "product_id", "status", "expires_at"):
        _create_index(bind, "orders", col)

    if not _table_exists(bind, "order_transitions"):
        op.create_table(
            "order_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("event", sa.String(length=48), nullable=False),
            sa.Column("from_status", sa.String(length=32), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=32), nullable=False),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint("order_id", "idempotency_key", name="uq_order_transition_order_key"),
        )
    _create_index(bind, "order_transitions", "order_id")

    if not _table_exists(bind, "disputes"):
        op.create_table(
            "disputes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("open_order_id", sa.Integer(), nullable=True),
            sa.Column("raised_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("reason", sa.String(length=32), nullable=False),
            sa.Column("description", sa.Text(), nullable=False, server_default=""),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="open"),
            sa.Column("resolution_note", sa.Text(), nullable=True),
            sa.Column("resolved_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
            sa.UniqueConstraint("open_order_id", name="uq_disputes_open_order_id"),
        )
    for col in ("order_id", "status"):
        _create_index(bind, "disputes", col)

    if not _table_exists(bind, "payouts"):
        op.create_table(
            "payouts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            _money("gross_amount"),
            _money("platform_fee"),
            _money("payout_amount"),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="MXN"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("payout_reference", sa.String(length=255), nullable=True),
            sa.Column("failure_reason", sa.String(length=240), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("payout_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
            sa.UniqueConstraint("order_id", name="uq_payouts_order_id"),
        )
    for col in ("seller_id", "status"):
        _create_index(bind, "payouts", col)

    if not _table_exists(bind, "payout_transitions"):
        op.create_table(
            "payout_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("payout_id", sa.Integer(), sa.ForeignKey("payouts.id"), nullable=False),
            sa.Column("from_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=16), nullable=False),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
    _create_index(bind, "payout_transitions", "payout_id")

    if not _table_exists(bind, "seller_bank_profiles"):
        op.create_table(
            "seller_bank_profiles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("clabe", sa.String(length=18), nullable=False),
            sa.Column("bank_name", sa.String(length=120), nullable=False),
            sa.Column("holder_name", sa.String(length=160), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint("user_id", name="uq_seller_bank_profiles_user_id"),
        )

    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="stripe"),
            sa.Column("event_id", sa.String(length=128), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("transaction_id", sa.String(length=128), nullable=True),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="received"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=64), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
        )
    for col in ("transaction_id", "order_id"):
        _create_index(bind, "webhook_events", col)

    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_json", sa.Text(), nullable=True),
            sa.Column("status_code", sa.Integer(), nullable=False, server_default="200"),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint("scope", "user_id", "key", name="uq_idempotency_scope_user_key"),
        )
    _create_index(bind, "idempotency_keys", "key")

    if not _table_exists(bind, "audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=40), nullable=True),
            sa.Column("subject_id", sa.String(length=64), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.UniqueConstraint("idempotency_key", name="uq_audit_events_idempotency_key"),
        )
    for col in ("created_at", "event_type", "actor_user_id", "subject_type", "subject_id"):
        _create_index(bind, "audit_events", col)


def downgrade():
    bind = op.get_bind()
    for table_name in (
        "audit_events",
        "idempotency_keys",
        "webhook_events",
        "seller_bank_profiles",
        "payout_transitions",
        "payouts",
        "disputes",
        "order_transitions",
        "orders",
        "negotiation_offers",
        "negotiations",
        "conversations",
        "listings",
        "users",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)

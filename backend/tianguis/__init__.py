import logging
import os
from datetime import datetime

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from tianguis.errors import EngineError
from tianguis.extensions import cors, db, migrate
from tianguis.integrations.payments.factory import payment_health
from tianguis.segments.segment_disputes import disputes_bp, admin_disputes_bp
from tianguis.segments.segment_negotiations import negotiations_bp
from tianguis.segments.segment_orders_api import orders_bp, admin_orders_bp
from tianguis.segments.segment_payment_webhooks import webhooks_bp
from tianguis.segments.segment_payouts import payouts_bp, admin_payouts_bp
from tianguis.utils.commission import DEFAULT_PLATFORM_FEE_BPS, bps_fee_policy
from tianguis.utils.observability import init_sentry, install_request_observers


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(value, maximum))


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _with_trace(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app(config: dict | None = None):
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("TIANGUIS_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("PAYMENTS_WEBHOOK_SECRET") or "").strip():
            raise RuntimeError("PAYMENTS_WEBHOOK_SECRET must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        if env in ("prod", "production"):
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'tianguis.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url

    engine_options = {}
    if not database_url.startswith("sqlite://"):
        engine_options = {
            "pool_pre_ping": True,
            "pool_reset_on_return": "rollback",
            "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
            "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
            "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
            "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
        }
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # Marketplace settings
    app.config["DEFAULT_CURRENCY"] = (os.getenv("DEFAULT_CURRENCY") or "MXN").strip().upper()[:3]
    app.config["PLATFORM_FEE_BPS"] = _env_int("PLATFORM_FEE_BPS", DEFAULT_PLATFORM_FEE_BPS, minimum=0, maximum=10000)
    app.config["SHIPPING_FLAT_FEE"] = (os.getenv("SHIPPING_FLAT_FEE") or "50").strip()
    app.config["ORDER_PAYMENT_TTL_HOURS"] = _env_int("ORDER_PAYMENT_TTL_HOURS", 24, minimum=1, maximum=24 * 30)
    app.config["PAYMENTS_PROVIDER"] = (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()
    app.config["STRIPE_SECRET_KEY"] = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    app.config["PAYMENTS_TIMEOUT_SECONDS"] = _env_int("PAYMENTS_TIMEOUT_SECONDS", 15, minimum=1, maximum=120)
    app.config["PAYMENTS_WEBHOOK_SECRET"] = (os.getenv("PAYMENTS_WEBHOOK_SECRET") or "").strip()
    app.config["PAYMENTS_WEBHOOK_QUEUE"] = _env_flag("PAYMENTS_WEBHOOK_QUEUE", False)
    app.config["PAYMENT_REFUND_QUEUE"] = _env_flag("PAYMENT_REFUND_QUEUE", False)
    app.config["ENABLE_IDEMPOTENCY_ENFORCEMENT"] = _env_flag("ENABLE_IDEMPOTENCY_ENFORCEMENT", False)

    # Background workers
    redis_url = (os.getenv("REDIS_URL") or "").strip()
    app.config["CELERY_BROKER_URL"] = (
        (os.getenv("CELERY_BROKER_URL") or "").strip() or redis_url or "redis://localhost:6379/0"
    )
    app.config["CELERY_RESULT_BACKEND"] = (
        (os.getenv("CELERY_RESULT_BACKEND") or "").strip() or redis_url or app.config["CELERY_BROKER_URL"]
    )
    app.config["ORDER_EXPIRY_INTERVAL_SECONDS"] = _env_int("ORDER_EXPIRY_INTERVAL_SECONDS", 300, minimum=30, maximum=86400)

    if config:
        app.config.update(config)
    if not callable(app.config.get("PLATFORM_FEE_FUNC")):
        app.config["PLATFORM_FEE_FUNC"] = bps_fee_policy(int(app.config["PLATFORM_FEE_BPS"]))

    level_name = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    app.logger.setLevel(getattr(logging, level_name, logging.INFO))
    logging.getLogger("tianguis").setLevel(getattr(logging, level_name, logging.INFO))

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.errorhandler(EngineError)
    def _engine_error(error: EngineError):
        if error.status_code >= 500:
            app.logger.warning("engine_error code=%s path=%s message=%s", error.code, request.path, error.message)
        return jsonify(_with_trace(error.to_dict())), int(error.status_code)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_with_trace(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        db.session.rollback()
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_with_trace(payload)), 500

    # Register API routes
    app.register_blueprint(negotiations_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(admin_orders_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(admin_disputes_bp)
    app.register_blueprint(payouts_bp)
    app.register_blueprint(admin_payouts_bp)
    app.register_blueprint(webhooks_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            db_error = str(e)[:300]
        payload = {
            "ok": True,
            "service": "tianguis-backend",
            "env": env,
            "db": db_state,
            "payments": payment_health(app.config),
            "ts": datetime.utcnow().isoformat(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.teardown_appcontext
    def _shutdown_session(exc):
        if exc is not None:
            db.session.rollback()

    @app.cli.command("expire-orders")
    @click.option("--limit", default=500, show_default=True, help="Max orders to scan")
    def expire_orders_command(limit: int):
        from tianguis.jobs.order_expiry_runner import expire_unpaid_orders

        result = expire_unpaid_orders(limit=int(limit))
        click.echo(f"expire_orders_ok expired={result['expired']} skipped={result['skipped']}")

    @app.cli.command("reconcile-payouts")
    @click.option("--repair", is_flag=True, help="Create missing payouts and fix drifted projections")
    def reconcile_payouts_command(repair: bool):
        from tianguis.services.reconciliation_service import reconcile_payouts

        summary = reconcile_payouts(repair=bool(repair))
        click.echo(
            f"reconcile_payouts_ok missing={len(summary['missing_payouts'])} "
            f"drift={len(summary['projection_drift'])} orphans={len(summary['orphan_payouts'])}"
        )

    return app

import os
import subprocess
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from partsmarket.extensions import cors, db, migrate
from partsmarket.integrations.payments.factory import payment_health
from partsmarket.models import User
from partsmarket.segments.segment_orders import orders_bp, vendor_orders_bp
from partsmarket.segments.segment_payment_webhooks import webhooks_bp
from partsmarket.segments.segment_payments import admin_payments_bp, payments_bp
from partsmarket.segments.segment_payouts import admin_payouts_bp, payouts_bp
from partsmarket.utils.jwt_utils import decode_token, get_bearer_token
from partsmarket.utils.observability import init_sentry, install_request_observers

_FEE_SCHEDULE_KEYS = (
    "DELIVERY_BASE_FEE",
    "DELIVERY_FREE_DISTANCE_KM",
    "DELIVERY_PER_KM_FEE",
    "DELIVERY_FREE_ITEM_COUNT",
    "DELIVERY_PER_ITEM_FEE",
    "DELIVERY_MINIMUM_FEE",
    "DELIVERY_DEFAULT_FEE",
    "TAX_RATE",
    "DEFAULT_COMMISSION_RATE",
)


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("PARTSMARKET_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = "sqlite:///instance/partsmarket.db"
    in_memory_db = database_url == "sqlite:///:memory:"
    # Relative sqlite paths resolve against the instance dir, not the cwd.
    if database_url.startswith("sqlite:///") and not in_memory_db:
        sqlite_path = database_url[len("sqlite:///"):]
        if not os.path.isabs(sqlite_path):
            canonical_path = os.path.join(instance_dir, os.path.basename(sqlite_path) or "partsmarket.db")
            database_url = f"sqlite:///{canonical_path.replace(os.sep, '/')}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            int(engine_options.get("pool_size", 0) or 0),
            int(engine_options.get("max_overflow", 0) or 0),
            int(engine_options.get("pool_timeout", 0) or 0),
            int(engine_options.get("pool_recycle", 0) or 0),
        )
    if database_url.startswith("sqlite://") and not in_memory_db:
        # Concurrent writers wait for the file lock instead of failing fast.
        engine_options["connect_args"] = {"timeout": _env_int("SQLITE_BUSY_TIMEOUT_SECONDS", 30, minimum=1, maximum=600)}
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # Payments
    app.config["PAYMENTS_PROVIDER"] = (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()
    app.config["FLUTTERWAVE_SECRET_KEY"] = (os.getenv("FLUTTERWAVE_SECRET_KEY") or "").strip()
    app.config["FLUTTERWAVE_SECRET_HASH"] = (os.getenv("FLUTTERWAVE_SECRET_HASH") or "").strip()
    app.config["FLUTTERWAVE_BASE_URL"] = (os.getenv("FLUTTERWAVE_BASE_URL") or "https://api.flutterwave.com/v3").strip()
    app.config["FLUTTERWAVE_TRANSFER_CALLBACK_URL"] = (os.getenv("FLUTTERWAVE_TRANSFER_CALLBACK_URL") or "").strip()
    app.config["PAYMENT_REDIRECT_URL"] = (os.getenv("PAYMENT_REDIRECT_URL") or "").strip()
    app.config["PAYMENT_CURRENCY"] = (os.getenv("PAYMENT_CURRENCY") or "NGN").strip().upper()
    app.config["MIN_PAYOUT_AMOUNT"] = _env_int("MIN_PAYOUT_AMOUNT", 1000, minimum=1, maximum=10_000_000)

    # Pricing overrides; unset keys fall back to the FeeSchedule defaults.
    for key in _FEE_SCHEDULE_KEYS:
        raw = (os.getenv(key) or "").strip()
        if raw:
            app.config[key] = raw

    app.config["LOW_STOCK_QUEUE"] = _env_flag("LOW_STOCK_QUEUE", not in_memory_db)

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        return jsonify(payload), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        return jsonify(payload), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(vendor_orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(admin_payments_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(payouts_bp)
    app.register_blueprint(admin_payouts_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "partsmarket-backend",
            "env": env,
            "db": db_state,
            "payments": payment_health(app.config),
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/api/version")
    def version():
        return jsonify({
            "ok": True,
            "alembic_head": _resolve_alembic_head(),
            "git_sha": _resolve_git_sha(),
        })

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        token = get_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        try:
            uid = int(payload.get("sub"))
        except (TypeError, ValueError):
            return
        g.auth_user_id = uid
        user = db.session.get(User, uid)
        if user:
            g.auth_role = (getattr(user, "role", None) or "customer").strip().lower()
            try:
                import sentry_sdk

                sentry_sdk.set_user({"id": str(uid)})
                sentry_sdk.set_tag("auth_role", g.auth_role)
            except Exception:
                pass

    @app.before_request
    def _reset_db_session():
        db.session.rollback()

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("bootstrap-admin")
    def bootstrap_admin():
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if env not in ("dev", "development", "local", "test") and not allow:
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or PARTSMARKET_ENV=dev.")

        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        password = (os.getenv("ADMIN_PASSWORD") or "").strip()
        phone = (os.getenv("ADMIN_PHONE") or "").strip() or None
        if not email or not password:
            raise click.ClickException("ADMIN_EMAIL and ADMIN_PASSWORD must be set.")

        u = User.query.filter_by(email=email).first()
        try:
            if u:
                u.set_password(password)
                u.role = "admin"
            else:
                u = User(name=email.split("@")[0], email=email, role="admin", phone=phone)
                u.set_password(password)
                db.session.add(u)
            db.session.commit()
            click.echo(f"admin_bootstrap_ok {u.email}")
        except Exception as e:
            db.session.rollback()
            if "unique" in str(e).lower():
                raise click.ClickException("Email or phone already in use.")
            raise click.ClickException("Failed to bootstrap admin.")

    @app.cli.command("reconcile-earnings")
    @click.option("--fail-on-drift", is_flag=True, help="Exit non-zero when drift is found.")
    def reconcile_earnings(fail_on_drift: bool):
        from partsmarket.services.reconciliation_service import recompute_payee_balances, recompute_refund_counters

        drift = 0
        for report in (recompute_payee_balances(db.session), recompute_refund_counters(db.session)):
            drift += int(report.get("drift_count") or 0)
            click.echo(f"{report['scope']} drift_count={report['drift_count']}")
            for item in report["drift_items"]:
                click.echo(f"  {item}")
        if drift and fail_on_drift:
            raise click.ClickException(f"ledger drift detected ({drift} rows)")

    return app

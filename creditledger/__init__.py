import os
from flask import Flask, request, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, csrf, login_manager, limiter, enable_sqlite_savepoints
from .errors import BillingError
from .security import init_security
from .observability import init_logging, init_sentry


def create_app(config_object=None, callbacks=None):
    """
    Build the billing service.

    `callbacks` is the host's BillingCallbacks implementation; it is fired
    after each committed subscription / credit transition.
    """
    app = Flask(__name__)

    # ---- Rate limiting storage ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(config_object or get_config())

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("STRIPE_SECRET_KEY")
        _require("STRIPE_WEBHOOK_SECRET")
        init_security(app)

    init_logging(app)
    init_sentry(app)

    # Init extensions
    db.init_app(app)
    with app.app_context():
        enable_sqlite_savepoints(db.engine)
    migrate.init_app(app, db, directory="migrations")
    csrf.init_app(app)
    login_manager.init_app(app)
    limiter.init_app(app)

    from . import identity  # noqa: F401  registers the user loader

    # Plan catalog is immutable for the life of the process
    from .billing.catalog import PlanCatalog
    from .billing.callbacks import BillingCallbacks
    app.extensions["creditledger"] = {
        "catalog": PlanCatalog.from_config(app.config),
        "callbacks": callbacks or BillingCallbacks(),
    }

    # Blueprints
    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.credits import bp as credits_bp
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(credits_bp, url_prefix="/api")

    @app.get("/healthz")
    @limiter.exempt
    def healthz():
        return jsonify({"ok": True}), 200

    # ---- Error handlers (JSON only) ----
    @app.errorhandler(BillingError)
    def handle_billing_error(e):
        if e.http_status >= 500:
            app.logger.warning("billing_error %s: %s", e.code, e.message)
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "not_found", "code": 404}, 404

    @app.errorhandler(401)
    def unauthorized(e):
        return {"error": "unauthorized", "code": 401}, 401

    from flask_wtf.csrf import CSRFError

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return {"error": "csrf_failed", "code": 400, "message": e.description}, 400

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "code": 429}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        app.logger.info("rate_limited path=%s", request.path)
        return (payload, 429, headers)

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    # Ensure the Stripe SDK is initialized for every worker/process.
    import stripe

    key = app.config.get("STRIPE_SECRET_KEY")
    if key:
        stripe.api_key = key
    else:
        app.logger.warning("Stripe secret key missing; processor calls will fail")

    return app

import os
from flask import Flask, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, limiter
from .observability import init_logging, init_sentry


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_app(config_overrides=None, engine_overrides=None):
    app = Flask(__name__)

    # ---- Rate limiting storage configuration ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(get_config())
    if config_overrides:
        app.config.update(config_overrides)

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("STRIPE_WEBHOOK_SECRET")

    init_logging(app)
    init_sentry(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    limiter.init_app(app)

    from . import models  # noqa: F401  (register tables on db.metadata)

    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            from sqlalchemy import event
            event.listen(db.engine, "connect", _enable_sqlite_foreign_keys)

    # Reconciliation engine: configured once, injected into the webhook route
    from .billing import EngineSettings, ReconciliationEngine
    if app.config.get("STRIPE_WEBHOOK_SECRET"):
        settings = EngineSettings.from_config(app.config, **(engine_overrides or {}))
        app.extensions["reconciler"] = ReconciliationEngine(settings)
    else:
        app.logger.warning("Stripe webhook secret missing; webhook endpoint will return 500")

    from .blueprints.webhooks import bp as webhooks_bp
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "code": 404}), 404

    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "code": 429}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        return (payload, 429, headers)

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal_error", "code": 500}), 500

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    return app

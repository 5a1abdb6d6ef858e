import os
import json
import logging
from logging.config import dictConfig

import sentry_sdk
from pythonjsonlogger.json import JsonFormatter


def init_logging(app):
    """Structured logs (JSON) in staging/prod; keep default console in dev/tests."""
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    level = (app.config.get("LOG_LEVEL") or "INFO").upper()
    if app_env in ("staging", "production"):
        fmt = "%(asctime)s %(levelname)s %(name)s %(message)s"
        dictConfig({
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonFormatter, "fmt": fmt}},
            "handlers": {"wsgi": {"class": "logging.StreamHandler", "formatter": "json"}},
            "root": {"level": level, "handlers": ["wsgi"]},
        })
    else:
        logging.getLogger("subsync").setLevel(level)


def init_sentry(app):
    """Wire Sentry if DSN present; safe no-op otherwise."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    try:
        from sentry_sdk.integrations.flask import FlaskIntegration
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
            environment=os.getenv("APP_ENV", "development"),
        )
    except Exception as exc:
        app.logger.warning("Sentry init skipped: %s", exc)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields):
    """
    Minimal structured log: one JSON object per line.
    Values must be JSON-friendly; anything else is stringified.
    """
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str, sort_keys=True))


def alert(logger: logging.Logger, event: str, **fields):
    """Warning log that also pages through Sentry (no-op when Sentry is off)."""
    log_event(logger, event, level=logging.WARNING, **fields)
    sentry_sdk.capture_message(f"{event}: {json.dumps(fields, default=str, sort_keys=True)}", level="warning")

from flask import request, jsonify, current_app

from . import bp
from subsync.extensions import limiter
from subsync.billing.errors import InvalidSignature, MalformedEvent, TransientStorageError


def _engine():
    return current_app.extensions.get("reconciler")


def _webhook_limit():
    return current_app.config.get("WEBHOOK_RATE_LIMIT") or "600 per minute"


# ----- Stripe Webhook (membership lifecycle) -----
@bp.post("/stripe")
@limiter.limit(_webhook_limit)
def stripe_webhook():
    """
    Provider -> /webhooks/stripe
    Verifies the signature, then applies the event exactly once.
    200: applied, duplicate, ignored or skipped (unfixable) events
    400: bad signature or malformed body (never worth a redelivery)
    500: transient storage failure (provider redelivers)
    """
    engine = _engine()
    if engine is None:
        current_app.logger.error("stripe_webhook_unconfigured")
        return jsonify({"error": "webhook_not_configured"}), 500

    raw_bytes = request.get_data(cache=False, as_text=False) or b""
    header_name = current_app.config.get("WEBHOOK_SIGNATURE_HEADER", "Stripe-Signature")
    sig_header = request.headers.get(header_name, "")

    try:
        outcome = engine.handle(raw_bytes, sig_header)
    except InvalidSignature as exc:
        current_app.logger.warning("stripe_webhook_invalid_signature: %s", exc)
        return jsonify({"error": "invalid_signature"}), 400
    except MalformedEvent as exc:
        current_app.logger.warning("stripe_webhook_malformed: %s", exc)
        return jsonify({"error": "malformed_event"}), 400
    except TransientStorageError:
        current_app.logger.exception("stripe_webhook_transient_error")
        return jsonify({"error": "transient_error"}), 500

    return jsonify(outcome.to_dict()), 200

import json
import logging

import stripe

from subsync.billing.errors import InvalidSignature, MalformedEvent
from subsync.billing.events import Event, parse_event
from subsync.observability import log_event

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def verify_signature(payload: str, signature_header: str, secret: str, tolerance: int = DEFAULT_TOLERANCE_SECONDS) -> None:
    """
    Provider scheme: header "t=<unix>,v1=<hex hmac-sha256(secret, f'{t}.{payload}')>".
    The SDK recomputes the digest, compares in constant time and rejects
    timestamps older than `tolerance` seconds.
    """
    if not secret:
        raise InvalidSignature("webhook secret not configured")
    if not signature_header:
        raise InvalidSignature("missing signature header")
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature(str(exc)) from exc


def verify_and_decode(payload: bytes, signature_header: str, secret: str, tolerance: int = DEFAULT_TOLERANCE_SECONDS) -> Event:
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedEvent("payload is not valid UTF-8") from exc

    verify_signature(text, signature_header, secret, tolerance)

    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise MalformedEvent("payload is not valid JSON") from exc

    event = parse_event(raw)
    log_event(logger, "webhook_received", event_id=event.id, event_type=event.type)
    return event

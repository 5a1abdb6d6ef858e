"""
Reconciliation engine: turns one signed provider event into at most one
committed change to membership, payment ledger and usage limits.

    intake -> router -> [lock membership -> claim event id -> handler -> commit]
                                                                    -> notifications

Everything between the brackets is a single transaction. A duplicate event
id, a write conflict or a storage failure rolls all of it back.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from subsync.billing import notifications
from subsync.billing.errors import (
    AlreadyProcessed,
    ConcurrentWriteConflict,
    ConsistencyGap,
    PermanentFailure,
    TransientStorageError,
)
from subsync.billing.handlers import HandlerContext, lock_membership
from subsync.billing.idempotency import claim_event, record_skip, was_processed
from subsync.billing.intake import DEFAULT_TOLERANCE_SECONDS, verify_and_decode
from subsync.billing.plans import ConfigPlanCatalog, PlanCatalog
from subsync.billing.router import resolve_handler
from subsync.observability import alert, log_event
from subsync.utils.helpers import utcnow

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
SKIPPED = "skipped"


@dataclass
class EngineSettings:
    webhook_secret: str
    plans: PlanCatalog
    notifier: notifications.Notifier = field(default_factory=notifications.LogNotifier)
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS
    storage_timeout_seconds: float = 5.0
    clock: Callable[[], datetime] = utcnow

    @classmethod
    def from_config(cls, config, **overrides) -> "EngineSettings":
        values = dict(
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            plans=ConfigPlanCatalog(config.get("MEMBERSHIP_PLANS") or {}),
            tolerance_seconds=int(config.get("WEBHOOK_TOLERANCE_SECONDS", DEFAULT_TOLERANCE_SECONDS)),
            storage_timeout_seconds=float(config.get("STORAGE_TIMEOUT_SECONDS", 5.0)),
        )
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class Outcome:
    status: str
    event_id: str
    event_type: str
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"ok": True, "outcome": self.status, "event_id": self.event_id}
        if self.reason:
            data["reason"] = self.reason
        return data


class ReconciliationEngine:
    # One local retry after a lost optimistic-lock race
    MAX_ATTEMPTS = 2

    def __init__(self, settings: EngineSettings, session_factory: Optional[Callable] = None):
        if not settings.webhook_secret:
            raise ValueError("webhook secret is required")
        self.settings = settings
        self._session_factory = session_factory

    @property
    def session(self):
        if self._session_factory is not None:
            return self._session_factory()
        from subsync.extensions import db
        return db.session

    def handle(self, payload: bytes, signature_header: str) -> Outcome:
        """Authenticate, decode and apply one webhook delivery."""
        event = verify_and_decode(
            payload,
            signature_header,
            self.settings.webhook_secret,
            tolerance=self.settings.tolerance_seconds,
        )
        return self.process(event)

    def process(self, event) -> Outcome:
        handler = resolve_handler(event)
        if handler is None:
            log_event(logger, "webhook_ignored", event_id=event.id, event_type=event.type)
            return Outcome(IGNORED, event.id, event.type)

        session = self.session
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                pending = self._apply(session, event, handler)
            except AlreadyProcessed:
                session.rollback()
                log_event(logger, "webhook_duplicate", event_id=event.id, event_type=event.type)
                return Outcome(DUPLICATE, event.id, event.type)
            except ConcurrentWriteConflict as exc:
                session.rollback()
                log_event(
                    logger,
                    "write_conflict",
                    level=logging.WARNING,
                    event_id=event.id,
                    event_type=event.type,
                    attempt=attempt,
                )
                if attempt >= self.MAX_ATTEMPTS:
                    raise TransientStorageError("membership write conflict persisted after retry") from exc
            except PermanentFailure as exc:
                session.rollback()
                return self._skip(session, event, exc)
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("storage_error event_id=%s event_type=%s", event.id, event.type)
                raise TransientStorageError(str(exc)) from exc
            except Exception:
                session.rollback()
                raise
            else:
                for kind, user_id, payload in pending:
                    notifications.trigger(self.settings.notifier, kind, user_id, payload)
                log_event(logger, "webhook_applied", event_id=event.id, event_type=event.type, attempt=attempt)
                return Outcome(APPLIED, event.id, event.type)

    def _apply(self, session, event, handler):
        now = self.settings.clock()
        self._bound_transaction(session)
        ctx = HandlerContext(session=session, now=now, plans=self.settings.plans)

        membership = lock_membership(session, event)
        claim_event(session, event, now=now)
        try:
            handler(ctx, event, membership)
            session.commit()
        except StaleDataError as exc:
            raise ConcurrentWriteConflict(str(exc)) from exc
        except IntegrityError as exc:
            # Either a concurrent delivery of the same event committed first,
            # or another event created the same membership/usage row.
            session.rollback()
            if was_processed(session, event.id):
                raise AlreadyProcessed(event.id) from exc
            raise ConcurrentWriteConflict(str(exc.orig)) from exc
        return ctx.notifications

    def _bound_transaction(self, session) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = int(self.settings.storage_timeout_seconds * 1000)
        session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    def _skip(self, session, event, exc: PermanentFailure) -> Outcome:
        fields = {**exc.context, "event_id": event.id, "event_type": event.type, "reason": exc.reason, "detail": str(exc)}
        if isinstance(exc, ConsistencyGap):
            alert(logger, "consistency_gap", **fields)
        else:
            log_event(logger, "webhook_skipped", level=logging.WARNING, **fields)
        try:
            record_skip(session, event, exc.reason, now=self.settings.clock())
        except SQLAlchemyError as db_exc:
            session.rollback()
            raise TransientStorageError(str(db_exc)) from db_exc
        return Outcome(SKIPPED, event.id, event.type, reason=exc.reason)

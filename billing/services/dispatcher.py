"""
Webhook orchestration: verify -> dedup -> handle -> mark processed -> commit.

The processed-event record is written in the same transaction as the
handler's effects and only after they succeed, so a failure anywhere leaves
the event unmarked and the platform's redelivery retries it.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from extensions import db
from ..errors import CorrelationNotFoundError, PersistenceError
from . import events as ev
from .idempotency import has_processed, mark_processed
from .signature import DEFAULT_TOLERANCE, verify_event

HANDLED = "handled"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNCORRELATED = "uncorrelated"

HANDLERS: Dict[str, Callable[[str, dict], None]] = {
    "checkout.session.completed": ev.on_checkout_completed,
    "invoice.paid": ev.on_invoice_paid,
    "invoice.payment_succeeded": ev.on_invoice_paid,
    "invoice.payment_failed": ev.on_invoice_payment_failed,
    "customer.subscription.created": ev.on_subscription_changed,
    "customer.subscription.updated": ev.on_subscription_changed,
    "customer.subscription.deleted": ev.on_subscription_deleted,
    "payment_intent.succeeded": ev.on_payment_intent_succeeded,
    "customer.subscription.trial_will_end": ev.on_trial_will_end,
}


@dataclass(frozen=True)
class DispatchResult:
    outcome: str
    event_id: str
    event_type: str
    note: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"success": True, "outcome": self.outcome, "event_id": self.event_id, "type": self.event_type}
        if self.note:
            out["note"] = self.note
        return out


def process_webhook(payload: bytes, sig_header: str, secret: Optional[str] = None,
                    tolerance: Optional[int] = None) -> DispatchResult:
    cfg = current_app.config
    event = verify_event(
        payload,
        sig_header,
        secret if secret is not None else cfg.get("STRIPE_WEBHOOK_SECRET"),
        tolerance if tolerance is not None else int(cfg.get("BILLING_WEBHOOK_TOLERANCE", DEFAULT_TOLERANCE)),
    )
    return dispatch_event(event)


def dispatch_event(event: dict) -> DispatchResult:
    evid = event["id"]
    etype = event["type"]
    obj = event["data"]["object"]

    handler = HANDLERS.get(etype)
    if handler is None:
        current_app.logger.info("billing_webhook: ignored %s %s", etype, evid)
        return DispatchResult(IGNORED, evid, etype, note=f"ignored:{etype}")

    try:
        if has_processed(evid):
            db.session.rollback()
            current_app.logger.info("billing_webhook: duplicate %s %s", etype, evid)
            return DispatchResult(DUPLICATE, evid, etype)

        current_app.logger.info("billing_webhook: handling %s %s", etype, evid)
        outcome, note = HANDLED, None
        try:
            handler(evid, obj)
        except CorrelationNotFoundError as e:
            # retrying cannot produce the missing subscription; acknowledge and remember
            db.session.rollback()
            current_app.logger.info("billing_webhook: %s %s dropped: %s", etype, evid, e.message)
            outcome, note = UNCORRELATED, e.message

        if not mark_processed(evid, etype):
            current_app.logger.info("billing_webhook: %s %s recorded by a concurrent delivery", etype, evid)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.exception("billing_webhook: persistence failed for %s %s", etype, evid)
        raise PersistenceError(f"could not persist {etype} {evid}") from e
    except Exception:
        db.session.rollback()
        raise
    return DispatchResult(outcome, evid, etype, note=note)

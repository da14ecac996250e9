from __future__ import annotations
from typing import Any, Dict, Optional
from flask import current_app
from extensions import db
from ..errors import UpstreamNotFoundError, ValidationError
from ..models import Subscription, SubscriptionStatus as S, LedgerStatus as L
from . import ledger, subscriptions as subs
from .correlation import correlate_by_customer
from .stripe_client import fetch_invoice, fetch_payment_intent, fetch_subscription, ref_id


def _object_id(obj: Dict[str, Any], kind: str) -> str:
    oid = obj.get("id")
    if not oid:
        raise ValidationError(f"{kind} object has no id")
    return oid


def on_checkout_completed(event_id: str, session: dict):
    if session.get("mode") != "subscription" or session.get("payment_status") != "paid":
        current_app.logger.info(
            "billing.events: %s checkout %s not a paid subscription (%s/%s), skipping",
            event_id, session.get("id"), session.get("mode"), session.get("payment_status"),
        )
        return
    sub_id = ref_id(session.get("subscription"))
    if not sub_id:
        current_app.logger.info("billing.events: %s checkout %s has no subscription", event_id, session.get("id"))
        return
    snapshot = fetch_subscription(sub_id)
    subs.upsert_from_snapshot(snapshot, metadata=session.get("metadata") or {})


def on_invoice_paid(event_id: str, invoice: dict):
    invoice_snap = fetch_invoice(_object_id(invoice, "invoice"))
    if not invoice_snap.subscription_id:
        current_app.logger.info("billing.events: %s invoice %s has no subscription", event_id, invoice_snap.id)
        return
    snapshot = fetch_subscription(invoice_snap.subscription_id)
    sub = subs.upsert_from_snapshot(snapshot)
    ledger.record_invoice(invoice_snap, sub.user_id, sub, status=L.SUCCEEDED)


def on_invoice_payment_failed(event_id: str, invoice: dict):
    invoice_snap = fetch_invoice(_object_id(invoice, "invoice"))
    if not invoice_snap.subscription_id:
        current_app.logger.info("billing.events: %s invoice %s has no subscription", event_id, invoice_snap.id)
        return
    # a failed attempt can be delivered after a later retry settled the invoice
    settled = invoice_snap.status == "paid"
    status = L.SUCCEEDED if settled else L.FAILED

    sub = subs.get_by_upstream_id(invoice_snap.subscription_id)
    if sub is None:
        if ledger.get_entry(invoice_snap.id):
            ledger.upsert_ledger_entry(invoice_snap.id, status=status)
        current_app.logger.info(
            "billing.events: %s no local subscription %s for failed invoice %s",
            event_id, invoice_snap.subscription_id, invoice_snap.id,
        )
        return
    snapshot = fetch_subscription(invoice_snap.subscription_id)
    ledger.record_invoice(invoice_snap, sub.user_id, sub, status=status)
    subs.apply_snapshot(sub, snapshot)
    if settled:
        current_app.logger.info("billing.events: %s invoice %s is paid upstream, not demoting", event_id, invoice_snap.id)
    elif snapshot.status == S.ACTIVE:
        # a later payment already recovered it upstream
        current_app.logger.info("billing.events: %s %s is active upstream, not demoting", event_id, sub.stripe_subscription_id)
    else:
        subs.transition(sub, S.PAST_DUE, f"invoice {invoice_snap.id} payment failed")
    db.session.flush()


def on_subscription_changed(event_id: str, subscription: dict):
    sub_id = _object_id(subscription, "subscription")
    if subs.get_by_upstream_id(sub_id) is None:
        current_app.logger.info(
            "billing.events: %s no local row for %s; it arrives via checkout/invoice", event_id, sub_id
        )
        return
    subs.update_existing(sub_id, fetch_subscription(sub_id))


def on_subscription_deleted(event_id: str, subscription: dict):
    sub_id = _object_id(subscription, "subscription")
    if subs.get_by_upstream_id(sub_id) is None:
        current_app.logger.info("billing.events: %s no local row for deleted %s", event_id, sub_id)
        return
    try:
        snapshot = fetch_subscription(sub_id)
    except UpstreamNotFoundError:
        subs.mark_canceled(sub_id, "deleted upstream")
        return
    subs.update_existing(sub_id, snapshot)


def _explicit_subscription(ref: str) -> Optional[Subscription]:
    sub = subs.get_by_upstream_id(ref)
    if sub is None and ref.isdigit():
        sub = db.session.get(Subscription, int(ref))
    return sub


def on_payment_intent_succeeded(event_id: str, payment_intent: dict):
    pi = fetch_payment_intent(_object_id(payment_intent, "payment_intent"))
    explicit = pi.metadata.get("subscriptionId")
    if explicit:
        sub = _explicit_subscription(explicit)
        if sub is None:
            current_app.logger.info("billing.events: %s payment %s names unknown subscription %s", event_id, pi.id, explicit)
            return
    else:
        sub = correlate_by_customer(pi.customer_id, event_id)

    snapshot = fetch_subscription(sub.stripe_subscription_id)
    if not explicit and pi.invoice_id and snapshot.latest_invoice_id and snapshot.latest_invoice_id != pi.invoice_id:
        current_app.logger.warning(
            "billing.events: %s payment %s (invoice %s) attached to %s whose latest invoice is %s",
            event_id, pi.id, pi.invoice_id, sub.stripe_subscription_id, snapshot.latest_invoice_id,
        )
    subs.apply_snapshot(sub, snapshot)
    if pi.invoice_id and ledger.get_entry(pi.invoice_id):
        ledger.mark_succeeded(pi.invoice_id, stripe_payment_intent_id=pi.id)
    db.session.flush()


def on_trial_will_end(event_id: str, subscription: dict):
    current_app.logger.info("billing.events: %s trial ending for %s", event_id, subscription.get("id"))

from __future__ import annotations
from typing import Any, Dict, List, Optional
from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from extensions import db
from plans.catalog import get_plan
from ..errors import ValidationError
from ..models import BillingLedgerEntry, LedgerStatus as L, Subscription
from .stripe_client import InvoiceSnapshot

TERMINAL_STATUSES = frozenset({L.SUCCEEDED, L.FAILED, L.CANCELED})
VALID_STATUSES = frozenset({L.PENDING, L.OPEN}) | TERMINAL_STATUSES

# upstream invoice status -> ledger status
INVOICE_STATUS_TO_LEDGER = {
    "paid": L.SUCCEEDED,
    "open": L.OPEN,
    "void": L.CANCELED,
    "uncollectible": L.FAILED,
    "draft": L.PENDING,
}

LEDGER_FIELDS = ("user_id", "amount", "currency", "status", "stripe_payment_intent_id", "description", "subscription_id")


def map_invoice_status(invoice_status: Optional[str]) -> str:
    return INVOICE_STATUS_TO_LEDGER.get(invoice_status or "draft", L.PENDING)


def build_description(plan_name: Optional[str] = None) -> str:
    if plan_name:
        return f"Subscription payment for {plan_name}"
    return "Subscription payment"


def _check_fields(fields: Dict[str, Any]) -> None:
    amount = fields.get("amount")
    if amount is not None and (not isinstance(amount, int) or isinstance(amount, bool) or amount < 0):
        raise ValidationError(f"ledger amount must be a non-negative integer, got {amount!r}")
    status = fields.get("status")
    if status is not None and status not in VALID_STATUSES:
        raise ValidationError(f"unknown ledger status {status!r}")


def _apply(entry: BillingLedgerEntry, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        if value is None:
            continue
        if key == "status":
            if entry.status in TERMINAL_STATUSES and value not in TERMINAL_STATUSES:
                # terminal entries only move to another terminal status (a corrected event)
                continue
            if entry.status != value:
                current_app.logger.info(
                    "billing.ledger: %s %s -> %s", entry.stripe_invoice_id, entry.status, value
                )
        elif key == "subscription_id" and entry.subscription_id:
            continue
        setattr(entry, key, value)


def get_entry(invoice_id: str) -> Optional[BillingLedgerEntry]:
    return db.session.query(BillingLedgerEntry).filter_by(stripe_invoice_id=invoice_id).first()


def upsert_ledger_entry(invoice_id: str, **fields) -> BillingLedgerEntry:
    """
    Create or update the single ledger row for `invoice_id`.

    Redelivered and concurrent events for the same invoice land on the same
    row; the loser of an insert race falls back to an update.
    """
    fields = {k: v for k, v in fields.items() if k in LEDGER_FIELDS}
    _check_fields(fields)

    entry = get_entry(invoice_id)
    if entry:
        _apply(entry, fields)
        db.session.flush()
        return entry

    for required in ("user_id", "amount"):
        if fields.get(required) is None:
            raise ValidationError(f"cannot create ledger entry {invoice_id} without {required}")
    try:
        with db.session.begin_nested():
            entry = BillingLedgerEntry(
                stripe_invoice_id=invoice_id,
                user_id=fields["user_id"],
                amount=fields["amount"],
                currency=(fields.get("currency") or "usd").lower(),
                status=fields.get("status") or L.PENDING,
                stripe_payment_intent_id=fields.get("stripe_payment_intent_id"),
                description=fields.get("description") or build_description(),
                subscription_id=fields.get("subscription_id"),
            )
            db.session.add(entry)
            db.session.flush()
    except IntegrityError:
        entry = get_entry(invoice_id)
        if entry is None:
            raise
        _apply(entry, fields)
        db.session.flush()
        return entry
    current_app.logger.info(
        "billing.ledger: recorded %s %s %s (%s)", invoice_id, entry.amount, entry.currency, entry.status
    )
    return entry


def mark_succeeded(invoice_id: str, **fields) -> BillingLedgerEntry:
    fields["status"] = L.SUCCEEDED
    return upsert_ledger_entry(invoice_id, **fields)


def mark_failed(invoice_id: str, **fields) -> BillingLedgerEntry:
    fields["status"] = L.FAILED
    return upsert_ledger_entry(invoice_id, **fields)


def record_invoice(invoice: InvoiceSnapshot, user_id: int, subscription: Optional[Subscription] = None,
                   status: Optional[str] = None) -> BillingLedgerEntry:
    """Ledger row from a canonical invoice snapshot."""
    status = status or map_invoice_status(invoice.status)
    amount = invoice.amount_paid if status == L.SUCCEEDED and invoice.amount_paid else invoice.amount_due
    plan = get_plan(subscription.plan_id) if subscription else None
    return upsert_ledger_entry(
        invoice.id,
        user_id=user_id,
        amount=amount,
        currency=invoice.currency,
        status=status,
        stripe_payment_intent_id=invoice.payment_intent_id,
        description=build_description(plan.name if plan else None),
        subscription_id=subscription.id if subscription else None,
    )


def billing_history(user_id: int, limit: int = 50) -> List[BillingLedgerEntry]:
    return (db.session.query(BillingLedgerEntry)
            .filter(BillingLedgerEntry.user_id == user_id)
            .order_by(BillingLedgerEntry.created_at.desc(), BillingLedgerEntry.id.desc())
            .limit(limit).all())


def billing_summary(user_id: int) -> Dict[str, int]:
    rows = (db.session.query(BillingLedgerEntry.status, func.coalesce(func.sum(BillingLedgerEntry.amount), 0))
            .filter(BillingLedgerEntry.user_id == user_id)
            .group_by(BillingLedgerEntry.status)
            .all())
    totals = {status: int(total or 0) for status, total in rows}
    return {
        "total_paid": totals.get(L.SUCCEEDED, 0),
        "total_pending": totals.get(L.PENDING, 0) + totals.get(L.OPEN, 0),
        "total_failed": totals.get(L.FAILED, 0),
    }

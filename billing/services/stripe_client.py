from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import stripe
from flask import current_app
from ..errors import UpstreamNotFoundError, UpstreamUnavailableError

STRIPE_API_VERSION = "2023-10-16"

# upstream subscription status -> local status
STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "incomplete": "incomplete",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
    "paused": "pending",
}


def init_stripe(app) -> None:
    """Configure the module-level Stripe client once per app."""
    stripe.api_key = app.config.get("STRIPE_SECRET_KEY")
    stripe.api_version = app.config.get("STRIPE_API_VERSION") or STRIPE_API_VERSION
    stripe.max_network_retries = int(app.config.get("BILLING_UPSTREAM_MAX_RETRIES", 0))
    stripe.default_http_client = stripe.RequestsClient(
        timeout=float(app.config.get("BILLING_UPSTREAM_TIMEOUT", 10))
    )


def _field(obj: Any, key: str, default: Any = None) -> Any:
    # StripeObject and plain dicts both support item access
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def ref_id(value: Any) -> Optional[str]:
    """Expandable fields arrive either as an id string or an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, "id")


def _ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _metadata(obj: Any) -> Dict[str, str]:
    meta = _field(obj, "metadata") or {}
    return {str(k): str(v) for k, v in dict(meta).items()}


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: str
    customer_id: Optional[str]
    upstream_status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    price_id: Optional[str] = None
    latest_invoice_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return STATUS_MAP.get(self.upstream_status, "pending")

    @classmethod
    def from_stripe(cls, obj: Any) -> "SubscriptionSnapshot":
        items = _field(_field(obj, "items"), "data") or []
        first = items[0] if items else None
        # newer API versions moved the period onto the subscription item
        start = _field(obj, "current_period_start") or _field(first, "current_period_start")
        end = _field(obj, "current_period_end") or _field(first, "current_period_end")
        return cls(
            id=_field(obj, "id"),
            customer_id=ref_id(_field(obj, "customer")),
            upstream_status=_field(obj, "status", "incomplete"),
            current_period_start=_ts(start),
            current_period_end=_ts(end),
            cancel_at_period_end=bool(_field(obj, "cancel_at_period_end", False)),
            price_id=ref_id(_field(first, "price")),
            latest_invoice_id=ref_id(_field(obj, "latest_invoice")),
            metadata=_metadata(obj),
        )


@dataclass(frozen=True)
class InvoiceSnapshot:
    id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: str
    amount_due: int
    amount_paid: int
    currency: str
    payment_intent_id: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Any) -> "InvoiceSnapshot":
        subscription = _field(obj, "subscription")
        if subscription is None:
            details = _field(_field(obj, "parent"), "subscription_details")
            subscription = _field(details, "subscription")
        return cls(
            id=_field(obj, "id"),
            customer_id=ref_id(_field(obj, "customer")),
            subscription_id=ref_id(subscription),
            status=_field(obj, "status", "draft"),
            amount_due=int(_field(obj, "amount_due", 0)),
            amount_paid=int(_field(obj, "amount_paid", 0)),
            currency=str(_field(obj, "currency", "usd")).lower(),
            payment_intent_id=ref_id(_field(obj, "payment_intent")),
        )


@dataclass(frozen=True)
class PaymentIntentSnapshot:
    id: str
    customer_id: Optional[str]
    status: str
    amount: int
    currency: str
    invoice_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj: Any) -> "PaymentIntentSnapshot":
        return cls(
            id=_field(obj, "id"),
            customer_id=ref_id(_field(obj, "customer")),
            status=_field(obj, "status", ""),
            amount=int(_field(obj, "amount", 0)),
            currency=str(_field(obj, "currency", "usd")).lower(),
            invoice_id=ref_id(_field(obj, "invoice")),
            metadata=_metadata(obj),
        )


def _upstream(call, object_id: str, kind: str, **params):
    try:
        return call(object_id, **params)
    except stripe.InvalidRequestError as e:
        if getattr(e, "code", None) == "resource_missing":
            raise UpstreamNotFoundError(f"{kind} {object_id} not found upstream") from e
        current_app.logger.exception("stripe_client: %s %s request rejected", kind, object_id)
        raise UpstreamUnavailableError(f"{kind} {object_id} could not be reached") from e
    except stripe.StripeError as e:
        current_app.logger.warning("stripe_client: %s %s request failed: %s", kind, object_id, e)
        raise UpstreamUnavailableError(f"{kind} {object_id} could not be reached") from e


def _retrieve(resource, object_id: str, kind: str):
    return _upstream(resource.retrieve, object_id, kind)


def fetch_subscription(subscription_id: str) -> SubscriptionSnapshot:
    return SubscriptionSnapshot.from_stripe(_retrieve(stripe.Subscription, subscription_id, "subscription"))


def fetch_invoice(invoice_id: str) -> InvoiceSnapshot:
    return InvoiceSnapshot.from_stripe(_retrieve(stripe.Invoice, invoice_id, "invoice"))


def fetch_payment_intent(payment_intent_id: str) -> PaymentIntentSnapshot:
    return PaymentIntentSnapshot.from_stripe(_retrieve(stripe.PaymentIntent, payment_intent_id, "payment_intent"))


def set_cancel_at_period_end(subscription_id: str, cancel: bool, metadata: Optional[Dict[str, str]] = None) -> SubscriptionSnapshot:
    """Toggle renewal upstream and return the refetched canonical state."""
    _upstream(stripe.Subscription.modify, subscription_id, "subscription",
              cancel_at_period_end=cancel, metadata=metadata or {})
    return fetch_subscription(subscription_id)


def cancel_subscription_now(subscription_id: str, reason: Optional[str] = None) -> SubscriptionSnapshot:
    params = {"cancellation_details": {"comment": reason}} if reason else {}
    _upstream(stripe.Subscription.cancel, subscription_id, "subscription", **params)
    return fetch_subscription(subscription_id)


def create_checkout_session_subscription(customer_id: str, user_id: int, plan_id: str, price_id: str,
                                         success_url: str, cancel_url: str):
    # userId/planId on the subscription let webhook reconciliation resolve the owner
    metadata = {"userId": str(user_id), "planId": plan_id}
    return stripe.checkout.Session.create(
        mode="subscription",
        customer=customer_id,
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=success_url + "?session_id={CHECKOUT_SESSION_ID}",
        cancel_url=cancel_url,
        metadata=metadata,
        subscription_data={"metadata": metadata},
    )


def create_customer(user_id: int, email: str | None = None):
    """
    Create a Stripe Customer for this user. Email is optional.
    We always tag user_id in metadata for support/debug.
    """
    return stripe.Customer.create(
        email=email,
        metadata={"user_id": str(user_id)},
    )

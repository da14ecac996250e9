from __future__ import annotations
from typing import Optional
from flask import current_app
from extensions import db
from ..errors import CorrelationNotFoundError
from ..models import Subscription, SubscriptionStatus as S

AWAITING_ACTIVATION = (S.INCOMPLETE, S.PENDING)


def correlate_by_customer(customer_id: Optional[str], hint_event_id: str) -> Subscription:
    """
    Best-effort match for a payment that names no subscription: the customer's
    most recently created row still awaiting activation.

    Two concurrently pending rows for one customer cannot be told apart here;
    the newest wins.
    """
    if not customer_id:
        raise CorrelationNotFoundError(f"{hint_event_id}: no customer to correlate on")
    sub = (db.session.query(Subscription)
           .filter(Subscription.stripe_customer_id == customer_id,
                   Subscription.status.in_(AWAITING_ACTIVATION))
           .order_by(Subscription.created_at.desc(), Subscription.id.desc())
           .first())
    if sub is None:
        raise CorrelationNotFoundError(f"{hint_event_id}: no pending subscription for customer {customer_id}")
    current_app.logger.info(
        "billing.correlation: %s attached to %s via customer %s", hint_event_id, sub.stripe_subscription_id, customer_id
    )
    return sub

"""
Subscription lifecycle.

Rows are only ever written from a freshly fetched canonical snapshot (or a
forced move along TRANSITIONS), so concurrent and out-of-order deliveries for
the same upstream subscription converge on the last fetch.
"""
from __future__ import annotations
from datetime import timedelta
from typing import Dict, Optional
from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from extensions import db
from plans.catalog import DEFAULT_PLAN_ID, get_plan, plan_for_price
from ..errors import SubscriptionNotFoundError, UpstreamNotFoundError, ValidationError
from ..models import BillingCustomer, Subscription, SubscriptionStatus as S, as_utc, utcnow
from .stripe_client import (SubscriptionSnapshot, cancel_subscription_now, fetch_subscription,
                            set_cancel_at_period_end)

TRANSITIONS: Dict[str, frozenset] = {
    S.INCOMPLETE: frozenset({S.PENDING, S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    S.PENDING:    frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    S.ACTIVE:     frozenset({S.PAST_DUE, S.CANCELED}),
    S.PAST_DUE:   frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED:   frozenset(),
}

ACTIVE_STATUSES = (S.ACTIVE, S.PENDING)
OPEN_STATUSES = (S.INCOMPLETE, S.PENDING, S.ACTIVE, S.PAST_DUE)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def get_by_upstream_id(stripe_subscription_id: str) -> Optional[Subscription]:
    return db.session.query(Subscription).filter_by(stripe_subscription_id=stripe_subscription_id).first()


def apply_snapshot(sub: Subscription, snapshot: SubscriptionSnapshot) -> bool:
    """
    Overwrite `sub` with canonical state. Returns True if anything changed.

    A canceled row is terminal and never reopened. Entering `active` from any
    other status resets the usage counter together with the period window.
    """
    target = snapshot.status
    if sub.status == S.CANCELED:
        if target != S.CANCELED:
            current_app.logger.warning(
                "billing.subscriptions: %s is canceled locally, ignoring upstream %s",
                sub.stripe_subscription_id, snapshot.upstream_status,
            )
        return False

    changed = False
    if target != sub.status:
        if not can_transition(sub.status, target):
            # upstream is authoritative; record the irregular move and follow it
            current_app.logger.warning(
                "billing.subscriptions: %s upstream moved %s -> %s",
                sub.stripe_subscription_id, sub.status, target,
            )
        if target == S.ACTIVE:
            sub.video_count = 0
        current_app.logger.info(
            "billing.subscriptions: %s %s -> %s", sub.stripe_subscription_id, sub.status, target
        )
        sub.status = target
        changed = True

    start, end = snapshot.current_period_start, snapshot.current_period_end
    if start and as_utc(sub.current_period_start) != start:
        sub.current_period_start = start
        changed = True
    if end and as_utc(sub.current_period_end) != end:
        sub.current_period_end = end
        changed = True
    if bool(sub.cancel_at_period_end) != snapshot.cancel_at_period_end:
        sub.cancel_at_period_end = snapshot.cancel_at_period_end
        changed = True
    if snapshot.customer_id and not sub.stripe_customer_id:
        sub.stripe_customer_id = snapshot.customer_id
        changed = True
    return changed


def transition(sub: Subscription, target: str, reason: str = "") -> bool:
    """Forced (non-canonical) move; refuses anything outside TRANSITIONS."""
    if sub.status == target:
        return False
    if not can_transition(sub.status, target):
        current_app.logger.info(
            "billing.subscriptions: refusing %s -> %s for %s (%s)",
            sub.status, target, sub.stripe_subscription_id, reason,
        )
        return False
    current_app.logger.info(
        "billing.subscriptions: %s %s -> %s (%s)", sub.stripe_subscription_id, sub.status, target, reason
    )
    sub.status = target
    return True


def _resolve_user_id(snapshot: SubscriptionSnapshot, metadata: Dict[str, str]) -> int:
    raw = metadata.get("userId") or snapshot.metadata.get("userId")
    if raw:
        try:
            return int(raw)
        except ValueError:
            raise ValidationError(f"invalid userId metadata {raw!r} on {snapshot.id}")
    if snapshot.customer_id:
        bc = db.session.query(BillingCustomer).filter_by(stripe_customer_id=snapshot.customer_id).first()
        if bc:
            return bc.user_id
    raise ValidationError(f"cannot resolve owning user for subscription {snapshot.id}")


def _resolve_plan(snapshot: SubscriptionSnapshot, metadata: Dict[str, str]):
    plan = (get_plan(metadata.get("planId"))
            or get_plan(snapshot.metadata.get("planId"))
            or plan_for_price(snapshot.price_id))
    if plan is None:
        current_app.logger.warning(
            "billing.subscriptions: no plan for %s (price %s), using %s",
            snapshot.id, snapshot.price_id, DEFAULT_PLAN_ID,
        )
        plan = get_plan(DEFAULT_PLAN_ID)
    return plan


def upsert_from_snapshot(snapshot: SubscriptionSnapshot, metadata: Optional[Dict[str, str]] = None) -> Subscription:
    """Creation path: checkout completion and invoice paid."""
    metadata = metadata or {}
    sub = get_by_upstream_id(snapshot.id)
    if sub:
        apply_snapshot(sub, snapshot)
        db.session.flush()
        return sub

    user_id = _resolve_user_id(snapshot, metadata)
    plan = _resolve_plan(snapshot, metadata)
    if not snapshot.customer_id:
        raise ValidationError(f"subscription {snapshot.id} has no customer")
    try:
        with db.session.begin_nested():
            sub = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                stripe_subscription_id=snapshot.id,
                stripe_customer_id=snapshot.customer_id,
                status=snapshot.status,
                current_period_start=snapshot.current_period_start,
                current_period_end=snapshot.current_period_end,
                cancel_at_period_end=snapshot.cancel_at_period_end,
                video_count=0,
                video_limit=plan.video_limit,
            )
            db.session.add(sub)
            db.session.flush()
    except IntegrityError:
        # a concurrent creation path won the unique key; converge onto its row
        sub = get_by_upstream_id(snapshot.id)
        if sub is None:
            raise
        apply_snapshot(sub, snapshot)
        db.session.flush()
        return sub

    current_app.logger.info(
        "billing.subscriptions: created %s for user %s (%s, %s)", snapshot.id, user_id, plan.id, sub.status
    )
    return sub


def update_existing(stripe_subscription_id: str, snapshot: Optional[SubscriptionSnapshot] = None) -> Optional[Subscription]:
    """
    Update path for subscription created/updated/deleted events.

    Never creates: rows arrive through checkout/invoice events.
    """
    sub = get_by_upstream_id(stripe_subscription_id)
    if not sub:
        current_app.logger.info(
            "billing.subscriptions: no local row for %s yet, skipping", stripe_subscription_id
        )
        return None
    if snapshot is None:
        snapshot = fetch_subscription(stripe_subscription_id)
    apply_snapshot(sub, snapshot)
    db.session.flush()
    return sub


def mark_canceled(stripe_subscription_id: str, reason: str) -> Optional[Subscription]:
    sub = get_by_upstream_id(stripe_subscription_id)
    if sub and transition(sub, S.CANCELED, reason):
        db.session.flush()
    return sub


def sync_subscription(stripe_subscription_id: str) -> Optional[Subscription]:
    """Manual/periodic resync of one row from upstream."""
    try:
        snapshot = fetch_subscription(stripe_subscription_id)
    except UpstreamNotFoundError:
        return mark_canceled(stripe_subscription_id, "missing upstream")
    return update_existing(stripe_subscription_id, snapshot)


def _demote_if_lapsed(sub: Subscription) -> bool:
    end = as_utc(sub.current_period_end)
    if sub.status == S.PENDING and end is not None and utcnow() > end:
        return transition(sub, S.PAST_DUE, "pending past period end")
    return False


def demote_lapsed(user_id: int) -> int:
    """
    Lazy pending -> past_due demotion for every pending row of `user_id`
    whose period has ended. Commits when anything moved.
    """
    pending = (db.session.query(Subscription)
               .filter(Subscription.user_id == user_id, Subscription.status == S.PENDING)
               .all())
    demoted = sum(1 for sub in pending if _demote_if_lapsed(sub))
    if demoted:
        db.session.commit()
    return demoted


def _usable_query(user_id: int):
    return (db.session.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status.in_(ACTIVE_STATUSES))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc()))


def get_active_subscription(user_id: int) -> Optional[Subscription]:
    """
    The user's usable subscription, or None.

    Lapsed pending rows are demoted to past_due here rather than by a timer,
    before the lookup, so they never shadow an older usable row.
    """
    demote_lapsed(user_id)
    return _usable_query(user_id).first()


def has_open_subscription(user_id: int) -> bool:
    demote_lapsed(user_id)
    return _usable_query(user_id).first() is not None


def increment_video_count(user_id: int) -> Optional[Subscription]:
    """Count one generated video against the user's active subscription."""
    sub = db.session.query(Subscription).filter_by(user_id=user_id, status=S.ACTIVE).first()
    if sub is None:
        return None
    # single UPDATE so concurrent callers cannot lose increments
    db.session.execute(
        update(Subscription)
        .where(Subscription.id == sub.id)
        .values(video_count=Subscription.video_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(sub)
    return sub


def _current_for_user(user_id: int) -> Subscription:
    sub = (db.session.query(Subscription)
           .filter(Subscription.user_id == user_id, Subscription.status.in_(OPEN_STATUSES))
           .order_by(Subscription.created_at.desc(), Subscription.id.desc())
           .first())
    if sub is None:
        raise SubscriptionNotFoundError(f"user {user_id} has no open subscription")
    return sub


def cancel_for_user(user_id: int, immediate: bool = False, reason: Optional[str] = None) -> Subscription:
    """
    User-requested cancellation. By default renewal stops at period end;
    `immediate` ends the subscription upstream now. The row is written from
    the refetched upstream state either way.
    """
    sub = _current_for_user(user_id)
    reason = reason or "User requested cancellation"
    if immediate:
        snapshot = cancel_subscription_now(sub.stripe_subscription_id, reason)
    else:
        snapshot = set_cancel_at_period_end(sub.stripe_subscription_id, True, {"cancellation_reason": reason})
    apply_snapshot(sub, snapshot)
    db.session.flush()
    current_app.logger.info(
        "billing.subscriptions: user %s canceled %s (immediate=%s)", user_id, sub.stripe_subscription_id, immediate
    )
    return sub


def reactivate_for_user(user_id: int) -> Subscription:
    sub = _current_for_user(user_id)
    snapshot = set_cancel_at_period_end(
        sub.stripe_subscription_id, False, {"reactivated_at": utcnow().isoformat()}
    )
    apply_snapshot(sub, snapshot)
    db.session.flush()
    current_app.logger.info("billing.subscriptions: user %s reactivated %s", user_id, sub.stripe_subscription_id)
    return sub


def sweep_abandoned(grace: timedelta) -> int:
    """Cancel rows stuck in incomplete/pending longer than `grace`."""
    cutoff = utcnow() - grace
    rows = (db.session.query(Subscription)
            .filter(Subscription.status.in_((S.INCOMPLETE, S.PENDING)), Subscription.created_at < cutoff)
            .all())
    canceled = 0
    for sub in rows:
        try:
            snapshot = fetch_subscription(sub.stripe_subscription_id)
        except UpstreamNotFoundError:
            snapshot = None
        if snapshot is not None and snapshot.status not in (S.INCOMPLETE, S.PENDING):
            # upstream moved on; converge instead of canceling
            apply_snapshot(sub, snapshot)
            continue
        if transition(sub, S.CANCELED, "abandoned"):
            canceled += 1
    db.session.flush()
    return canceled

from datetime import timedelta

import pytest

from extensions import db
from billing.errors import ValidationError
from billing.models import BillingCustomer, Subscription, SubscriptionStatus as S, utcnow
from billing.services import subscriptions as subs
from billing.services.stripe_client import SubscriptionSnapshot


def _snapshot(status="active", sub_id="sub_1", customer="cus_1", end_days=29, metadata=None, price_id="price_monthly"):
    now = utcnow().replace(microsecond=0)
    return SubscriptionSnapshot(
        id=sub_id,
        customer_id=customer,
        upstream_status=status,
        current_period_start=now - timedelta(days=1),
        current_period_end=now + timedelta(days=end_days),
        price_id=price_id,
        metadata=metadata or {},
    )


def test_transition_graph():
    assert subs.can_transition(S.PENDING, S.ACTIVE)
    assert subs.can_transition(S.PAST_DUE, S.ACTIVE)
    assert not subs.can_transition(S.CANCELED, S.ACTIVE)
    assert not subs.can_transition(S.ACTIVE, S.PENDING)


def test_upsert_creates_from_metadata(app):
    sub = subs.upsert_from_snapshot(_snapshot(), metadata={"userId": "42", "planId": "monthly"})
    db.session.commit()

    assert sub.user_id == 42
    assert sub.plan_id == "monthly"
    assert sub.status == S.ACTIVE
    assert sub.video_limit == 30
    assert sub.video_count == 0


def test_upsert_resolves_user_through_customer_mapping(app):
    db.session.add(BillingCustomer(user_id=9, stripe_customer_id="cus_9"))
    db.session.commit()

    sub = subs.upsert_from_snapshot(_snapshot(customer="cus_9"))
    assert sub.user_id == 9


def test_upsert_without_owner_is_rejected(app):
    with pytest.raises(ValidationError):
        subs.upsert_from_snapshot(_snapshot(customer="cus_unknown"))


def test_upsert_twice_keeps_one_row(app):
    subs.upsert_from_snapshot(_snapshot(status="incomplete"), metadata={"userId": "7"})
    subs.upsert_from_snapshot(_snapshot(status="active"), metadata={"userId": "7"})
    db.session.commit()

    rows = db.session.query(Subscription).all()
    assert len(rows) == 1
    assert rows[0].status == S.ACTIVE


def test_entering_active_resets_usage(app, make_subscription):
    sub = make_subscription(status=S.PAST_DUE, video_count=12)
    assert subs.apply_snapshot(sub, _snapshot(status="active"))
    assert sub.status == S.ACTIVE
    assert sub.video_count == 0


def test_staying_active_keeps_usage(app, make_subscription):
    sub = make_subscription(status=S.ACTIVE, video_count=12)
    subs.apply_snapshot(sub, _snapshot(status="active", end_days=60))
    assert sub.video_count == 12


def test_canceled_is_never_reopened(app, make_subscription):
    sub = make_subscription(status=S.CANCELED)
    assert subs.apply_snapshot(sub, _snapshot(status="active")) is False
    assert sub.status == S.CANCELED
    assert subs.transition(sub, S.ACTIVE, "test") is False


def test_canonical_state_wins_over_graph(app, make_subscription):
    sub = make_subscription(status=S.ACTIVE)
    subs.apply_snapshot(sub, _snapshot(status="paused"))
    assert sub.status == S.PENDING


def test_last_fetch_determines_stored_state(app, make_subscription):
    sub = make_subscription(status=S.PENDING)
    for status in ("past_due", "active", "past_due"):
        subs.apply_snapshot(sub, _snapshot(status=status))
    db.session.commit()
    assert db.session.get(Subscription, sub.id).status == S.PAST_DUE


def test_update_existing_never_creates(app):
    assert subs.update_existing("sub_missing", _snapshot(sub_id="sub_missing")) is None
    assert db.session.query(Subscription).count() == 0


def test_pending_past_period_end_is_demoted_on_read(app, make_subscription):
    sub = make_subscription(status=S.PENDING, end_days=-1)

    assert subs.get_active_subscription(7) is None
    assert db.session.get(Subscription, sub.id).status == S.PAST_DUE


def test_active_subscription_is_returned(app, make_subscription):
    sub = make_subscription(status=S.ACTIVE)
    found = subs.get_active_subscription(7)
    assert found.id == sub.id
    assert found.can_create_video


def test_increment_video_count(app, make_subscription):
    make_subscription(status=S.ACTIVE, video_count=29)
    sub = subs.increment_video_count(7)
    assert sub.video_count == 30
    assert sub.remaining_videos == 0
    assert not sub.can_create_video


def test_sweep_cancels_stale_rows_and_converges_others(app, fake_stripe, make_subscription):
    old = utcnow() - timedelta(hours=72)
    stuck = make_subscription("sub_stuck", status=S.INCOMPLETE, created_at=old)
    paid = make_subscription("sub_paid", customer="cus_2", status=S.PENDING, created_at=old)
    fresh = make_subscription("sub_fresh", customer="cus_3", status=S.PENDING)
    fake_stripe.add_subscription("sub_stuck", status="incomplete")
    fake_stripe.add_subscription("sub_paid", customer="cus_2", status="active")

    assert subs.sweep_abandoned(timedelta(hours=48)) == 1
    db.session.commit()

    assert db.session.get(Subscription, stuck.id).status == S.CANCELED
    assert db.session.get(Subscription, paid.id).status == S.ACTIVE
    assert db.session.get(Subscription, fresh.id).status == S.PENDING


def test_sync_missing_upstream_cancels(app, fake_stripe, make_subscription):
    sub = make_subscription(status=S.ACTIVE)
    subs.sync_subscription("sub_1")
    db.session.commit()
    assert db.session.get(Subscription, sub.id).status == S.CANCELED


def test_pending_to_active_takes_canonical_period(app, make_subscription):
    sub = make_subscription(status=S.PENDING, video_count=5)
    snapshot = _snapshot(status="active", end_days=30)

    subs.apply_snapshot(sub, snapshot)

    assert sub.video_count == 0
    assert sub.current_period_start == snapshot.current_period_start
    assert sub.current_period_end == snapshot.current_period_end


def test_lapsed_pending_does_not_hide_older_active_row(app, make_subscription):
    older = make_subscription("sub_old", status=S.ACTIVE, created_at=utcnow() - timedelta(days=10))
    lapsed = make_subscription("sub_new", status=S.PENDING, end_days=-1)

    assert subs.get_active_subscription(7).id == older.id
    assert db.session.get(Subscription, lapsed.id).status == S.PAST_DUE


def test_lapsed_pending_is_not_open(app, make_subscription):
    make_subscription(status=S.PENDING, end_days=-1)
    assert subs.has_open_subscription(7) is False


def test_increment_video_count_accumulates(app, make_subscription):
    sub = make_subscription(status=S.ACTIVE, video_count=0)
    for _ in range(3):
        subs.increment_video_count(7)
    db.session.commit()
    assert db.session.get(Subscription, sub.id).video_count == 3


def test_increment_without_active_subscription(app, make_subscription):
    make_subscription(status=S.PAST_DUE)
    assert subs.increment_video_count(7) is None

from datetime import timedelta

from extensions import db
from billing import tasks
from billing.models import ProcessedEvent, Subscription, SubscriptionStatus as S, utcnow


def test_sync_subscriptions(app, fake_stripe, make_subscription):
    drifted = make_subscription("sub_1", status=S.PENDING)
    flaky = make_subscription("sub_2", customer="cus_2", status=S.ACTIVE)
    gone = make_subscription("sub_3", customer="cus_3", status=S.ACTIVE)
    make_subscription("sub_4", customer="cus_4", status=S.CANCELED)
    fake_stripe.add_subscription("sub_1", status="active")
    fake_stripe.add_subscription("sub_2", customer="cus_2", status="past_due")
    fake_stripe.unavailable.add("sub_2")

    result = tasks.sync_subscriptions.run()

    assert result == {"synced": 2, "failed": 1}
    assert db.session.get(Subscription, drifted.id).status == S.ACTIVE
    assert db.session.get(Subscription, flaky.id).status == S.ACTIVE
    assert db.session.get(Subscription, gone.id).status == S.CANCELED


def test_sweep_task(app, fake_stripe, make_subscription):
    sub = make_subscription(status=S.INCOMPLETE, created_at=utcnow() - timedelta(days=3))
    fake_stripe.add_subscription(status="incomplete")

    assert tasks.sweep_abandoned_subscriptions.run() == {"canceled": 1}
    assert db.session.get(Subscription, sub.id).status == S.CANCELED


def test_prune_task(app):
    db.session.add(ProcessedEvent(event_id="evt_old", event_type="x", processed_at=utcnow() - timedelta(days=31)))
    db.session.commit()

    assert tasks.prune_processed_events.run() == {"removed": 1}

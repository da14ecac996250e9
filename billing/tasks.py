from __future__ import annotations
from datetime import timedelta
from celery.utils.log import get_task_logger
from flask import current_app
from celery_app import celery as celery_app
from extensions import db
from .errors import UpstreamUnavailableError
from .models import Subscription, SubscriptionStatus as S
from .services.idempotency import prune_processed
from .services.subscriptions import sweep_abandoned, sync_subscription

log = get_task_logger(__name__)


@celery_app.task(name="billing.sync_subscriptions")
def sync_subscriptions():
    """
    Refetch canonical state for every open row. Catches up on webhooks that
    were never delivered.
    """
    ids = [row.stripe_subscription_id for row in
           db.session.query(Subscription.stripe_subscription_id)
           .filter(Subscription.status != S.CANCELED).all()]
    synced = failed = 0
    for sub_id in ids:
        try:
            sync_subscription(sub_id)
            db.session.commit()
            synced += 1
        except UpstreamUnavailableError as e:
            db.session.rollback()
            failed += 1
            log.warning("sync_subscriptions: %s skipped until next run: %s", sub_id, e.message)
    log.info("sync_subscriptions: synced=%s failed=%s", synced, failed)
    return {"synced": synced, "failed": failed}


@celery_app.task(name="billing.sweep_abandoned")
def sweep_abandoned_subscriptions():
    hours = int(current_app.config.get("BILLING_PENDING_GRACE_HOURS", 48))
    canceled = sweep_abandoned(timedelta(hours=hours))
    db.session.commit()
    log.info("sweep_abandoned: canceled=%s (grace %sh)", canceled, hours)
    return {"canceled": canceled}


@celery_app.task(name="billing.prune_processed_events")
def prune_processed_events():
    days = int(current_app.config.get("BILLING_EVENT_RETENTION_DAYS", 30))
    removed = prune_processed(timedelta(days=days))
    db.session.commit()
    log.info("prune_processed_events: removed=%s older than %sd", removed, days)
    return {"removed": removed}

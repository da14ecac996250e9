from __future__ import annotations
from datetime import timedelta
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from extensions import db
from ..models import ProcessedEvent, utcnow


def has_processed(event_id: str) -> bool:
    return db.session.query(ProcessedEvent.id).filter_by(event_id=event_id).first() is not None


def mark_processed(event_id: str, kind: str) -> bool:
    """
    Record that the effects of `event_id` have been applied.

    Returns False when a concurrent delivery of the same event already holds
    the record; the SAVEPOINT keeps the caller's transaction usable so its
    (upsert-only) handler work still commits.
    """
    try:
        with db.session.begin_nested():
            db.session.add(ProcessedEvent(event_id=event_id, event_type=kind))
            db.session.flush()
    except IntegrityError:
        return False
    return True


def prune_processed(older_than: timedelta) -> int:
    cutoff = utcnow() - older_than
    res = db.session.execute(delete(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff))
    return int(res.rowcount or 0)

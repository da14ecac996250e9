from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String
from extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for DateTime(timezone=True)
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


class SubscriptionStatus(str):
    INCOMPLETE = "incomplete"
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class LedgerStatus(str):
    PENDING = "pending"
    OPEN = "open"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class BillingCustomer(db.Model):
    __tablename__ = "billing_customer"
    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stripe_customer_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)


class Subscription(db.Model):
    __tablename__ = "billing_subscription"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    plan_id: Mapped[str] = mapped_column(String(32), nullable=False)
    stripe_subscription_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    stripe_customer_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SubscriptionStatus.PENDING) # SubscriptionStatus
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    video_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    video_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("video_count >= 0", name="ck_subscription_video_count_nonneg"),
        db.Index("ix_subscription_user_status", "user_id", "status"),
        db.Index("ix_subscription_customer_status", "stripe_customer_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        end = as_utc(self.current_period_end)
        return self.status == SubscriptionStatus.ACTIVE and (end is None or utcnow() <= end)

    @property
    def remaining_videos(self) -> int:
        return max(0, (self.video_limit or 0) - (self.video_count or 0))

    @property
    def can_create_video(self) -> bool:
        return self.is_active and self.remaining_videos > 0

    def to_dict(self) -> dict:
        start = as_utc(self.current_period_start)
        end = as_utc(self.current_period_end)
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_customer_id": self.stripe_customer_id,
            "status": self.status,
            "current_period_start": start.isoformat() if start else None,
            "current_period_end": end.isoformat() if end else None,
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "video_count": self.video_count,
            "video_limit": self.video_limit,
            "remaining_videos": self.remaining_videos,
        }


class BillingLedgerEntry(db.Model):
    __tablename__ = "billing_ledger_entry"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False) # minor units
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=LedgerStatus.PENDING) # LedgerStatus
    stripe_invoice_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_id: Mapped[Optional[int]] = mapped_column(ForeignKey("billing_subscription.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_ledger_amount_nonneg"),
        db.Index("ix_ledger_user_created", "user_id", "created_at"),
        db.Index("ix_ledger_status_created", "status", "created_at"),
    )

    @property
    def formatted_amount(self) -> str:
        major, minor = divmod(self.amount or 0, 100)
        symbol = "$" if (self.currency or "").lower() == "usd" else ""
        suffix = "" if symbol else f" {(self.currency or '').upper()}"
        return f"{symbol}{major:,}.{minor:02d}{suffix}"

    def to_dict(self) -> dict:
        created = as_utc(self.created_at)
        return {
            "id": self.id,
            "amount": self.amount,
            "currency": self.currency,
            "formatted_amount": self.formatted_amount,
            "status": self.status,
            "description": self.description,
            "stripe_invoice_id": self.stripe_invoice_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "subscription_id": self.subscription_id,
            "created_at": created.isoformat() if created else None,
        }


class ProcessedEvent(db.Model):
    __tablename__ = "billing_processed_event"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

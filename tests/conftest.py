import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
import stripe
from flask_jwt_extended import create_access_token

from app import create_app
from extensions import db
from billing.models import Subscription, SubscriptionStatus, utcnow

WEBHOOK_SECRET = "whsec_test_secret"
DAY = 86400


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way the platform does."""
    ts = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


class FakeStripe:
    """In-memory stand-in for the canonical objects behind Stripe's retrieve calls."""

    def __init__(self):
        self.subscriptions = {}
        self.invoices = {}
        self.payment_intents = {}
        self.unavailable = set()

    def _retriever(self, store, kind):
        def retrieve(object_id, *args, **kwargs):
            if object_id in self.unavailable:
                raise stripe.APIConnectionError("connection reset")
            if object_id not in store:
                raise stripe.InvalidRequestError(f"No such {kind}: '{object_id}'", "id", code="resource_missing")
            return store[object_id]
        return retrieve

    def modify_subscription(self, object_id, **params):
        obj = self._retriever(self.subscriptions, "subscription")(object_id)
        for key, value in params.items():
            if key == "metadata":
                obj["metadata"].update(value)
            else:
                obj[key] = value
        return obj

    def cancel_subscription(self, object_id, **params):
        obj = self._retriever(self.subscriptions, "subscription")(object_id)
        obj["status"] = "canceled"
        return obj

    def add_subscription(self, id="sub_1", customer="cus_1", status="active", user_id=7,
                         start_days=-1, end_days=29, latest_invoice=None, metadata=None, price="price_monthly"):
        now = int(time.time())
        meta = {"userId": str(user_id), "planId": "monthly"} if metadata is None else metadata
        obj = {
            "id": id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "current_period_start": now + start_days * DAY,
            "current_period_end": now + end_days * DAY,
            "cancel_at_period_end": False,
            "latest_invoice": latest_invoice,
            "metadata": meta,
            "items": {"data": [{"price": {"id": price}}]},
        }
        self.subscriptions[id] = obj
        return obj

    def add_invoice(self, id="inv_1", subscription="sub_1", customer="cus_1", status="paid",
                    amount=19900, payment_intent="pi_1"):
        obj = {
            "id": id,
            "object": "invoice",
            "customer": customer,
            "subscription": subscription,
            "status": status,
            "amount_due": amount,
            "amount_paid": amount if status == "paid" else 0,
            "currency": "usd",
            "payment_intent": payment_intent,
        }
        self.invoices[id] = obj
        return obj

    def add_payment_intent(self, id="pi_1", customer="cus_1", invoice=None, metadata=None, amount=99700):
        obj = {
            "id": id,
            "object": "payment_intent",
            "customer": customer,
            "status": "succeeded",
            "amount": amount,
            "currency": "usd",
            "invoice": invoice,
            "metadata": metadata or {},
        }
        self.payment_intents[id] = obj
        return obj


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SECRET_KEY": "test",
        "JWT_SECRET_KEY": "test-jwt-secret-with-enough-length-32b",
        "JWT_TOKEN_LOCATION": ["headers"],
        "WTF_CSRF_ENABLED": False,
        "RATELIMIT_ENABLED": False,
        "STRIPE_SECRET_KEY": "sk_test_mock",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def fake_stripe():
    fake = FakeStripe()
    with patch("stripe.Subscription.retrieve", side_effect=fake._retriever(fake.subscriptions, "subscription")), \
         patch("stripe.Invoice.retrieve", side_effect=fake._retriever(fake.invoices, "invoice")), \
         patch("stripe.PaymentIntent.retrieve", side_effect=fake._retriever(fake.payment_intents, "payment_intent")), \
         patch("stripe.Subscription.modify", side_effect=fake.modify_subscription), \
         patch("stripe.Subscription.cancel", side_effect=fake.cancel_subscription):
        yield fake


@pytest.fixture
def post_event(client):
    def _post(event_type, obj, event_id=None, secret=WEBHOOK_SECRET, timestamp=None, signature=None):
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
        body = json.dumps(event).encode()
        header = signature if signature is not None else sign(body, secret, timestamp)
        return client.post(
            "/webhooks/billing",
            data=body,
            headers={"Stripe-Signature": header, "Content-Type": "application/json"},
        )
    return _post


@pytest.fixture
def auth_headers(app):
    def _headers(user_id=7):
        token = create_access_token(identity=str(user_id))
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_subscription(app):
    """Insert a local subscription row directly."""
    def _make(stripe_subscription_id="sub_1", user_id=7, customer="cus_1", status=SubscriptionStatus.ACTIVE,
              end_days=29, video_count=0, created_at=None):
        now = utcnow()
        sub = Subscription(
            user_id=user_id,
            plan_id="monthly",
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=customer,
            status=status,
            current_period_start=now - timedelta(days=1),
            current_period_end=now + timedelta(days=end_days),
            video_count=video_count,
            video_limit=30,
            created_at=created_at or now,
        )
        db.session.add(sub)
        db.session.commit()
        return sub
    return _make

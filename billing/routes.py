from __future__ import annotations
from flask import request, jsonify, current_app
from flask_jwt_extended import jwt_required, get_jwt_identity
import stripe
from extensions import db
from plans.catalog import DEFAULT_PLAN_ID, get_plan
from .errors import BillingError, UpstreamUnavailableError
from .models import BillingCustomer
from .services.stripe_client import create_checkout_session_subscription, create_customer
from .services import ledger, subscriptions as subs
from . import billing_bp


def _current_user_id() -> int:
    return int(get_jwt_identity())


def _to_int(v, default, lo=None, hi=None):
    try:
        x = int(v)
    except (TypeError, ValueError):
        return default
    if lo is not None and x < lo: x = lo
    if hi is not None and x > hi: x = hi
    return x


def _ensure_customer_for_user(user_id: int, email: str | None = None) -> str:
    bc = db.session.get(BillingCustomer, user_id)
    if bc:
        return bc.stripe_customer_id
    cust = create_customer(user_id=user_id, email=email)
    bc = BillingCustomer(user_id=user_id, stripe_customer_id=cust["id"])
    db.session.add(bc)
    db.session.flush()
    return bc.stripe_customer_id


@billing_bp.get("/subscription")
@jwt_required()
def current_subscription():
    sub = subs.get_active_subscription(_current_user_id())
    if sub is None:
        return jsonify({"success": True, "subscription": None})
    plan = get_plan(sub.plan_id)
    out = sub.to_dict()
    out["plan_name"] = plan.name if plan else sub.plan_id
    return jsonify({"success": True, "subscription": out})


def _management_error(e: BillingError):
    status = 502 if isinstance(e, UpstreamUnavailableError) else e.status_code
    return jsonify(e.to_dict()), status


@billing_bp.post("/subscription/cancel")
@jwt_required()
def cancel_subscription():
    user_id = _current_user_id()
    data = request.get_json(silent=True) or {}
    try:
        sub = subs.cancel_for_user(user_id, immediate=bool(data.get("immediate")), reason=data.get("reason"))
        db.session.commit()
    except BillingError as e:
        db.session.rollback()
        current_app.logger.warning("billing.cancel: user %s: %s", user_id, e.message)
        return _management_error(e)
    return jsonify({"success": True, "subscription": sub.to_dict()})


@billing_bp.post("/subscription/reactivate")
@jwt_required()
def reactivate_subscription():
    user_id = _current_user_id()
    try:
        sub = subs.reactivate_for_user(user_id)
        db.session.commit()
    except BillingError as e:
        db.session.rollback()
        current_app.logger.warning("billing.reactivate: user %s: %s", user_id, e.message)
        return _management_error(e)
    return jsonify({"success": True, "subscription": sub.to_dict()})


@billing_bp.get("/history")
@jwt_required()
def billing_history():
    user_id = _current_user_id()
    limit = _to_int(request.args.get("limit", 50), 50, 1, 200)
    items = [e.to_dict() for e in ledger.billing_history(user_id, limit=limit)]
    return jsonify({"success": True, "items": items, "summary": ledger.billing_summary(user_id)})


@billing_bp.post("/checkout")
@jwt_required()
def start_checkout():
    user_id = _current_user_id()
    data = request.get_json(silent=True) or {}

    if subs.has_open_subscription(user_id):
        return jsonify({
            "success": False,
            "error": {"code": "subscription_exists", "message": "User already has an active subscription"},
        }), 409

    plan = get_plan(data.get("plan_id") or DEFAULT_PLAN_ID)
    if plan is None:
        return jsonify({"success": False, "error": {"code": "unknown_plan", "message": "Unknown plan"}}), 400

    cfg = current_app.config
    success_url = data.get("success_url") or cfg["BILLING_SUCCESS_URL"]
    cancel_url = data.get("cancel_url") or cfg["BILLING_CANCEL_URL"]
    try:
        customer_id = _ensure_customer_for_user(user_id, data.get("email"))
        session = create_checkout_session_subscription(
            customer_id, user_id, plan.id, plan.stripe_price_id, success_url, cancel_url
        )
        db.session.commit()
    except stripe.StripeError as e:
        db.session.rollback()
        current_app.logger.warning("billing.checkout: upstream error for user %s: %s", user_id, e)
        err = UpstreamUnavailableError("Payment provider unavailable")
        return jsonify(err.to_dict()), 502

    current_app.logger.info("billing.checkout: session %s for user %s (%s)", session["id"], user_id, plan.id)
    return jsonify({"success": True, "checkout_url": session["url"], "session_id": session["id"]})

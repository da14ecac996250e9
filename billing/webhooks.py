from __future__ import annotations
from flask import request, jsonify, current_app
from extensions import limiter
from .errors import BillingError, SignatureError, ValidationError
from .services.dispatcher import process_webhook
from . import billing_webhooks_bp


@billing_webhooks_bp.post("/billing")
@limiter.exempt
def billing_webhook():
    # raw bytes: the signature covers the body exactly as sent
    payload = request.get_data()
    sig = request.headers.get("Stripe-Signature", "")

    try:
        result = process_webhook(payload, sig)
    except (SignatureError, ValidationError) as e:
        current_app.logger.warning("billing_webhook: rejected: %s", e.message)
        return jsonify(e.to_dict()), 400
    except BillingError as e:
        # non-2xx so the platform redelivers
        current_app.logger.error("billing_webhook: %s: %s", e.code, e.message)
        return jsonify(e.to_dict()), 500
    except Exception:
        current_app.logger.exception("billing_webhook: unexpected failure")
        return jsonify({"success": False, "error": {"code": "server_error", "message": "internal error"}}), 500

    return jsonify(result.to_dict()), 200

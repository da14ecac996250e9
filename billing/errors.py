from typing import Any, Dict, Optional


class BillingError(Exception):
    status_code = 500
    code = "billing_error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.message = message or self.code.replace("_", " ").title()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": False, "error": {"code": self.code, "message": self.message}}
        if self.details:
            payload["error"]["details"] = self.details
        return payload


# Untrusted payload: never reaches the handlers.
class SignatureError(BillingError):              status_code = 400; code = "bad_signature"
class ValidationError(BillingError):             status_code = 400; code = "invalid_event"

# Retryable: the event is not marked processed so the platform redelivers it.
class UpstreamUnavailableError(BillingError):    status_code = 500; code = "upstream_unavailable"
class UpstreamNotFoundError(BillingError):       status_code = 404; code = "upstream_not_found"
class PersistenceError(BillingError):            status_code = 500; code = "persistence_error"

# Acknowledged as a no-op: retrying cannot materialize a missing subscription.
class CorrelationNotFoundError(BillingError):    status_code = 200; code = "correlation_not_found"

# User-facing management requests.
class SubscriptionNotFoundError(BillingError):   status_code = 404; code = "subscription_not_found"

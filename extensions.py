from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf import CSRFProtect
from flask_sqlalchemy import SQLAlchemy
from flask_migrate    import Migrate
import os
from flask_jwt_extended import get_jwt_identity

db      = SQLAlchemy()
migrate = Migrate()


csrf = CSRFProtect()
def _rate_limit_key():
    """
    Prefer the JWT identity if the request carried one, else the client IP.
    """
    try:
        ident = get_jwt_identity()
    except RuntimeError:
        # no JWT verified for this request
        ident = None
    if ident is not None and str(ident).strip():
        return f"user:{ident}"
    return get_remote_address()

# window counters live in this store; memory:// is per process and cleared on restart
limiter = Limiter(
    key_func=_rate_limit_key,
    storage_uri=os.environ.get("RATE_LIMIT_REDIS_URL")
                 or os.environ.get("REDIS_URL")
                 or "memory://",
    default_limits=["300 per 5 minutes"],
)

"""
Shared slowapi limiter.

The default limit applies to every route through the middleware; payment
endpoints that clients can hammer carry a tighter per-route limit.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from payship.core.config import get_settings

PAYMENT_RATE_LIMIT = "20/minute"

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{get_settings().rate_limit_per_minute}/minute"],
)

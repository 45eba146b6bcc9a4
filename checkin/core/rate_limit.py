"""Rate limiting configuration.

Limits are keyed per authenticated actor when one is known, else per IP:
- GENERATE: token issuance (players refreshing their code)
- SCAN: redemption (supervisors scanning a queue of players)
- STANDARD: everything else
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from checkin.core.config import settings


def get_actor_identifier(request: Request) -> str:
    """
    Get rate limit key based on the authenticated actor.

    Falls back to IP address if no actor was resolved for the request.
    Uses format: actor:{actor_id} or ip:{ip_address}
    """
    actor = getattr(request.state, "actor", None)
    if actor is not None and getattr(actor, "id", None):
        return f"actor:{actor.id}"

    return f"ip:{get_remote_address(request)}"


# Actor-based limiter (falls back to IP)
limiter = Limiter(key_func=get_actor_identifier)


class RateLimits:
    """
    Centralized rate limit configurations.

    Format: "X/period" where period is: second, minute, hour, day
    """

    STANDARD = f"{settings.RATE_LIMIT_PER_MINUTE}/minute"
    GENERATE = settings.RATE_LIMIT_GENERATE
    SCAN = settings.RATE_LIMIT_SCAN

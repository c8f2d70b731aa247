"""
rate_limit.py — Per-client limiter for the key-management routes.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address. This guards account-facing
endpoints such as key creation; metered service calls go through the
quota engine instead (keygate.services.quota).

Usage in routes:
    from fastapi import Request
    from keygate.core.rate_limit import limiter

    @router.post("/keys")
    @limiter.limit(settings.key_creation_limit)
    async def create_key(request: Request, ...):
        ...
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

"""
window_limiter.py — Flat per-key limiter over fixed wall-clock windows.

Independent of tiers: every key, free or premium, gets at most
``max_requests`` calls per window. Windows start at multiples of the
window size since the Unix epoch (an hourly window resets on the hour),
unlike the premium quota which slides with each request. Both limits
apply; a call passes only if each allows it.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from keygate.models.credential import Credential, WindowConfig, WindowDecision
from keygate.services.ledger import UsageLedger

logger = logging.getLogger(__name__)


def window_bounds(now: datetime, window_seconds: int) -> tuple[datetime, datetime]:
    """Start and end of the fixed window containing *now*."""
    epoch = int(now.timestamp())
    start = datetime.fromtimestamp(epoch - epoch % window_seconds, tz=timezone.utc)
    return start, start + timedelta(seconds=window_seconds)


class WindowedRateLimiter:
    def __init__(self, ledger: UsageLedger, clock: Optional[Callable[[], datetime]] = None):
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    async def check(
        self,
        credential: Credential,
        config: WindowConfig,
        now: Optional[datetime] = None,
    ) -> WindowDecision:
        """
        Would one more call for *credential* fit in the current window?

        ``remaining`` already accounts for the call being checked. This is
        a read: recording the call is the quota engine's job.
        """
        now = now or self._clock()
        start, reset_at = window_bounds(now, config.window_seconds)
        used = await self._ledger.count_since(credential.id, start)

        if used >= config.max_requests:
            logger.info(
                "Window cap hit for key %s: %d/%d until %s",
                credential.id, used, config.max_requests, reset_at.isoformat(),
            )
            return WindowDecision(allowed=False, remaining=0, reset_at=reset_at, limit=config.max_requests)

        return WindowDecision(
            allowed=True,
            remaining=config.max_requests - used - 1,
            reset_at=reset_at,
            limit=config.max_requests,
        )

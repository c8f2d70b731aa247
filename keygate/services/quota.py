"""
quota.py — The Quota Engine: one entry point that decides and records.

check_and_record(token, required_class, route) runs, in order:
  1. token shape            → INVALID_FORMAT (no store access)
  2. key lookup             → INVALID_CREDENTIAL (unknown, inactive, expired, orphaned)
  3. class match            → WRONG_CREDENTIAL_CLASS
  4. tier                   → is_premium() on a fresh account read
  5. tier quota
       free:    lifetime cap on usage_count       → FREE_TIER_EXHAUSTED
       premium: sliding window on premium records  → RATE_LIMITED
  6. flat windowed limiter  → RATE_LIMITED
  7. reservation: atomic counter increment, then a ledger append

An allowed verdict is returned only after the call has been recorded, so
there is no way to check without recording or record without checking.

Free tier is enforced by the conditional increment itself (step 7), not
by the read in step 5: when N callers race for k remaining slots, exactly
k increments succeed. The premium window count is a read followed by an
unconditional increment and may briefly undercount under heavy
concurrency on a single key; the flat limiter bounds that gap.

Store failures surface as QuotaSystemError. The engine never retries:
retrying an increment whose outcome is unknown could count a call twice.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel
from pymongo.errors import PyMongoError

from keygate.core.errors import InvalidTokenFormat, QuotaSystemError
from keygate.models.account import Account
from keygate.models.credential import (
    Credential,
    DenialReason,
    QuotaVerdict,
    ServiceClass,
    Tier,
    WindowConfig,
)
from keygate.services.credentials import CredentialStore, redact_token
from keygate.services.ledger import UsageLedger
from keygate.services.tiers import AccountStore, tier_of
from keygate.services.window_limiter import WindowedRateLimiter

logger = logging.getLogger(__name__)


class QuotaPolicy(BaseModel):
    """The numbers the engine enforces. Built once from settings."""
    free_lifetime_cap: int
    premium_caps: dict[ServiceClass, int]
    premium_window_seconds: int = 3600
    rate_window: WindowConfig

    @classmethod
    def from_settings(cls, settings) -> "QuotaPolicy":
        return cls(
            free_lifetime_cap=settings.free_tier_lifetime_cap,
            premium_caps={sc: settings.premium_cap(sc) for sc in ServiceClass},
            premium_window_seconds=settings.premium_window_seconds,
            rate_window=settings.rate_window,
        )


class QuotaEngine:
    def __init__(
        self,
        credentials: CredentialStore,
        accounts: AccountStore,
        ledger: UsageLedger,
        limiter: WindowedRateLimiter,
        policy: QuotaPolicy,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._credentials = credentials
        self._accounts = accounts
        self._ledger = ledger
        self._limiter = limiter
        self._policy = policy
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    async def check_and_record(
        self,
        token: str,
        required_class: ServiceClass,
        route: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> QuotaVerdict:
        """
        Decide whether a call may proceed and, if so, record it.

        Returns a QuotaVerdict for every outcome, allowed or denied.
        Raises QuotaSystemError when the backing store fails; callers
        must not treat that as either allowed or denied.
        """
        try:
            verdict = await self._decide(token, required_class, route, metadata)
        except PyMongoError as exc:
            logger.error("Quota check failed for key %s on %s: %s", redact_token(token), route, exc)
            raise QuotaSystemError(str(exc)) from exc

        if not verdict.allowed:
            logger.info(
                "Denied %s on %s: %s (remaining=%s)",
                redact_token(token), route, verdict.reason.value, verdict.remaining,
            )
        return verdict

    # ── Decision ──────────────────────────────────────────────────────────────

    async def _decide(
        self,
        token: str,
        required_class: ServiceClass,
        route: str,
        metadata: Optional[dict[str, Any]],
    ) -> QuotaVerdict:
        now = self._clock()

        try:
            self._credentials.parse_token(token)
        except InvalidTokenFormat:
            return QuotaVerdict.denied(DenialReason.INVALID_FORMAT)

        credential = await self._credentials.resolve(token)
        if credential is None or not credential.is_active or credential.is_expired(now):
            return QuotaVerdict.denied(DenialReason.INVALID_CREDENTIAL)

        ids = {"credential_id": credential.id, "account_id": credential.account_id}
        if credential.service_class is not required_class:
            return QuotaVerdict.denied(DenialReason.WRONG_CREDENTIAL_CLASS, **ids)

        account = await self._accounts.get(credential.account_id)
        if account is None:
            logger.warning("Key %s belongs to missing account %s", credential.id, credential.account_id)
            return QuotaVerdict.denied(DenialReason.INVALID_CREDENTIAL, **ids)

        tier = tier_of(account)
        if tier is Tier.PREMIUM:
            quota = await self._premium_quota(credential, now)
        else:
            quota = self._free_quota(credential)
        if not quota.allowed:
            return quota

        window = await self._limiter.check(credential, self._policy.rate_window, now=now)
        if not window.allowed:
            return QuotaVerdict.denied(
                DenialReason.RATE_LIMITED,
                reset_at=window.reset_at,
                limit=window.limit,
                tier=tier,
                **ids,
            )

        return await self._reserve(credential, account, quota, route, metadata, now)

    def _free_quota(self, credential: Credential) -> QuotaVerdict:
        cap = self._policy.free_lifetime_cap
        ids = {"credential_id": credential.id, "account_id": credential.account_id}
        if credential.usage_count >= cap:
            return QuotaVerdict.denied(
                DenialReason.FREE_TIER_EXHAUSTED, limit=cap, tier=Tier.FREE, **ids
            )
        return QuotaVerdict(
            allowed=True,
            remaining=cap - credential.usage_count - 1,
            limit=cap,
            tier=Tier.FREE,
            **ids,
        )

    async def _premium_quota(self, credential: Credential, now: datetime) -> QuotaVerdict:
        cap = self._policy.premium_caps[credential.service_class]
        window = timedelta(seconds=self._policy.premium_window_seconds)
        since = now - window
        ids = {"credential_id": credential.id, "account_id": credential.account_id}

        used = await self._ledger.count_since(credential.id, since, tier=Tier.PREMIUM)
        # The window frees its first slot when the oldest counted call ages out.
        oldest = await self._ledger.oldest_since(credential.id, since, tier=Tier.PREMIUM) if used else None
        reset_at = (oldest or now) + window

        if used >= cap:
            return QuotaVerdict.denied(
                DenialReason.RATE_LIMITED, reset_at=reset_at, limit=cap, tier=Tier.PREMIUM, **ids
            )
        return QuotaVerdict(
            allowed=True,
            remaining=cap - used - 1,
            reset_at=reset_at,
            limit=cap,
            tier=Tier.PREMIUM,
            **ids,
        )

    # ── Reservation ───────────────────────────────────────────────────────────

    async def _reserve(
        self,
        credential: Credential,
        account: Account,
        quota: QuotaVerdict,
        route: str,
        metadata: Optional[dict[str, Any]],
        now: datetime,
    ) -> QuotaVerdict:
        if quota.tier is Tier.FREE:
            cap = self._policy.free_lifetime_cap
            count = await self._credentials.record_use(credential.id, cap=cap, now=now)
            if count is None:
                # Another caller took the last slot between our read and the increment.
                return QuotaVerdict.denied(
                    DenialReason.FREE_TIER_EXHAUSTED,
                    limit=cap,
                    tier=Tier.FREE,
                    credential_id=credential.id,
                    account_id=account.id,
                )
            quota = quota.model_copy(update={"remaining": cap - count})
        else:
            count = await self._credentials.record_use(credential.id, now=now)
            if count is None:
                # Revoked between lookup and increment.
                return QuotaVerdict.denied(
                    DenialReason.INVALID_CREDENTIAL,
                    credential_id=credential.id,
                    account_id=account.id,
                )

        try:
            await self._ledger.append(
                credential.id,
                route,
                now,
                account_id=account.id,
                service_class=credential.service_class,
                tier=quota.tier,
                metadata=metadata,
            )
        except PyMongoError:
            # The counter already holds this call exactly once; only the audit row is missing.
            logger.error(
                "Ledger append failed after counting call %d for key %s on %s",
                count, credential.id, route,
            )
            raise

        return quota

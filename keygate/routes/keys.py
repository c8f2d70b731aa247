"""
keys.py — API key management for the signed-in account.

Routes:
  POST   /keys          — get-or-create the account's key for a service class
  GET    /keys          — list the account's keys (with its tier flags)
  DELETE /keys/{key_id} — revoke (soft-delete) a key
  GET    /keys/usage    — per-route call counts, lifetime and last 24 hours

All routes require a valid Bearer token. Key creation is additionally
limited per client IP (settings.key_creation_limit, default 5/day).
"""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from keygate.core.config import settings
from keygate.core.database import get_db
from keygate.core.rate_limit import limiter
from keygate.models.credential import (
    KeyCreate,
    KeyCreated,
    KeyList,
    KeyOut,
    OwnerTier,
    RouteUsage,
    UsageStats,
)
from keygate.routes.accounts import CurrentAccount
from keygate.services.credentials import CredentialStore
from keygate.services.ledger import UsageLedger
from keygate.services.tiers import is_premium

router = APIRouter(prefix="/keys", tags=["keys"])


def _credential_store(db=Depends(get_db)) -> CredentialStore:
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return CredentialStore(db, prefix=settings.key_prefix)


@router.post("", response_model=KeyCreated, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.key_creation_limit)
async def create_key(
    request: Request,
    response: Response,
    payload: KeyCreate,
    current_account: CurrentAccount,
    store: CredentialStore = Depends(_credential_store),
):
    """
    Return the account's active key of the requested type, creating it if
    there is none. Asking twice hands back the same key (200, not 201).
    """
    expires_in_days = payload.expires_in_days or settings.default_key_expiry_days
    credential, created = await store.create(
        current_account.id, payload.type, name=payload.name, expires_in_days=expires_in_days
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return KeyCreated(
        created=created,
        message="API key generated successfully" if created else "API key already exists",
        key=KeyOut.from_credential(credential),
    )


@router.get("", response_model=KeyList)
async def list_keys(
    current_account: CurrentAccount,
    active_only: bool = False,
    store: CredentialStore = Depends(_credential_store),
):
    """List the account's keys, newest first."""
    credentials = await store.list_for_account(current_account.id, active_only=active_only)
    return KeyList(
        keys=[KeyOut.from_credential(c) for c in credentials],
        owner=OwnerTier(
            payment_verified=current_account.payment_verified,
            is_token_holder=current_account.is_token_holder,
            is_premium=is_premium(current_account),
        ),
    )


@router.get("/usage", response_model=UsageStats)
async def usage_stats(
    current_account: CurrentAccount,
    store: CredentialStore = Depends(_credential_store),
    db=Depends(get_db),
):
    """Usage broken down by route, with lifetime and last-24-hour totals."""
    since = datetime.now(tz=timezone.utc) - timedelta(hours=24)
    summary = await UsageLedger(db).usage_summary(current_account.id, since)
    credentials = await store.list_for_account(current_account.id)
    return UsageStats(
        keys=[KeyOut.from_credential(c) for c in credentials],
        usage=[RouteUsage(**row) for row in summary["by_route"]],
        total_requests=summary["total_requests"],
        last_24_hours=summary["recent_requests"],
    )


@router.delete("/{key_id}")
async def revoke_key(
    key_id: str,
    current_account: CurrentAccount,
    store: CredentialStore = Depends(_credential_store),
):
    """Revoke a key. Unknown keys and other accounts' keys both answer 404."""
    if not await store.deactivate(key_id, current_account.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
    return {"revoked": True, "id": key_id}

"""
accounts.py — Account routes.

Routes:
  POST /accounts                — open an account, returns a bearer JWT
  GET  /accounts/me             — current account with its derived tier
  PUT  /accounts/{id}/tier      — set payment / token-holder flags (admin)

The tier route is where the payment and token-balance verifiers report
their results; it is guarded by the X-Admin-Token shared secret.

All errors use HTTPException so FastAPI serialises them as:
  { "detail": "..." }
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from keygate.core.database import get_db
from keygate.core.security import create_access_token, decode_access_token, verify_admin_token
from keygate.models.account import Account, AccountCreate, AccountOut, TierUpdate, Token
from keygate.services.tiers import AccountStore, is_premium

router = APIRouter(prefix="/accounts", tags=["accounts"])

# Reusable bearer extractor (does NOT auto-raise on missing token)
_bearer = HTTPBearer(auto_error=False)
CredDep = Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)]


# ── Helpers ───────────────────────────────────────────────────────────────────

def _account_out(account: Account) -> AccountOut:
    return AccountOut(
        id=account.id,
        auth_provider=account.auth_provider,
        payment_verified=account.payment_verified,
        is_token_holder=account.is_token_holder,
        token_balance=account.token_balance,
        is_premium=is_premium(account),
        created_at=account.created_at,
    )


def _require_db(db):
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return db


async def _get_current_account(credentials: CredDep, db=Depends(get_db)) -> Account:
    """
    FastAPI dependency — validates the Bearer token and loads the account.

    Raises 401 if the token is missing, invalid, or the account no longer exists.
    """
    cred_error = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not credentials:
        raise cred_error

    account_id = decode_access_token(credentials.credentials)
    if not account_id:
        raise cred_error

    account = await AccountStore(_require_db(db)).get(account_id)
    if account is None:
        raise cred_error
    return account


# Re-export so other routes can depend on it
CurrentAccount = Annotated[Account, Depends(_get_current_account)]


# ── Routes ────────────────────────────────────────────────────────────────────

@router.post("", response_model=Token, status_code=status.HTTP_201_CREATED)
async def create_account(payload: AccountCreate, db=Depends(get_db)):
    """Open a free-tier account and return a bearer token for it."""
    store = AccountStore(_require_db(db))
    account = await store.create(auth_provider=payload.auth_provider, external_id=payload.external_id)
    return Token(access_token=create_access_token(account.id), account=_account_out(account))


@router.get("/me", response_model=AccountOut)
async def me(current_account: CurrentAccount):
    """Return the authenticated account, including whether it is premium."""
    return _account_out(current_account)


@router.put("/{account_id}/tier", response_model=AccountOut)
async def update_tier(
    account_id: str,
    payload: TierUpdate,
    db=Depends(get_db),
    x_admin_token: Annotated[Optional[str], Header(alias="X-Admin-Token")] = None,
):
    """Record a verified payment or token holding. Takes effect on the next request."""
    if not verify_admin_token(x_admin_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin token required")

    account = await AccountStore(_require_db(db)).set_tier_flags(
        account_id,
        payment_verified=payload.payment_verified,
        is_token_holder=payload.is_token_holder,
        token_balance=payload.token_balance,
    )
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return _account_out(account)

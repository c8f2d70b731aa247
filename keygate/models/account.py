"""
account.py — Pydantic schemas for accounts and their tier flags.

Separation of concerns:
  Account        — internal representation stored in MongoDB
  AccountCreate  — what the client sends to open an account
  AccountOut     — what the API returns (adds the derived is_premium)
  TierUpdate     — what the payment / token verifiers send to flip flags
  Token          — bearer response from POST /accounts
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

AuthProvider = Literal["github", "wallet", "email"]


class Account(BaseModel):
    """Full document as stored in MongoDB."""
    id: str
    auth_provider: Optional[AuthProvider] = None
    external_id: Optional[str] = None
    payment_verified: bool = False
    is_token_holder: bool = False
    token_balance: float = 0.0
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @classmethod
    def from_doc(cls, doc: dict) -> "Account":
        return cls(
            id=str(doc["_id"]),
            auth_provider=doc.get("auth_provider"),
            external_id=doc.get("external_id"),
            payment_verified=doc.get("payment_verified", False),
            is_token_holder=doc.get("is_token_holder", False),
            token_balance=doc.get("token_balance", 0.0),
            created_at=doc.get("created_at", datetime.now(tz=timezone.utc)),
        )


class AccountCreate(BaseModel):
    """Payload for POST /accounts. Identity linkage is optional but all-or-nothing."""
    auth_provider: Optional[AuthProvider] = None
    external_id: Optional[str] = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _linkage_complete(self):
        if (self.auth_provider is None) != (self.external_id is None):
            raise ValueError("auth_provider and external_id must be given together")
        return self


class AccountOut(BaseModel):
    id: str
    auth_provider: Optional[AuthProvider] = None
    payment_verified: bool
    is_token_holder: bool
    token_balance: float
    is_premium: bool
    created_at: datetime


class TierUpdate(BaseModel):
    """Partial update — only provided flags are changed."""
    payment_verified: Optional[bool] = None
    is_token_holder: Optional[bool] = None
    token_balance: Optional[float] = Field(default=None, ge=0)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account: AccountOut

"""
credential.py — Schemas for API keys, usage records and quota verdicts.

Domain:
  ServiceClass   — which API a key is scoped to (ANALYSIS | CHAT)
  Tier           — which quota regime governed a call (free | premium)
  DenialReason   — why a call was refused
  Credential     — an API key as stored in MongoDB
  UsageRecord    — one authorized call in the append-only ledger
  QuotaVerdict   — the per-request decision (never persisted)
  WindowConfig / WindowDecision — input / output of the flat rate limiter

API payloads:
  KeyCreate      — body for POST /keys
  KeyOut         — key as returned to its owner
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ── Enums ─────────────────────────────────────────────────────────────────────

class ServiceClass(str, Enum):
    ANALYSIS = "ANALYSIS"
    CHAT = "CHAT"

    @property
    def segment(self) -> str:
        """Token segment that marks this class, e.g. ``analysis``."""
        return self.value.lower()


class Tier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class DenialReason(str, Enum):
    INVALID_FORMAT = "invalid_format"
    INVALID_CREDENTIAL = "invalid_credential"
    WRONG_CREDENTIAL_CLASS = "wrong_credential_class"
    FREE_TIER_EXHAUSTED = "free_tier_exhausted"
    RATE_LIMITED = "rate_limited"


# ── Stored records ────────────────────────────────────────────────────────────

class Credential(BaseModel):
    """An API key document from the ``credentials`` collection."""
    id: str
    token: str
    account_id: str
    service_class: ServiceClass
    name: Optional[str] = None
    is_active: bool = True
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        # Motor hands back naive UTC datetimes unless tz_aware is set
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now

    @classmethod
    def from_doc(cls, doc: dict) -> "Credential":
        return cls(
            id=str(doc["_id"]),
            token=doc["token"],
            account_id=doc["account_id"],
            service_class=doc["service_class"],
            name=doc.get("name"),
            is_active=doc.get("is_active", True),
            usage_count=doc.get("usage_count", 0),
            last_used_at=doc.get("last_used_at"),
            created_at=doc.get("created_at", datetime.now(tz=timezone.utc)),
            expires_at=doc.get("expires_at"),
        )


class UsageRecord(BaseModel):
    """One authorized call. ``metadata`` is for audit only."""
    credential_id: str
    account_id: str
    route: str
    service_class: ServiceClass
    tier: Tier
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Decisions ─────────────────────────────────────────────────────────────────

class QuotaVerdict(BaseModel):
    """
    Outcome of one check_and_record call.

    remaining=None means unbounded; reset_at=None means the limit never
    resets on its own (free-tier lifetime cap).
    """
    allowed: bool
    reason: Optional[DenialReason] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    limit: Optional[int] = None
    tier: Optional[Tier] = None
    credential_id: Optional[str] = None
    account_id: Optional[str] = None

    @classmethod
    def denied(cls, reason: DenialReason, **fields) -> "QuotaVerdict":
        fields.setdefault("remaining", 0)
        return cls(allowed=False, reason=reason, **fields)


class WindowConfig(BaseModel):
    max_requests: int = Field(gt=0)
    window_seconds: int = Field(gt=0)


class WindowDecision(BaseModel):
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int


# ── API payloads ──────────────────────────────────────────────────────────────

class KeyCreate(BaseModel):
    """Payload for POST /keys."""
    type: ServiceClass
    name: str = Field(min_length=1, max_length=100)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=365)


class KeyOut(BaseModel):
    """A key as shown to its owner."""
    id: str
    api_key: str
    name: Optional[str] = None
    type: ServiceClass
    is_active: bool
    usage_count: int
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_credential(cls, cred: Credential) -> "KeyOut":
        return cls(
            id=cred.id,
            api_key=cred.token,
            name=cred.name,
            type=cred.service_class,
            is_active=cred.is_active,
            usage_count=cred.usage_count,
            created_at=cred.created_at,
            last_used_at=cred.last_used_at,
            expires_at=cred.expires_at,
        )


class KeyCreated(BaseModel):
    """Response for POST /keys. created=False means an existing key was returned."""
    created: bool
    message: str
    key: KeyOut


class OwnerTier(BaseModel):
    payment_verified: bool
    is_token_holder: bool
    is_premium: bool


class KeyList(BaseModel):
    keys: list[KeyOut]
    owner: OwnerTier


class RouteUsage(BaseModel):
    route: str
    count: int
    last_used: Optional[datetime] = None


class UsageStats(BaseModel):
    """Response for GET /keys/usage."""
    keys: list[KeyOut]
    usage: list[RouteUsage]
    total_requests: int
    last_24_hours: int

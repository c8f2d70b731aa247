"""
credentials.py — The Credential Store.

CRUD over the `credentials` collection:
  parse_token()      — shape check, no I/O; yields the token's service class
  resolve()          — point lookup by exact token (unique index)
  create()           — idempotent: one active key per (account, class)
  record_use()       — atomic increment, optionally conditional on a cap
  deactivate()       — owner-scoped soft delete
  list_for_account() — an account's keys, newest first

Token shape: ``<prefix>_<class>_<64 hex>``, e.g. ``kg_analysis_3f9a…``.
Keys are stored in plain text because an idempotent create has to hand
the existing key back to its owner.

record_use() is the only writer of usage_count.
"""

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from keygate.core.errors import InvalidTokenFormat
from keygate.models.credential import Credential, ServiceClass

logger = logging.getLogger(__name__)

_TOKEN_HEX_BYTES = 32


def redact_token(token: str) -> str:
    """Log-safe form of a key: its first 12 characters."""
    return token[:12] + "..." if len(token) > 12 else "***"


class CredentialStore:
    def __init__(self, db, prefix: str = "kg"):
        self._col = db["credentials"]
        self._prefix = prefix
        segments = "|".join(sc.segment for sc in ServiceClass)
        self._pattern = re.compile(
            rf"{re.escape(prefix)}_({segments})_[0-9a-f]{{{_TOKEN_HEX_BYTES * 2}}}"
        )

    # ── Token format ──────────────────────────────────────────────────────────

    def generate_token(self, service_class: ServiceClass) -> str:
        return f"{self._prefix}_{service_class.segment}_{secrets.token_hex(_TOKEN_HEX_BYTES)}"

    def parse_token(self, token: str) -> ServiceClass:
        """Return the class encoded in *token*, or raise InvalidTokenFormat."""
        # fullmatch: "$" would let a trailing newline through.
        match = self._pattern.fullmatch(token or "")
        if match is None:
            raise InvalidTokenFormat(f"malformed API key {redact_token(token or '')!r}")
        return ServiceClass(match.group(1).upper())

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def resolve(self, token: str) -> Optional[Credential]:
        """
        Look up a credential by exact token.

        Malformed tokens raise InvalidTokenFormat before any store access.
        Returns None when no key has this token; inactive keys are
        returned as-is and the caller decides.
        """
        self.parse_token(token)
        doc = await self._col.find_one({"token": token})
        return Credential.from_doc(doc) if doc else None

    async def find_active(self, account_id: str, service_class: ServiceClass) -> Optional[Credential]:
        doc = await self._col.find_one({
            "account_id": account_id,
            "service_class": service_class.value,
            "is_active": True,
        })
        return Credential.from_doc(doc) if doc else None

    async def list_for_account(self, account_id: str, active_only: bool = False) -> list[Credential]:
        query: dict = {"account_id": account_id}
        if active_only:
            query["is_active"] = True
        cursor = self._col.find(query).sort("created_at", -1)
        docs = await cursor.to_list(length=100)
        return [Credential.from_doc(d) for d in docs]

    # ── Writes ────────────────────────────────────────────────────────────────

    async def create(
        self,
        account_id: str,
        service_class: ServiceClass,
        name: Optional[str] = None,
        expires_in_days: Optional[int] = None,
    ) -> tuple[Credential, bool]:
        """
        Return the account's active key for *service_class*, creating it if needed.

        The second element is True only when a new key was written. Two
        concurrent creates race on the partial unique index; the loser
        re-reads and returns the winner's key.
        """
        existing = await self.find_active(account_id, service_class)
        if existing is not None:
            return existing, False

        now = datetime.now(tz=timezone.utc)
        doc = {
            "token": self.generate_token(service_class),
            "account_id": account_id,
            "service_class": service_class.value,
            "name": name.strip() if name else None,
            "is_active": True,
            "usage_count": 0,
            "last_used_at": None,
            "created_at": now,
            "expires_at": now + timedelta(days=expires_in_days) if expires_in_days else None,
        }
        try:
            result = await self._col.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.find_active(account_id, service_class)
            if existing is None:
                raise
            return existing, False

        doc["_id"] = result.inserted_id
        logger.info(
            "Created %s key %s for account %s",
            service_class.value, redact_token(doc["token"]), account_id,
        )
        return Credential.from_doc(doc), True

    async def record_use(
        self,
        credential_id: str,
        cap: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Atomically count one use and return the new usage_count.

        With *cap*, the increment only applies while usage_count < cap, so
        concurrent callers can never push the counter past it. Returns None
        when the condition (active, under cap) did not hold.
        """
        query: dict = {"_id": ObjectId(credential_id), "is_active": True}
        if cap is not None:
            query["usage_count"] = {"$lt": cap}

        doc = await self._col.find_one_and_update(
            query,
            {
                "$inc": {"usage_count": 1},
                "$set": {"last_used_at": now or datetime.now(tz=timezone.utc)},
            },
            projection={"usage_count": 1},
            return_document=ReturnDocument.AFTER,
        )
        return doc["usage_count"] if doc else None

    async def deactivate(self, credential_id: str, account_id: str) -> bool:
        """
        Soft-delete a key owned by *account_id*.

        Returns False for unknown, foreign or malformed ids alike, so
        callers cannot probe for other accounts' keys.
        """
        try:
            oid = ObjectId(credential_id)
        except (InvalidId, TypeError):
            return False

        result = await self._col.update_one(
            {"_id": oid, "account_id": account_id},
            {"$set": {"is_active": False, "deactivated_at": datetime.now(tz=timezone.utc)}},
        )
        if result.matched_count:
            logger.info("Deactivated key %s for account %s", credential_id, account_id)
        return result.matched_count > 0

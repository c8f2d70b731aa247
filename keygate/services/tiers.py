"""
tiers.py — Account Tier Resolver and the account store behind it.

is_premium() is the single rule that picks a quota regime. Accounts are
read fresh on every decision: payment and token-holding status can change
between two requests, and the next request must see the change.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from keygate.models.account import Account, AuthProvider
from keygate.models.credential import Tier

logger = logging.getLogger(__name__)


def is_premium(account: Account) -> bool:
    return account.payment_verified or account.is_token_holder


def tier_of(account: Account) -> Tier:
    return Tier.PREMIUM if is_premium(account) else Tier.FREE


class AccountStore:
    def __init__(self, db):
        self._col = db["accounts"]

    async def get(self, account_id: str) -> Optional[Account]:
        try:
            oid = ObjectId(account_id)
        except (InvalidId, TypeError):
            return None
        doc = await self._col.find_one({"_id": oid})
        return Account.from_doc(doc) if doc else None

    async def create(
        self,
        auth_provider: Optional[AuthProvider] = None,
        external_id: Optional[str] = None,
    ) -> Account:
        doc = {
            "auth_provider": auth_provider,
            "external_id": external_id,
            "payment_verified": False,
            "is_token_holder": False,
            "token_balance": 0.0,
            "created_at": datetime.now(tz=timezone.utc),
        }
        result = await self._col.insert_one(doc)
        doc["_id"] = result.inserted_id
        return Account.from_doc(doc)

    async def set_tier_flags(
        self,
        account_id: str,
        payment_verified: Optional[bool] = None,
        is_token_holder: Optional[bool] = None,
        token_balance: Optional[float] = None,
    ) -> Optional[Account]:
        """
        Record the outcome of an external payment / token-balance check.

        Only the given flags change. Returns the updated account, or None
        if it does not exist.
        """
        try:
            oid = ObjectId(account_id)
        except (InvalidId, TypeError):
            return None

        updates = {
            k: v for k, v in (
                ("payment_verified", payment_verified),
                ("is_token_holder", is_token_holder),
                ("token_balance", token_balance),
            ) if v is not None
        }
        if not updates:
            return await self.get(account_id)

        doc = await self._col.find_one_and_update(
            {"_id": oid},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        account = Account.from_doc(doc)
        logger.info("Account %s tier flags updated: %s (tier=%s)", account_id, updates, tier_of(account).value)
        return account

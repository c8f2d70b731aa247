#!/usr/bin/env python3
"""
seed_db.py — Populate MongoDB with demo accounts and keys for local development.

Creates:
  - all indexes the gateway relies on
  - a free-tier account and a premium (token-holder) account
  - one ANALYSIS and one CHAT key for each, printed to stdout

Usage:
    python scripts/seed_db.py

Requires MongoDB running locally (or MONGO_URI / MONGO_DB_NAME set).
Safe to re-run: key creation is idempotent per account and class, and
accounts are matched on their demo external_id.
"""

import asyncio

from motor.motor_asyncio import AsyncIOMotorClient

from keygate.core.config import settings
from keygate.core.database import ensure_indexes
from keygate.core.security import create_access_token
from keygate.models.account import Account
from keygate.models.credential import ServiceClass
from keygate.services.credentials import CredentialStore
from keygate.services.tiers import AccountStore

DEMO_ACCOUNTS = [
    {"external_id": "demo-free", "premium": False},
    {"external_id": "demo-premium", "premium": True},
]


async def _get_or_create(db, accounts: AccountStore, external_id: str) -> Account:
    doc = await db["accounts"].find_one({"auth_provider": "email", "external_id": external_id})
    if doc:
        return Account.from_doc(doc)
    return await accounts.create(auth_provider="email", external_id=external_id)


async def seed() -> None:
    client = AsyncIOMotorClient(settings.mongo_uri, tz_aware=True)
    db = client[settings.mongo_db_name]

    await ensure_indexes(db)
    accounts = AccountStore(db)
    credentials = CredentialStore(db, prefix=settings.key_prefix)

    for spec in DEMO_ACCOUNTS:
        account = await _get_or_create(db, accounts, spec["external_id"])
        if spec["premium"]:
            account = await accounts.set_tier_flags(account.id, is_token_holder=True, token_balance=1.0)

        print(f"\n{spec['external_id']} (account {account.id})")
        print(f"  bearer: {create_access_token(account.id)}")
        for service_class in ServiceClass:
            cred, _ = await credentials.create(account.id, service_class, name="demo")
            print(f"  {service_class.value:<8} {cred.token}")

    client.close()


if __name__ == "__main__":
    asyncio.run(seed())

"""
MongoDB connection management using Motor (async driver).

Architecture decision: single DatabaseClient instance shared across all
requests via a module-level singleton. FastAPI's dependency injection
(get_db) gives routes clean access without importing the singleton directly.

The connection is opened in FastAPI's lifespan (startup) and closed
on shutdown. Indexes are created at startup too: the quota core relies
on them for point lookups and for the one-active-key-per-class rule.
"""

import logging
import re

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel

from keygate.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseClient:
    """
    Holds the Motor client and selected database.

    A class rather than bare globals so tests can replace .client and .db.
    """

    client: AsyncIOMotorClient | None = None
    db: AsyncIOMotorDatabase | None = None


# Module-level singleton: all app code references this object
db_client = DatabaseClient()


async def connect_to_mongo() -> None:
    """
    Create the MongoDB connection, validate it with a ping, ensure indexes.

    Fails gracefully if MongoDB is unavailable — the API still answers
    /health, and key-gated routes return 503 rather than letting calls
    through unmetered.
    """
    logger.info("Connecting to MongoDB at %s", _redact_uri(settings.mongo_uri))
    try:
        db_client.client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            tlsCAFile=certifi.where(),
            tz_aware=True,
        )
        db_client.db = db_client.client[settings.mongo_db_name]
        await db_client.client.admin.command("ping")
        await ensure_indexes(db_client.db)
        logger.info("MongoDB connection established (db: %s)", settings.mongo_db_name)
    except Exception as exc:
        logger.warning(
            "MongoDB unavailable at startup: %s. "
            "API running in degraded mode — key-gated endpoints will fail.",
            exc,
        )
        db_client.client = None
        db_client.db = None


async def close_mongo_connection() -> None:
    """Close the MongoDB connection gracefully on app shutdown."""
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB connection closed")


# Every index the stores depend on, by collection.
INDEXES: dict[str, list[IndexModel]] = {
    "credentials": [
        IndexModel([("token", ASCENDING)], unique=True, name="token_unique"),
        # At most one active key per (account, class); losers of a create race hit this.
        IndexModel(
            [("account_id", ASCENDING), ("service_class", ASCENDING)],
            unique=True,
            partialFilterExpression={"is_active": True},
            name="one_active_per_class",
        ),
        IndexModel([("account_id", ASCENDING), ("created_at", DESCENDING)], name="account_keys"),
    ],
    "api_usage": [
        IndexModel([("credential_id", ASCENDING), ("timestamp", ASCENDING)], name="credential_time"),
        IndexModel(
            [("credential_id", ASCENDING), ("tier", ASCENDING), ("timestamp", ASCENDING)],
            name="credential_tier_time",
        ),
        IndexModel([("account_id", ASCENDING), ("timestamp", ASCENDING)], name="account_time"),
    ],
}


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """Create every index in INDEXES. Idempotent."""
    for collection, models in INDEXES.items():
        await db[collection].create_indexes(models)
    logger.info("MongoDB indexes ensured")


async def missing_indexes(db: AsyncIOMotorDatabase) -> list[str]:
    """
    Names of INDEXES entries not present in the database, as "collection.index".

    Reported by /health. Key creation is only race-safe with
    credentials.one_active_per_class in place.
    """
    missing = []
    for collection, models in INDEXES.items():
        present = await db[collection].index_information()
        missing.extend(
            f"{collection}.{model.document['name']}"
            for model in models
            if model.document["name"] not in present
        )
    return missing


def get_db() -> AsyncIOMotorDatabase | None:
    """
    FastAPI dependency — inject the database into route handlers.

    Returns None when MongoDB is unavailable; routes answer 503.
    """
    return db_client.db


def _redact_uri(uri: str) -> str:
    """Strip credentials from URI before logging."""
    return re.sub(r"://[^:]+:[^@]+@", "://<redacted>@", uri)

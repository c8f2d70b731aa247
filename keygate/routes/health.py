"""
Health check endpoint.

Liveness is always "ok" while the process answers. Readiness of the key
gate is reported separately: key-gated routes need the usage store to
answer a ping AND the indexes from keygate.core.database.INDEXES to exist.
When either fails they answer 503, and `quota_ready` here is false.
"""

import logging

from fastapi import APIRouter
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from keygate.core import database as db_module
from keygate.core.config import settings
from keygate.version import __version__

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    database: str  # "connected" | "disconnected"
    indexes: str  # "ok" | "missing" | "unknown"
    missing_indexes: list[str] = []
    quota_ready: bool


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check() -> HealthResponse:
    # Read through the module so tests can swap db_client.client and .db.
    client, db = db_module.db_client.client, db_module.db_client.db

    database, indexes, missing = "disconnected", "unknown", []
    if client is not None and db is not None:
        try:
            await client.admin.command("ping")
            database = "connected"
            missing = await db_module.missing_indexes(db)
            indexes = "missing" if missing else "ok"
        except PyMongoError as exc:
            logger.warning("Health probe against MongoDB failed: %s", exc)

    if missing:
        logger.warning("Missing indexes: %s", ", ".join(missing))

    return HealthResponse(
        status="ok",
        version=__version__,
        environment=settings.environment,
        database=database,
        indexes=indexes,
        missing_indexes=missing,
        quota_ready=database == "connected" and indexes == "ok",
    )

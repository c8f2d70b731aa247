"""
ledger.py — The Usage Ledger (`api_usage` collection).

Append-only: one document per authorized call, never updated or deleted
here (retention is a database-level concern). Both limiting mechanisms
read from it:
  - the premium sliding window counts premium-tier records since now-1h
  - the flat windowed limiter counts all records since the window start

Writes are plain inserts and need no locking. Failures propagate to the
caller, which treats them as system errors rather than denials.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from keygate.models.credential import ServiceClass, Tier, UsageRecord

logger = logging.getLogger(__name__)


class UsageLedger:
    def __init__(self, db):
        self._col = db["api_usage"]

    async def append(
        self,
        credential_id: str,
        route: str,
        timestamp: datetime,
        *,
        account_id: str,
        service_class: ServiceClass,
        tier: Tier,
        metadata: Optional[dict[str, Any]] = None,
    ) -> UsageRecord:
        record = UsageRecord(
            credential_id=credential_id,
            account_id=account_id,
            route=route,
            service_class=service_class,
            tier=tier,
            timestamp=timestamp,
            metadata=metadata or {},
        )
        doc = record.model_dump()
        doc["service_class"] = service_class.value
        doc["tier"] = tier.value
        await self._col.insert_one(doc)
        return record

    async def count_since(
        self,
        credential_id: str,
        since: datetime,
        tier: Optional[Tier] = None,
    ) -> int:
        """Records for *credential_id* with timestamp >= *since*, optionally one tier only."""
        query: dict[str, Any] = {"credential_id": credential_id, "timestamp": {"$gte": since}}
        if tier is not None:
            query["tier"] = tier.value
        return await self._col.count_documents(query)

    async def oldest_since(
        self,
        credential_id: str,
        since: datetime,
        tier: Optional[Tier] = None,
    ) -> Optional[datetime]:
        """Timestamp of the earliest record counted by the same count_since() query."""
        query: dict[str, Any] = {"credential_id": credential_id, "timestamp": {"$gte": since}}
        if tier is not None:
            query["tier"] = tier.value
        doc = await self._col.find_one(query, sort=[("timestamp", 1)])
        return doc["timestamp"] if doc else None

    async def usage_summary(self, account_id: str, since: datetime) -> dict[str, Any]:
        """Per-route counts for an account, plus lifetime and since-*since* totals."""
        pipeline = [
            {"$match": {"account_id": account_id}},
            {"$group": {
                "_id": "$route",
                "count": {"$sum": 1},
                "last_used": {"$max": "$timestamp"},
            }},
            {"$sort": {"count": -1}},
        ]
        by_route = [
            {"route": row["_id"], "count": row["count"], "last_used": row["last_used"]}
            async for row in self._col.aggregate(pipeline)
        ]
        total = await self._col.count_documents({"account_id": account_id})
        recent = await self._col.count_documents(
            {"account_id": account_id, "timestamp": {"$gte": since}}
        )
        return {"by_route": by_route, "total_requests": total, "recent_requests": recent}

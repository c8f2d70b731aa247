"""
pytest configuration and shared fixtures for the KeyGate tests.

Key concern: tests must not require a live MongoDB. We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. An in-memory FakeDB that mimics the subset of the Motor async API
     the stores use. Every operation yields to the event loop once before
     touching data, so concurrent callers interleave the way they would
     against a real server, while each single operation stays atomic
     (like a single MongoDB document update).
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient
from pymongo.errors import DuplicateKeyError

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")


# ── In-memory MongoDB emulator ─────────────────────────────────────────────────

def _matches_value(actual, expected) -> bool:
    if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
        for op, operand in expected.items():
            if actual is None:
                return False
            if op == "$gte" and not actual >= operand:
                return False
            if op == "$gt" and not actual > operand:
                return False
            if op == "$lt" and not actual < operand:
                return False
            if op == "$lte" and not actual <= operand:
                return False
        return True
    return actual == expected


def _matches(doc: dict, query: dict) -> bool:
    return all(_matches_value(doc.get(k), v) for k, v in query.items())


class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs

    def sort(self, key: str, direction: int = 1):
        self._docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        return self._docs[:length] if length else list(self._docs)


class FakeAggregate:
    def __init__(self, rows: list[dict]):
        self._rows = rows

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for row in self._rows:
            await asyncio.sleep(0)
            yield row


class FakeCollection:
    """Minimal async-compatible replica of a Motor collection."""

    def __init__(self):
        self._docs: dict[ObjectId, dict] = {}
        self._unique: list[tuple[list[str], dict]] = []
        self._indexes: dict[str, dict] = {"_id_": {"key": [("_id", 1)]}}

    # indexes

    async def create_indexes(self, models):
        for model in models:
            spec = model.document
            self._indexes[spec["name"]] = {"key": list(spec["key"].items())}
            if spec.get("unique"):
                self._unique.append((list(spec["key"].keys()), spec.get("partialFilterExpression", {})))
        return [m.document["name"] for m in models]

    async def index_information(self):
        return dict(self._indexes)

    def _check_unique(self, candidate: dict, skip_id=None):
        for fields, partial in self._unique:
            if not _matches(candidate, partial):
                continue
            key = tuple(candidate.get(f) for f in fields)
            for oid, doc in self._docs.items():
                if oid == skip_id or not _matches(doc, partial):
                    continue
                if tuple(doc.get(f) for f in fields) == key:
                    raise DuplicateKeyError(f"duplicate key on {fields}")

    # reads

    async def find_one(self, query: dict, projection=None, sort=None):
        await asyncio.sleep(0)
        docs = [d for d in self._docs.values() if _matches(d, query)]
        if sort:
            for key, direction in reversed(sort):
                docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return dict(docs[0]) if docs else None

    def find(self, query: dict):
        return FakeCursor([dict(d) for d in self._docs.values() if _matches(d, query)])

    async def count_documents(self, query: dict) -> int:
        await asyncio.sleep(0)
        return sum(1 for d in self._docs.values() if _matches(d, query))

    def aggregate(self, pipeline: list[dict]):
        rows = [dict(d) for d in self._docs.values()]
        for stage in pipeline:
            if "$match" in stage:
                rows = [r for r in rows if _matches(r, stage["$match"])]
            elif "$group" in stage:
                spec = stage["$group"]
                groups: dict = {}
                for r in rows:
                    key = r.get(spec["_id"].lstrip("$"))
                    g = groups.setdefault(key, {"_id": key})
                    for name, acc in spec.items():
                        if name == "_id":
                            continue
                        if "$sum" in acc:
                            g[name] = g.get(name, 0) + acc["$sum"]
                        elif "$max" in acc:
                            value = r.get(acc["$max"].lstrip("$"))
                            g[name] = value if g.get(name) is None else max(g[name], value)
                rows = list(groups.values())
            elif "$sort" in stage:
                for key, direction in reversed(list(stage["$sort"].items())):
                    rows.sort(key=lambda r: r.get(key), reverse=direction < 0)
        return FakeAggregate(rows)

    # writes

    async def insert_one(self, doc: dict):
        await asyncio.sleep(0)
        oid = doc.get("_id") or ObjectId()
        new_doc = {**doc, "_id": oid}
        self._check_unique(new_doc)
        self._docs[oid] = new_doc
        result = MagicMock()
        result.inserted_id = oid
        return result

    @staticmethod
    def _apply(doc: dict, update: dict) -> dict:
        updated = dict(doc)
        for field, amount in update.get("$inc", {}).items():
            updated[field] = updated.get(field, 0) + amount
        updated.update(update.get("$set", {}))
        return updated

    async def update_one(self, query: dict, update: dict):
        await asyncio.sleep(0)
        result = MagicMock()
        result.matched_count = 0
        result.modified_count = 0
        for oid, doc in self._docs.items():
            if _matches(doc, query):
                updated = self._apply(doc, update)
                self._check_unique(updated, skip_id=oid)
                self._docs[oid] = updated
                result.matched_count = 1
                result.modified_count = int(updated != doc)
                break
        return result

    async def find_one_and_update(self, query: dict, update: dict, projection=None, return_document=False):
        await asyncio.sleep(0)
        for oid, doc in self._docs.items():
            if _matches(doc, query):
                updated = self._apply(doc, update)
                self._check_unique(updated, skip_id=oid)
                self._docs[oid] = updated
                out = updated if return_document else doc
                if projection:
                    return {"_id": oid, **{k: out.get(k) for k in projection}}
                return dict(out)
        return None


class FakeDB:
    """Fake MongoDB database — lazily creates collections."""

    def __init__(self):
        self._cols: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._cols:
            self._cols[name] = FakeCollection()
        return self._cols[name]


class FakeClock:
    """Controllable clock for window tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
async def mock_db():
    """
    Patch the MongoDB lifecycle for every test and reset the per-IP limiter.

    Tests that need a database use the fake_db fixture (direct) or
    api_client (wired through the get_db dependency).
    """
    with (
        patch("keygate.core.database.connect_to_mongo", new_callable=AsyncMock),
        patch("keygate.core.database.close_mongo_connection", new_callable=AsyncMock),
        patch("keygate.main.connect_to_mongo", new_callable=AsyncMock),
        patch("keygate.main.close_mongo_connection", new_callable=AsyncMock),
    ):
        import keygate.core.database as db_module
        from keygate.core.rate_limit import limiter

        limiter.reset()

        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture()
def bare_db():
    """In-memory DB with no indexes created."""
    return FakeDB()


@pytest.fixture()
async def fake_db():
    """Fresh in-memory DB for each test, with the production indexes."""
    from keygate.core.database import ensure_indexes

    db = FakeDB()
    await ensure_indexes(db)
    return db


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def policy():
    from keygate.models.credential import ServiceClass, WindowConfig
    from keygate.services.quota import QuotaPolicy

    return QuotaPolicy(
        free_lifetime_cap=5,
        premium_caps={ServiceClass.ANALYSIS: 100, ServiceClass.CHAT: 200},
        premium_window_seconds=3600,
        rate_window=WindowConfig(max_requests=500, window_seconds=3600),
    )


@pytest.fixture()
def stores(fake_db):
    from keygate.services.credentials import CredentialStore
    from keygate.services.ledger import UsageLedger
    from keygate.services.tiers import AccountStore

    return SimpleNamespace(
        credentials=CredentialStore(fake_db, prefix="kg"),
        accounts=AccountStore(fake_db),
        ledger=UsageLedger(fake_db),
    )


@pytest.fixture()
def make_engine(stores, clock):
    """Factory so tests can swap in a tighter policy."""
    from keygate.services.quota import QuotaEngine
    from keygate.services.window_limiter import WindowedRateLimiter

    def _make(policy):
        return QuotaEngine(
            credentials=stores.credentials,
            accounts=stores.accounts,
            ledger=stores.ledger,
            limiter=WindowedRateLimiter(stores.ledger, clock=clock),
            policy=policy,
            clock=clock,
        )

    return _make


@pytest.fixture()
def engine(make_engine, policy):
    return make_engine(policy)


@pytest.fixture()
async def api_client(fake_db):
    """
    HTTPX client with get_db overridden to use the in-memory FakeDB.
    """
    from keygate.core.database import get_db
    from keygate.main import app

    app.dependency_overrides[get_db] = lambda: fake_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
async def client(mock_db):  # noqa: ARG001  mock_db must run first
    """HTTPX client against the app with no database at all."""
    from keygate.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

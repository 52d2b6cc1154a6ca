"""Shared fixtures: an in-memory Motor-compatible collection with the production indexes."""
import asyncio
import os
from datetime import datetime, timedelta, timezone

# Must be set before main is imported
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("STATIC_DIR", "__no_static_dir__")

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from services import expense_store


def make_collection():
    return AsyncMongoMockClient()["expense_tracker_test"]["expenses"]


@pytest_asyncio.fixture
async def collection():
    coll = make_collection()
    await expense_store.ensure_indexes(coll)
    return coll


@pytest.fixture
def sync_collection():
    """Collection for TestClient tests, which run outside the pytest-asyncio loop."""
    coll = make_collection()
    asyncio.run(expense_store.ensure_indexes(coll))
    return coll


@pytest.fixture
def client(sync_collection):
    from main import app
    from routes import get_expenses_collection

    app.dependency_overrides[get_expenses_collection] = lambda: sync_collection
    yield TestClient(app)
    app.dependency_overrides.clear()


BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def expense_doc(_id, category="Food", date="2024-01-01", amount=10.0, minutes=0, **extra):
    """Stored document with a controlled created_at, for ordering tests."""
    doc = {
        "_id": _id,
        "amount": amount,
        "category": category,
        "description": f"expense {_id}",
        "date": date,
        "created_at": BASE_TIME + timedelta(minutes=minutes),
    }
    doc.update(extra)
    return doc

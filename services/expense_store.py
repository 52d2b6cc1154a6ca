"""MongoDB access for expense documents."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from models.expense import ExpenseRecord, SortOrder
from services.errors import StoreUnavailable

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_FIELD = "idempotency_key"

SORT_SPECS = {
    SortOrder.ADDED_DESC: [("created_at", DESCENDING)],
    SortOrder.DATE_DESC: [("date", DESCENDING), ("created_at", DESCENDING)],
}


def to_record(doc: Dict[str, Any]) -> ExpenseRecord:
    """Converts a stored document into an ExpenseRecord, exposing `_id` as `id`."""
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    created_at = data.get("created_at")
    # Stored datetimes are UTC; clients without tz_aware read them back naive
    if isinstance(created_at, datetime) and created_at.tzinfo is None:
        data["created_at"] = created_at.replace(tzinfo=timezone.utc)
    return ExpenseRecord(**data)


async def ensure_indexes(collection: AsyncIOMotorCollection) -> None:
    """
    Creates the indexes the service relies on. Safe to call on every startup.

    The sparse unique index on the idempotency key is what actually prevents
    duplicate records; documents without a key are left out of it.
    """
    logger.info(f"Ensuring indexes on collection '{collection.name}'...")
    try:
        await collection.create_index(
            [(IDEMPOTENCY_KEY_FIELD, ASCENDING)],
            unique=True,
            sparse=True,
            name="idempotency_key_unique",
        )
        await collection.create_index([("created_at", DESCENDING)], name="created_at_desc")
        await collection.create_index(
            [("date", DESCENDING), ("created_at", DESCENDING)], name="date_created_at_desc"
        )
        await collection.create_index([("category", ASCENDING)], name="category")
    except PyMongoError as e:
        logger.error(f"Database error creating indexes: {e}")
        raise StoreUnavailable(f"Database error creating indexes: {e}")


async def insert_expense(collection: AsyncIOMotorCollection, document: Dict[str, Any]) -> None:
    """
    Inserts a single expense document.

    DuplicateKeyError is re-raised untouched; any other database failure
    becomes StoreUnavailable.
    """
    try:
        await collection.insert_one(document)
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        logger.error(f"Database error inserting expense: {e}")
        raise StoreUnavailable(f"Database error inserting expense: {e}")


async def find_by_idempotency_key(collection: AsyncIOMotorCollection, key: str) -> Optional[Dict[str, Any]]:
    try:
        return await collection.find_one({IDEMPOTENCY_KEY_FIELD: key})
    except PyMongoError as e:
        logger.error(f"Database error looking up idempotency key {key}: {e}")
        raise StoreUnavailable(f"Database error looking up idempotency key: {e}")


async def find_expenses(
    collection: AsyncIOMotorCollection,
    category: Optional[str] = None,
    sort: SortOrder = SortOrder.ADDED_DESC,
) -> List[Dict[str, Any]]:
    """Fetches every expense matching the optional exact category, in the requested order."""
    query: Dict[str, Any] = {}
    if category:
        query["category"] = category
    documents = []
    try:
        cursor = collection.find(query).sort(SORT_SPECS[sort])
        async for doc in cursor:
            documents.append(doc)
    except PyMongoError as e:
        logger.error(f"Database error fetching expenses: {e}")
        raise StoreUnavailable(f"Database error fetching expenses: {e}")
    return documents


async def delete_by_id(collection: AsyncIOMotorCollection, expense_id: str) -> bool:
    """Deletes the expense with the given id. Returns False when nothing matched."""
    try:
        result = await collection.delete_one({"_id": expense_id})
    except PyMongoError as e:
        logger.error(f"Database error deleting expense {expense_id}: {e}")
        raise StoreUnavailable(f"Database error deleting expense: {e}")
    return result.deleted_count > 0


async def aggregate_by_category(
    collection: AsyncIOMotorCollection, category: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Groups expenses by category, largest total first."""
    match: Dict[str, Any] = {}
    if category:
        match["category"] = category
    pipeline = [
        {"$match": match},
        {"$group": {"_id": "$category", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
        {"$sort": {"total": -1, "_id": 1}},
    ]
    groups = []
    try:
        async for doc in collection.aggregate(pipeline):
            groups.append({"category": doc["_id"], "total": doc["total"], "count": doc["count"]})
    except PyMongoError as e:
        logger.error(f"Database error aggregating expenses: {e}")
        raise StoreUnavailable(f"Database error aggregating expenses: {e}")
    return groups

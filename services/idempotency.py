"""Idempotent creation of expense documents keyed by a client-supplied token."""
import logging
from typing import Any, Dict, NamedTuple

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import DuplicateKeyError

from services import expense_store
from services.errors import DuplicateKeyConflict, StoreUnavailable

logger = logging.getLogger(__name__)


class GuardResult(NamedTuple):
    document: Dict[str, Any]
    replayed: bool


async def insert_once(
    collection: AsyncIOMotorCollection,
    document: Dict[str, Any],
    echo_on_conflict: bool = True,
) -> GuardResult:
    """
    Persists `document` unless a record with the same idempotency key exists.

    - No key: always inserts.
    - Key already stored: returns the stored document as a replay, no write.
    - Key not found: inserts, letting the unique index arbitrate. If another
      request inserted the same key in between, the stored winner is returned
      as a replay, or DuplicateKeyConflict is raised when `echo_on_conflict`
      is off or the winner has since disappeared.
    """
    key = document.get(expense_store.IDEMPOTENCY_KEY_FIELD)

    if key is not None:
        existing = await expense_store.find_by_idempotency_key(collection, key)
        if existing is not None:
            logger.info(f"Idempotency hit for key: {key}")
            return GuardResult(existing, True)

    try:
        await expense_store.insert_expense(collection, document)
    except DuplicateKeyError as e:
        if key is None:
            # Only the generated _id can collide here
            logger.error(f"Unexpected duplicate key inserting expense without idempotency key: {e}")
            raise StoreUnavailable(f"Database error inserting expense: {e}")

        logger.warning(f"Lost insert race for idempotency key: {key}")
        if not echo_on_conflict:
            raise DuplicateKeyConflict(key)

        winner = await expense_store.find_by_idempotency_key(collection, key)
        if winner is None:
            logger.warning(f"Winning record for idempotency key {key} no longer exists.")
            raise DuplicateKeyConflict(key)
        return GuardResult(winner, True)

    return GuardResult(document, False)

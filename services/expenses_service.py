"""Service layer for handling expense-related logic."""
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

from motor.motor_asyncio import AsyncIOMotorCollection

from models.expense import (
    CategoryTotal,
    ExpenseCreate,
    ExpenseRecord,
    ExpenseSummary,
    SortOrder,
)
from services import expense_store, idempotency
from services.errors import ExpenseNotFound, ExpenseValidationError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("amount", "category", "description", "date")


class CreateResult(NamedTuple):
    record: ExpenseRecord
    replayed: bool


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_expense_input(payload: ExpenseCreate) -> None:
    """Raises ExpenseValidationError if a required field is missing/empty or the amount is not positive."""
    missing = [field for field in REQUIRED_FIELDS if _is_blank(getattr(payload, field))]
    if missing:
        raise ExpenseValidationError(f"Missing required fields: {', '.join(missing)}")
    if not math.isfinite(payload.amount) or payload.amount <= 0:
        raise ExpenseValidationError("Amount must be a positive number.")


def build_expense_document(payload: ExpenseCreate, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Builds the document to store for a validated payload.

    The idempotency key is left out entirely when absent or blank so the
    sparse unique index ignores the document.
    """
    now = now or datetime.now(timezone.utc)
    # MongoDB keeps millisecond precision
    now = now.replace(microsecond=now.microsecond - now.microsecond % 1000)
    document = {
        "_id": uuid.uuid4().hex,
        "amount": payload.amount,
        "category": payload.category,
        "description": payload.description,
        "date": payload.date,
        "created_at": now,
    }
    if not _is_blank(payload.idempotency_key):
        document[expense_store.IDEMPOTENCY_KEY_FIELD] = payload.idempotency_key
    return document


# --- Operations ---

async def list_expenses(
    collection: AsyncIOMotorCollection,
    category: Optional[str] = None,
    sort: SortOrder = SortOrder.ADDED_DESC,
) -> List[ExpenseRecord]:
    """Returns all expenses matching the optional category, ordered per `sort`."""
    logger.info(f"Fetching expenses (category={category!r}, sort={sort.value})...")
    documents = await expense_store.find_expenses(collection, category=category, sort=sort)
    expenses = [expense_store.to_record(doc) for doc in documents]
    logger.info(f"Fetched {len(expenses)} expenses successfully.")
    return expenses


async def create_expense(
    collection: AsyncIOMotorCollection,
    payload: ExpenseCreate,
    echo_on_conflict: bool = True,
) -> CreateResult:
    """
    Validates and stores a new expense, deduplicating on the idempotency key.

    Returns the stored record together with a flag telling whether it was a
    replay of an earlier request rather than a fresh creation.
    """
    validate_expense_input(payload)
    document = build_expense_document(payload)
    result = await idempotency.insert_once(collection, document, echo_on_conflict=echo_on_conflict)
    record = expense_store.to_record(result.document)
    if result.replayed:
        logger.info(f"Returning existing expense {record.id} for replayed request.")
    else:
        logger.info(f"Created expense {record.id} ({record.category}: {record.amount}).")
    return CreateResult(record, result.replayed)


async def delete_expense(collection: AsyncIOMotorCollection, expense_id: str) -> str:
    """Deletes an expense by id, raising ExpenseNotFound if it does not exist."""
    logger.info(f"Deleting expense {expense_id}...")
    deleted = await expense_store.delete_by_id(collection, expense_id)
    if not deleted:
        logger.warning(f"Expense {expense_id} not found for deletion.")
        raise ExpenseNotFound(expense_id)
    logger.info(f"Deleted expense {expense_id}.")
    return expense_id


async def summarize_expenses(
    collection: AsyncIOMotorCollection, category: Optional[str] = None
) -> ExpenseSummary:
    """Builds the overall and per-category spending breakdown."""
    groups = await expense_store.aggregate_by_category(collection, category=category)
    by_category = [CategoryTotal(**group) for group in groups]
    return ExpenseSummary(
        total=sum(group.total for group in by_category),
        count=sum(group.count for group in by_category),
        by_category=by_category,
    )

"""API Routes for expenses"""
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, Response
from motor.motor_asyncio import AsyncIOMotorCollection

from models.expense import (
    DeleteResponse,
    ExpenseCreate,
    ExpenseList,
    ExpenseRecord,
    ExpenseSummaryResponse,
    SortOrder,
)
from services import expenses_service
from services.errors import (
    DuplicateKeyConflict,
    ExpenseError,
    ExpenseNotFound,
    ExpenseValidationError,
    StoreUnavailable,
)

router = APIRouter()
logger = logging.getLogger(__name__)

REPLAY_HEADER = "Idempotent-Replayed"


def error_detail(kind: str, message: str) -> dict:
    return {"kind": kind, "message": message}


def http_error(status_code: int, exc: ExpenseError) -> HTTPException:
    return HTTPException(status_code=status_code, detail=error_detail(exc.kind, str(exc)))


# --- Dependency Function ---
def get_expenses_collection(request: Request) -> AsyncIOMotorCollection:
    """Dependency to get the MongoDB expenses collection from the request state."""
    collection = getattr(request.state, "expenses_collection", None)
    if collection is None:
        logger.error("Expenses collection not found in application state. Check MongoDB connection.")
        raise HTTPException(
            status_code=500,
            detail=error_detail(StoreUnavailable.kind, "Database service not available."),
        )
    return collection


ExpensesCollectionDep = Annotated[AsyncIOMotorCollection, Depends(get_expenses_collection)]


def parse_sort(sort: Optional[str]) -> SortOrder:
    if not sort:
        return SortOrder.ADDED_DESC
    try:
        return SortOrder(sort)
    except ValueError:
        allowed = ", ".join(order.value for order in SortOrder)
        raise HTTPException(
            status_code=400,
            detail=error_detail(ExpenseValidationError.kind, f"Invalid sort value. Allowed values: {allowed}"),
        )


# --- API Routes ---

@router.get("/expenses", response_model=ExpenseList, summary="List Expenses", description="Retrieves every expense, optionally filtered by exact category, newest added first or by date.")
async def get_expenses(
    collection: ExpensesCollectionDep,
    category: Optional[str] = Query(None, description="Exact category to filter by."),
    sort: Optional[str] = Query(None, description="'date_desc' for newest date first; defaults to newest added."),
) -> ExpenseList:
    logger.info(f"GET /expenses endpoint called. category={category!r} sort={sort!r}")
    sort_order = parse_sort(sort)
    try:
        expenses = await expenses_service.list_expenses(collection, category=category or None, sort=sort_order)
        return ExpenseList(data=expenses)
    except StoreUnavailable as e:
        raise http_error(500, e)
    except Exception as e:
        logger.exception(f"Unexpected error fetching expenses: {e}")
        raise HTTPException(status_code=500, detail=error_detail("internal_error", "An unexpected server error occurred while fetching expenses."))


@router.get("/expenses/summary", response_model=ExpenseSummaryResponse, summary="Spending Breakdown", description="Totals overall and per category.")
async def get_expenses_summary(
    collection: ExpensesCollectionDep,
    category: Optional[str] = Query(None, description="Restrict the breakdown to one category."),
) -> ExpenseSummaryResponse:
    logger.info(f"GET /expenses/summary endpoint called. category={category!r}")
    try:
        summary = await expenses_service.summarize_expenses(collection, category=category or None)
        return ExpenseSummaryResponse(data=summary)
    except StoreUnavailable as e:
        raise http_error(500, e)
    except Exception as e:
        logger.exception(f"Unexpected error summarizing expenses: {e}")
        raise HTTPException(status_code=500, detail=error_detail("internal_error", "An unexpected server error occurred while summarizing expenses."))


@router.post("/expenses", response_model=ExpenseRecord, status_code=201, summary="Create Expense", description="Stores a new expense. A repeated idempotency key returns the original record with status 200.")
async def create_expense_route(
    request: Request,
    response: Response,
    collection: ExpensesCollectionDep,
    payload: Annotated[ExpenseCreate, Body(...)],
    idempotency_key_header: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
) -> ExpenseRecord:
    """
    Body key wins over the Idempotency-Key header. Clients should keep the
    same key across retries of a failed request and rotate it only after a
    success.
    """
    if payload.idempotency_key is None and idempotency_key_header:
        payload = payload.model_copy(update={"idempotency_key": idempotency_key_header})
    echo_on_conflict = getattr(request.state, "echo_on_key_conflict", True)
    logger.info(f"POST /expenses endpoint called. idempotency_key={payload.idempotency_key!r}")

    try:
        result = await expenses_service.create_expense(collection, payload, echo_on_conflict=echo_on_conflict)
    except ExpenseValidationError as e:
        logger.warning(f"Rejected expense: {e}")
        raise http_error(400, e)
    except DuplicateKeyConflict as e:
        raise http_error(409, e)
    except StoreUnavailable as e:
        raise http_error(500, e)
    except Exception as e:
        logger.exception(f"Unexpected error creating expense: {e}")
        raise HTTPException(status_code=500, detail=error_detail("internal_error", "An unexpected server error occurred while creating the expense."))

    if result.replayed:
        response.status_code = 200
        response.headers[REPLAY_HEADER] = "true"
    return result.record


@router.delete("/expenses/{expense_id}", response_model=DeleteResponse, summary="Delete Expense", description="Deletes a single expense by id.")
async def delete_expense_route(expense_id: str, collection: ExpensesCollectionDep) -> DeleteResponse:
    logger.info(f"DELETE /expenses/{expense_id} endpoint called.")
    try:
        deleted_id = await expenses_service.delete_expense(collection, expense_id)
        return DeleteResponse(message="Expense deleted successfully", id=deleted_id)
    except ExpenseNotFound as e:
        raise http_error(404, e)
    except StoreUnavailable as e:
        raise http_error(500, e)
    except Exception as e:
        logger.exception(f"Unexpected error deleting expense {expense_id}: {e}")
        raise HTTPException(status_code=500, detail=error_detail("internal_error", "An unexpected server error occurred while deleting the expense."))

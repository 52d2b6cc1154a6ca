"""Pydantic models for Expense data"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SortOrder(str, Enum):
    """Orderings supported by the expense listing."""
    ADDED_DESC = "added_desc"
    DATE_DESC = "date_desc"


class ExpenseCreate(BaseModel):
    """
    Incoming creation payload.

    Every field is optional at parse time so that missing values reach the
    service layer and are reported as a single validation error instead of
    a framework-level type error.
    """
    model_config = ConfigDict(populate_by_name=True)

    amount: Optional[float] = None
    category: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")


class ExpenseRecord(BaseModel):
    """
    Represents a single persisted expense.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    amount: float
    category: str
    description: str
    date: str  # Stored verbatim as supplied by the caller
    created_at: datetime
    idempotency_key: Optional[str] = None


class ExpenseList(BaseModel):
    data: List[ExpenseRecord]


class CategoryTotal(BaseModel):
    category: str
    total: float
    count: int


class ExpenseSummary(BaseModel):
    """Spending breakdown, overall and per category."""
    total: float = 0.0
    count: int = 0
    by_category: List[CategoryTotal] = []


class ExpenseSummaryResponse(BaseModel):
    data: ExpenseSummary


class DeleteResponse(BaseModel):
    message: str
    id: str

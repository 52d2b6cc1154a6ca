"""Domain-specific exceptions raised by the expense services."""


class ExpenseError(Exception):
    """Base class for expense errors. `kind` is the machine-readable tag sent to callers."""
    kind = "expense_error"


class ExpenseValidationError(ExpenseError, ValueError):
    """Raised when a creation request is missing required fields or carries invalid values."""
    kind = "validation_error"


class ExpenseNotFound(ExpenseError, LookupError):
    """Raised when the expense targeted by a deletion does not exist."""
    kind = "not_found"

    def __init__(self, expense_id: str):
        self.expense_id = expense_id
        super().__init__(f"Expense not found: {expense_id}")


class DuplicateKeyConflict(ExpenseError):
    """Raised when a concurrent request carrying the same idempotency key won the insert race."""
    kind = "duplicate_key_conflict"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"Duplicate request processed for idempotency key: {idempotency_key}")


class StoreUnavailable(ExpenseError, ConnectionError):
    """Raised when the backing store fails or is not configured."""
    kind = "store_unavailable"

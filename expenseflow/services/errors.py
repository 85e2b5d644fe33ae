"""
Expenseflow Error Handling

Specific error types with user-friendly messages and debugging context.
The approval core raises these; the HTTP layer maps them to status codes.
"""
from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Auth errors (401/403)
    INVALID_API_KEY = "INVALID_API_KEY"
    UNAUTHORIZED = "UNAUTHORIZED"

    # Lookup / state errors
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"

    # Processing errors (500s)
    DATABASE_ERROR = "DATABASE_ERROR"


class ExpenseflowError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "success": False,
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(ExpenseflowError):
    """Malformed approval request. Fixable by the caller, never retried."""

    def __init__(self, message: str, detail: Optional[str] = None, **context: Any):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            detail=detail,
            context=context,
        )


class UnauthorizedError(ExpenseflowError):
    """Actor's role is not the one required for the expense's current stage."""

    def __init__(self, role: str, required_role: Optional[str], status: str):
        if required_role:
            detail = f"Stage '{status}' requires role '{required_role}'"
        else:
            detail = f"No role may act on an expense in status '{status}'"
        super().__init__(
            code=ErrorCode.UNAUTHORIZED,
            message=f"Role '{role}' is not allowed to act on this expense",
            detail=detail,
            context={"role": role, "required_role": required_role, "status": status},
        )


class InvalidStateError(ExpenseflowError):
    """Expense is not in the state the action assumes (terminal or already processed)."""

    def __init__(self, expense_id: str, status: str, detail: Optional[str] = None):
        super().__init__(
            code=ErrorCode.INVALID_STATE,
            message="This expense was already processed",
            detail=detail or f"Expense {expense_id} is in status '{status}'",
            context={"expense_id": expense_id, "status": status},
        )


class NotFoundError(ExpenseflowError):
    """Referenced expense or site does not exist."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{resource.capitalize()} not found",
            detail=f"No {resource} with id '{resource_id}'",
            context={"resource": resource, "id": resource_id},
        )


STATUS_MAP = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_API_KEY: 401,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.DATABASE_ERROR: 500,
}


def status_code_for(error: ExpenseflowError) -> int:
    return STATUS_MAP.get(error.code, 500)


"""
Centralized Error Handling
===========================

Every error the invoice number tracker raises is an AppError, so the
invoice workflow can catch one type and the API can render them all
the same way.

Error kinds raised by the tracker:
- 409: The requested manual number is not in the available pool
- 400: A formatted number could not be parsed (caller bug)
- 500: The database write failed, nothing was changed
- 503: Timed out waiting for the tracker lock, safe to retry
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Dict, Any
import traceback
import os

logger = logging.getLogger(__name__)

# Check if running in debug/development mode
DEBUG_MODE = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")


class AppError(Exception):
    """
    Custom error class for our application.

    Use this instead of raising generic exceptions.
    It automatically formats errors for the frontend.

    Example:
        raise AppError(
            status_code=400,
            error_type="validation_error",
            message="Please fill in all required fields",
            details={"missing_fields": ["invoice_ref"]}
        )
    """
    def __init__(
        self,
        status_code: int,
        error_type: str,
        message: str,
        details: Dict[str, Any] = None,
        user_action: str = None
    ):
        self.status_code = status_code
        self.error_type = error_type
        self.message = message
        self.details = details or {}
        self.user_action = user_action or "Please try again."
        super().__init__(self.message)


# --- INVOICE NUMBER ERRORS ---

class InvoiceNumberError(AppError):
    """Base class for invoice number tracker failures."""
    retryable = False


class NumberNotAvailableError(InvoiceNumberError):
    """The manually selected number is not in the available pool."""
    retryable = True

    def __init__(self, number):
        super().__init__(
            status_code=409,
            error_type="number_not_available",
            message="Selected invoice number is not available for reassignment",
            details={"number": number},
            user_action="Refresh the list of available numbers and pick again, or leave it blank for automatic assignment."
        )
        self.number = number


class MalformedNumberError(InvoiceNumberError):
    """A formatted invoice number could not be turned back into a number."""

    def __init__(self, formatted_number, reason: str = "Invalid invoice number format"):
        super().__init__(
            status_code=400,
            error_type="malformed_number",
            message=reason,
            details={"formatted_number": formatted_number},
            user_action="Check the invoice number. This usually points to bad data on the invoice."
        )
        self.formatted_number = formatted_number


class PersistenceFailureError(InvoiceNumberError):
    """The tracker could not save its state. Nothing was changed."""
    retryable = True

    def __init__(self, operation: str, original_error: Exception = None):
        super().__init__(
            status_code=500,
            error_type="persistence_failure",
            message=f"Unable to {operation}: the invoice number tracker could not be saved",
            details={"original_error": str(original_error)} if (original_error and DEBUG_MODE) else {},
            user_action="No number was changed. Please retry the whole invoice action."
        )
        self.operation = operation


class ContentionTimeoutError(InvoiceNumberError):
    """Waited too long for exclusive access to the tracker."""
    retryable = True

    def __init__(self, operation: str, timeout: float = None):
        super().__init__(
            status_code=503,
            error_type="contention_timeout",
            message=f"Timed out waiting to {operation}",
            details={"timeout_seconds": timeout} if timeout is not None else {},
            user_action="The system is busy. Please retry in a moment."
        )
        self.operation = operation


def create_error_response(
    status_code: int,
    error_type: str,
    message: str,
    details: Dict[str, Any] = None,
    user_action: str = None
) -> JSONResponse:
    """
    Create a standardized error response.

    This ensures all errors look the same to the frontend,
    making it easier to display them consistently.

    Args:
        status_code: HTTP status code (400, 409, 500, etc.)
        error_type: Type of error ("validation_error", "malformed_number", etc.)
        message: User-friendly message to display
        details: Extra info for debugging (optional)
        user_action: What the user should do (optional)

    Returns:
        JSONResponse with consistent error format
    """
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {
                "type": error_type,
                "message": message,
                "details": details or {},
                "user_action": user_action or "Please try again or contact support."
            }
        }
    )


# --- SPECIFIC ERROR CREATORS ---

def validation_error(message: str, missing_fields: list = None):
    """
    Return a validation error (missing or invalid fields).

    Example:
        return validation_error(
            "Please fill in all required fields",
            missing_fields=["invoice_ref"]
        )
    """
    return create_error_response(
        status_code=400,
        error_type="validation_error",
        message=message,
        details={"missing_fields": missing_fields} if missing_fields else {},
        user_action="Please check the form and fill in all required fields."
    )


# --- GLOBAL ERROR HANDLER ---
async def app_error_handler(request: Request, exc: Exception):
    """
    Global error handler for the entire application.

    This catches ANY error that wasn't handled elsewhere
    and turns it into a nice user-friendly response.

    Automatically called by FastAPI when errors occur.
    """
    # If it's our custom AppError, handle it nicely
    if isinstance(exc, AppError):
        return create_error_response(
            status_code=exc.status_code,
            error_type=exc.error_type,
            message=exc.message,
            details=exc.details,
            user_action=exc.user_action
        )

    # If it's an HTTPException (404, 405, ...), convert it
    if isinstance(exc, StarletteHTTPException):
        return create_error_response(
            status_code=exc.status_code,
            error_type="http_error",
            message=exc.detail,
        )

    # For any other error, log it and return generic message
    logger.error(f"UNHANDLED ERROR: {exc}")
    logger.error(traceback.format_exc())

    return create_error_response(
        status_code=500,
        error_type="internal_error",
        message="An unexpected error occurred",
        details={"error": str(exc)} if DEBUG_MODE else {},  # Only show in debug mode
        user_action="Please try again or contact support if the problem persists."
    )

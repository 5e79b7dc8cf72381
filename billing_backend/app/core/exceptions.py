"""
Custom exceptions and error handlers for consistent error responses.

Every domain failure carries a stable error code and a human readable
message. Internal details are logged, never returned.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(AppException):
    """Raised for malformed or missing input, before any state change."""

    def __init__(self, message: str, error_code: str = "ERR_VALIDATION_001", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class InvalidAmountError(ValidationError):
    """Raised when a ledger amount is zero or has the wrong sign for its kind."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message=message, error_code="ERR_INVALID_AMOUNT", details=details)


class InsufficientFundsError(AppException):
    """Raised when a debit would take a balance below zero."""

    def __init__(self, account_id: int, balance: int, required: int):
        super().__init__(
            message=f"Insufficient funds: balance {balance}, required {required}",
            error_code="ERR_FUNDS_001",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"account_id": account_id, "balance": balance, "required": required}
        )


class InvalidStateError(AppException):
    """Raised for an illegal state-machine transition."""

    def __init__(self, resource: str, current: str, expected: Any = None, details: Dict[str, Any] = None):
        message = f"{resource} is {current}"
        if expected:
            message = f"{message}, expected {expected}"
        super().__init__(
            message=message,
            error_code="ERR_STATE_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource": resource, "current": current, "expected": expected, **(details or {})}
        )


class AccountBlockedError(AppException):
    """Raised when a blocked account attempts a financial operation."""

    def __init__(self, account_id: int, message: str = "Account is blocked"):
        super().__init__(
            message=message,
            error_code="ERR_BLOCKED_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"account_id": account_id}
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class GiftNotFoundError(ResourceNotFoundError):
    """Raised when a gift is missing from the catalog or inactive."""

    def __init__(self, gift_id: Any):
        super().__init__("Gift", gift_id)
        self.error_code = "ERR_GIFT_NOT_FOUND"


class GatewayError(AppException):
    """Raised when the external payout gateway fails or times out."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_GATEWAY_001",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details
        )


class ConcurrencyConflictError(AppException):
    """Raised when an optimistic balance check lost a race."""

    def __init__(self, message: str = "Concurrent update detected, please retry", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CONFLICT_001",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    logger.warning(
        "Domain error %s: %s", exc.error_code, exc.message,
        extra={"error_code": exc.error_code, "path": request.url.path}
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": [
                    {"loc": list(err.get("loc", [])), "msg": err.get("msg")}
                    for err in exc.errors()
                ]
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception on %s", request.url.path)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )

"""Ledger exceptions and the handlers that render them.

Every ledger rejection is an InvoicerException subclass carrying its HTTP
status and a stable error_code, so services raise them directly and the
routers never translate errors by hand.  Only Contention is retryable.
"""

import logging
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class InvoicerException(Exception):
    """Base exception for ledger errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class BusinessLogicError(InvoicerException):
    """Exception for business rule violations on well-formed input."""

    def __init__(
        self,
        message: str,
        error_code: str = "BUSINESS_LOGIC_ERROR",
        status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
        details: dict | None = None,
    ):
        super().__init__(
            message=message,
            status_code=status_code,
            error_code=error_code,
            details=details,
        )


class ResourceNotFoundError(InvoicerException):
    """Absent, or owned by another account (reported identically)."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
        )


# ── Totals calculator ───────────────────────────────────────


class InvalidLineItem(BusinessLogicError):
    def __init__(self, message: str):
        super().__init__(message, error_code="INVALID_LINE_ITEM")


class InvalidDiscount(BusinessLogicError):
    def __init__(self, message: str):
        super().__init__(message, error_code="INVALID_DISCOUNT")


class InvalidTaxRate(BusinessLogicError):
    def __init__(self, tax_rate, message: str | None = None):
        super().__init__(
            message or f"Tax rate must be between 0 and 100, got {tax_rate}",
            error_code="INVALID_TAX_RATE",
        )


# ── State machine ───────────────────────────────────────────


class InvoiceImmutable(BusinessLogicError):
    def __init__(self, invoice_number: str, action: str = "modify", details: dict | None = None):
        super().__init__(
            f"Cannot {action} invoice {invoice_number}: it is paid",
            error_code="INVOICE_IMMUTABLE",
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class InvalidStatusTransition(BusinessLogicError):
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move invoice from '{current}' to '{target}'",
            error_code="INVALID_STATUS_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
        )


class TotalBelowAmountPaid(BusinessLogicError):
    def __init__(self, total, amount_paid):
        super().__init__(
            f"New total {total} is below the {amount_paid} already paid",
            error_code="TOTAL_BELOW_AMOUNT_PAID",
        )


# ── Payment engine ──────────────────────────────────────────


class PaymentExceedsAmountDue(BusinessLogicError):
    def __init__(self, amount, amount_due):
        super().__init__(
            f"Payment amount {amount} exceeds amount due {amount_due}",
            error_code="PAYMENT_EXCEEDS_AMOUNT_DUE",
        )


class InvalidPaymentAmount(BusinessLogicError):
    def __init__(self, amount):
        super().__init__(
            f"Payment amount must be greater than 0, got {amount}",
            error_code="INVALID_PAYMENT_AMOUNT",
        )


class InvoiceAlreadyPaid(BusinessLogicError):
    def __init__(self, invoice_number: str):
        super().__init__(
            f"Invoice {invoice_number} is already fully paid",
            error_code="INVOICE_ALREADY_PAID",
            status_code=status.HTTP_409_CONFLICT,
        )


class PaymentImmutable(BusinessLogicError):
    def __init__(self, payment_id: str, action: str = "modify", details: dict | None = None):
        super().__init__(
            f"Cannot {action} completed payment {payment_id}",
            error_code="PAYMENT_IMMUTABLE",
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class PaymentNotPending(BusinessLogicError):
    def __init__(self, payment_id: str, current: str):
        super().__init__(
            f"Payment {payment_id} is {current}; only pending payments can be settled",
            error_code="PAYMENT_NOT_PENDING",
            status_code=status.HTTP_409_CONFLICT,
        )


# ── Quota enforcer ──────────────────────────────────────────


class QuotaExceeded(InvoicerException):
    """Plan limit reached; the caller should upgrade."""

    def __init__(self, resource: str, limit: int, plan: str):
        self.resource = resource
        self.limit = limit
        super().__init__(
            message=f"{resource.capitalize()} limit reached. "
                    f"Current plan '{plan}' allows {limit}. Upgrade your plan to continue.",
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="QUOTA_EXCEEDED",
        )


class NoSubscription(InvoicerException):
    def __init__(self, owner_id: str):
        super().__init__(
            message=f"No subscription found for account {owner_id}",
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="NO_SUBSCRIPTION",
        )


# ── Concurrency ─────────────────────────────────────────────


class Contention(InvoicerException):
    """Lost a row-lock race too many times; safe to retry with backoff."""

    retryable = True

    def __init__(self, operation: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            message=f"{operation} could not complete after {attempts} attempts "
                    f"due to concurrent updates. Please retry.",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="CONTENTION",
        )


# ── Error envelope ──────────────────────────────────────────

# Constraint name → client-facing message for IntegrityError
CONSTRAINT_MESSAGES = {
    "uq_invoices_owner_number": "Invoice number already issued for this account",
    "ix_subscriptions_owner_id": "Account already has a subscription",
    "ck_invoices_due_nonneg": "Amount due cannot be negative",
    "ck_invoices_total_nonneg": "Invoice total cannot be negative",
    "ck_payments_amount_pos": "Payment amount must be positive",
}

LOCK_ERROR_MARKERS = ("database is locked", "lock timeout", "could not obtain lock", "deadlock")


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Render the ledger's error body.

    {"error": {"code": "QUOTA_EXCEEDED", "message": "...", "details": {...}}}

    ``details`` is omitted when empty.
    """
    body = {"code": error_code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body}, headers=headers)


def _request_context(request: Request, **extra) -> dict:
    return {"path": request.url.path, "method": request.method, **extra}


def _retry_response(status_code: int, message: str, error_code: str) -> JSONResponse:
    return create_error_response(
        status_code=status_code,
        message=message,
        error_code=error_code,
        details={"retryable": True},
        headers={"Retry-After": "1"},
    )


# ── Handlers ────────────────────────────────────────────────


async def invoicer_exception_handler(request: Request, exc: InvoicerException) -> JSONResponse:
    logger.warning(
        f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}",
        extra=_request_context(request, error_code=exc.error_code),
    )
    if exc.retryable:
        return _retry_response(exc.status_code, exc.message, exc.error_code)
    return create_error_response(exc.status_code, exc.message, exc.error_code, exc.details)


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    """401s from the bearer scheme, 404s for unknown routes, etc."""
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}", extra=_request_context(request))

    return create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    """Malformed request bodies and query parameters."""
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        f"Validation error on {request.url.path}: {len(errors)} problem(s)",
        extra=_request_context(request),
    )

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def integrity_exception_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """A write tripped a table constraint the services did not catch first."""
    raw = str(getattr(exc, "orig", exc))
    logger.error(f"Integrity error on {request.url.path}: {raw}", extra=_request_context(request))

    for constraint, message in CONSTRAINT_MESSAGES.items():
        if constraint in raw:
            return create_error_response(
                status_code=status.HTTP_409_CONFLICT,
                message=message,
                error_code="CONSTRAINT_VIOLATION",
                details={"constraint": constraint},
            )

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Database constraint violation",
        error_code="INTEGRITY_ERROR",
    )


async def operational_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Lock waits that escaped the retry loop are retryable; anything else is an outage."""
    raw = str(getattr(exc, "orig", exc)).lower()
    logger.error(f"Database error on {request.url.path}: {raw}", extra=_request_context(request))

    if any(marker in raw for marker in LOCK_ERROR_MARKERS):
        return _retry_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "The ledger is busy with concurrent updates. Please retry.",
            "CONTENTION",
        )
    return create_error_response(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        message="Database temporarily unavailable. Please try again.",
        error_code="DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        extra=_request_context(request),
        exc_info=True,
    )
    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    handlers = [
        (InvoicerException, invoicer_exception_handler),
        (HTTPException, http_exception_handler),
        (StarletteHTTPException, http_exception_handler),
        (RequestValidationError, validation_exception_handler),
        (ValidationError, validation_exception_handler),
        (IntegrityError, integrity_exception_handler),
        (OperationalError, operational_exception_handler),
        (Exception, general_exception_handler),
    ]
    for exc_class, handler in handlers:
        app.add_exception_handler(exc_class, handler)

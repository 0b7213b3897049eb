"""Custom exceptions following RFC 9457 Problem Details for HTTP APIs."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

PROBLEM_BASE_URI = "https://courtslot.example.com/problems"


class ProblemDetailsException(HTTPException):
    """
    Base exception class following RFC 9457 Problem Details for HTTP APIs.

    https://tools.ietf.org/rfc/rfc9457.txt
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize Problem Details exception.

        Args:
            status_code: HTTP status code
            title: Short, human-readable summary of the problem type
            detail: Human-readable explanation specific to this occurrence
            type_uri: URI reference that identifies the problem type
            instance: URI reference that identifies the specific occurrence
            extensions: Additional problem-specific information
            headers: HTTP headers to include in response
        """
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = extensions or {}

        self.problem_details = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
        }

        if self.detail:
            self.problem_details["detail"] = self.detail

        if self.instance:
            self.problem_details["instance"] = self.instance

        self.problem_details.update(self.extensions)

        super().__init__(
            status_code=status_code,
            detail=self.problem_details,
            headers=headers
        )


class ValidationError(ProblemDetailsException):
    """Exception for request validation errors."""

    def __init__(
        self,
        detail: str = "The request data failed validation",
        errors: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if errors:
            extensions["errors"] = errors

        super().__init__(
            status_code=400,
            title="Validation Error",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/validation-error",
            instance=instance,
            extensions=extensions,
        )


class AuthenticationError(ProblemDetailsException):
    """Exception for authentication errors."""

    def __init__(
        self,
        detail: str = "Authorization credentials are required",
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=401,
            title="Authorization Required",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/authorization-required",
            instance=instance,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(ProblemDetailsException):
    """Exception for authorization errors."""

    def __init__(
        self,
        detail: str = "Insufficient permissions to access this resource",
        required_permissions: Optional[list] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if required_permissions:
            extensions["required_permissions"] = required_permissions

        super().__init__(
            status_code=403,
            title="Access Forbidden",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/access-forbidden",
            instance=instance,
            extensions=extensions,
        )


class NotFoundError(ProblemDetailsException):
    """Exception for resource not found errors."""

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not detail:
            detail = f"The requested {resource_type}"
            if resource_id:
                detail += f" with ID '{resource_id}'"
            detail += " could not be found"

        extensions = {
            "resource_type": resource_type,
        }
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/resource-not-found",
            instance=instance,
            extensions=extensions,
        )


class ConflictError(ProblemDetailsException):
    """Exception for conflicts with the current state of a slot or record."""

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
        code: str = "CONFLICT",
        instance: Optional[str] = None,
    ):
        extensions: Dict[str, Any] = {"code": code}
        if conflicting_resource:
            extensions["conflicting_resource"] = conflicting_resource

        super().__init__(
            status_code=409,
            title="Resource Conflict",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/resource-conflict",
            instance=instance,
            extensions=extensions,
        )
        self.code = code


class StaleStateError(ConflictError):
    """
    Checkout re-validation found items that are no longer available.

    The whole checkout has been rolled back; ``items`` names each regressed
    cart item with the state it was found in.
    """

    def __init__(self, transaction_id: str, items: List[Dict[str, Any]]):
        super().__init__(
            detail=f"{len(items)} item(s) in transaction {transaction_id} are no longer available",
            code="STALE_STATE",
        )
        self.items = items
        self.problem_details.update({
            "transaction_id": transaction_id,
            "items": items,
            "retryable": False,
        })


class InvalidStateTransition(ConflictError):
    """A record is not in a state that allows the requested action."""

    def __init__(self, resource_type: str, resource_id: str, current_state: str, action: str):
        super().__init__(
            detail=f"Cannot {action} {resource_type} {resource_id} in state {current_state}",
            code="INVALID_STATE",
        )
        self.current_state = current_state
        self.problem_details.update({
            "resource_type": resource_type,
            "resource_id": resource_id,
            "current_state": current_state,
        })


class DeadlineExpiredError(ProblemDetailsException):
    """A payment or approval arrived after a waitlist entry's deadline."""

    def __init__(self, waitlist_entry_id: str, expires_at: Optional[datetime]):
        detail = f"Waitlist entry {waitlist_entry_id} is past its payment deadline"
        extensions: Dict[str, Any] = {
            "code": "DEADLINE_EXPIRED",
            "retryable": False,
            "waitlist_entry_id": waitlist_entry_id,
        }
        if expires_at:
            extensions["expires_at"] = expires_at.isoformat()

        super().__init__(
            status_code=410,
            title="Deadline Expired",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/deadline-expired",
            extensions=extensions,
        )
        self.waitlist_entry_id = waitlist_entry_id


class InvariantViolation(Exception):
    """
    Parent and child records disagree about their status.

    Raised and handled inside reconciliation only; never returned to callers.
    """

    def __init__(self, transaction_id: str, message: str, kind: str = "status_mismatch"):
        super().__init__(f"Transaction {transaction_id}: {message}")
        self.transaction_id = transaction_id
        self.kind = kind


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """
    Exception handler for Problem Details exceptions.

    Args:
        request: FastAPI request object
        exc: Problem Details exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.problem_details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request validation failures as a 422 problem with violations."""
    violations = [
        {
            "path": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "type": f"{PROBLEM_BASE_URI}/unprocessable-request",
            "title": "Unprocessable Request",
            "status": 422,
            "detail": "The request body failed validation",
            "instance": str(request.url),
            "violations": violations,
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Generic exception handler that converts unhandled exceptions to Problem Details format.

    Args:
        request: FastAPI request object
        exc: Unhandled exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    error_id = str(uuid.uuid4())
    logger.error(
        "Unhandled exception",
        exc_info=exc,
        extra={"error_id": error_id, "path": request.url.path},
    )

    problem_details = {
        "type": f"{PROBLEM_BASE_URI}/internal-server-error",
        "title": "Internal Server Error",
        "status": 500,
        "detail": "An unexpected error occurred while processing the request",
        "instance": str(request.url),
        "error_id": error_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    return JSONResponse(
        status_code=500,
        content=problem_details,
    )


def internal_error(message: str, exc: Exception, **context: Any) -> ProblemDetailsException:
    """Log an unexpected router failure and build the 500 problem to raise in its place."""
    error_id = str(uuid.uuid4())
    logger.error(
        message,
        exc_info=exc,
        extra={**context, "error_id": error_id, "error": str(exc)},
    )
    return ProblemDetailsException(
        status_code=500,
        title="Internal Server Error",
        detail="An unexpected error occurred while processing the request",
        type_uri=f"{PROBLEM_BASE_URI}/internal-server-error",
        extensions={"error_id": error_id},
    )

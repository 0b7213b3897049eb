"""Common Pydantic schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Violation(BaseModel):
    """Validation error violation."""

    path: str = Field(..., description="JSON path to the invalid field")
    message: str = Field(..., description="Validation error message")


class Problem(BaseModel):
    """RFC 9457 Problem Details response; error-specific extensions sit at the top level."""

    model_config = ConfigDict(extra="allow")

    type: Optional[str] = Field(None, description="Problem type URI")
    title: str = Field(..., description="Short human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: Optional[str] = Field(None, description="Human-readable explanation")
    instance: Optional[str] = Field(None, description="URI reference for this occurrence")
    code: Optional[str] = Field(
        None, description="SLOT_TAKEN, STALE_STATE, INVALID_STATE, DEADLINE_EXPIRED, DUPLICATE_NAME, ..."
    )
    retryable: Optional[bool] = Field(None, description="False when the same checkout cannot succeed unchanged")
    items: Optional[List[Dict[str, Any]]] = Field(None, description="Cart items a stale checkout found taken")
    error_id: Optional[str] = Field(None, description="Reference for server errors")
    violations: Optional[List[Violation]] = Field(None, description="Validation errors")


def problem_responses(*statuses: int) -> Dict[int, Dict[str, Any]]:
    """OpenAPI ``responses`` entries documenting Problem Details bodies."""
    descriptions = {
        400: "Malformed identifier or invalid request",
        401: "Missing or invalid bearer token",
        403: "Caller may not perform this action",
        404: "Record not found",
        409: "Slot conflict or invalid state transition",
        410: "Waitlist payment deadline passed",
        422: "Request body failed validation",
    }
    return {
        status: {"model": Problem, "description": descriptions[status]}
        for status in statuses
    }


API_PROBLEMS = problem_responses(400, 401, 403, 404, 409, 410, 422)

"""RFC 7807 Problem Details for HTTP APIs.

Every error surfaced by the orchestrator control surface is rendered as a
problem document, so operators and automation can tell a degraded source
apart from a blocked batch or a corrupted checkpoint. Two extensions carry
the seeding context: ``retryable`` says whether repeating the same request
can succeed once the condition clears, and ``instance`` points at the run
the failure belongs to when one is known.

Reference: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from seedflow.core.logging import request_id_ctx, run_id_ctx

# =============================================================================
# Error Type URIs
# =============================================================================

ERROR_TYPE_BASE = "/errors"

ERROR_TYPES = {
    code: f"{ERROR_TYPE_BASE}/{slug}"
    for code, slug in (
        ("NOT_FOUND", "not-found"),
        ("VALIDATION_ERROR", "validation"),
        ("DATABASE_ERROR", "database"),
        ("CONFLICT", "conflict"),
        ("INTERNAL_ERROR", "internal"),
        ("BAD_REQUEST", "bad-request"),
        ("SERVICE_UNAVAILABLE", "service-unavailable"),
        ("SOURCE_UNAVAILABLE", "source-unavailable"),
        ("SCHEMA_MISMATCH", "schema-mismatch"),
        ("GOVERNANCE_VIOLATION", "governance-violation"),
        ("BIAS_RISK", "bias-risk"),
        ("DELIVERY_FAILURE", "delivery-failure"),
        ("STATE_CORRUPTION", "state-corruption"),
        ("INVALID_TRANSITION", "invalid-transition"),
        ("EMERGENCY_STOP", "emergency-stop"),
    )
}

# Transient conditions: the same request may succeed later without changes.
RETRYABLE_CODES = frozenset(
    {
        "CONFLICT",
        "DATABASE_ERROR",
        "SERVICE_UNAVAILABLE",
        "SOURCE_UNAVAILABLE",
        "DELIVERY_FAILURE",
        "EMERGENCY_STOP",
    }
)


# =============================================================================
# Problem Detail Schema
# =============================================================================


class ProblemDetail(BaseModel):
    """RFC 7807 problem document with seeding extensions.

    Attributes:
        type: URI identifying the error type.
        title: Short human-readable summary of the problem.
        status: HTTP status code.
        detail: Explanation specific to this occurrence.
        instance: Run the failure belongs to, or the request that caused it.
        errors: Field-level validation errors (422 only).
        code: Machine-readable error code.
        retryable: Whether the same request can succeed later.
        request_id: Request correlation ID.
        context: Run, source and target identifiers involved.
    """

    model_config = ConfigDict(extra="allow")

    type: str = "about:blank"
    title: str
    status: int = Field(..., ge=400, le=599)
    detail: str | None = None
    instance: str | None = None
    # Extensions
    errors: list[dict[str, Any]] | None = None
    code: str | None = None
    retryable: bool = False
    request_id: str | None = None
    context: dict[str, Any] | None = None


class ProblemDetailResponse(JSONResponse):
    """JSON response with RFC 7807 content type."""

    media_type = "application/problem+json"


# =============================================================================
# Helper Functions
# =============================================================================


def _instance(context: dict[str, Any] | None, request_id: str | None) -> str | None:
    run_id = (context or {}).get("run_id") or run_id_ctx.get()
    if run_id:
        return f"/orchestrator/runs/{run_id}"
    return f"/requests/{request_id}" if request_id else None


def create_problem_detail(
    status: int,
    title: str,
    detail: str | None = None,
    error_code: str = "INTERNAL_ERROR",
    errors: list[dict[str, Any]] | None = None,
    context: dict[str, Any] | None = None,
) -> ProblemDetail:
    """Create a ProblemDetail with type URI, instance and retry hint.

    Args:
        status: HTTP status code.
        title: Short problem summary.
        detail: Detailed explanation (optional).
        error_code: Internal error code for type URI lookup.
        errors: Field-level validation errors (optional).
        context: Domain identifiers (optional).

    Returns:
        Configured ProblemDetail instance.
    """
    request_id = request_id_ctx.get()
    return ProblemDetail(
        type=ERROR_TYPES.get(error_code, f"{ERROR_TYPE_BASE}/{error_code.lower()}"),
        title=title,
        status=status,
        detail=detail,
        instance=_instance(context, request_id),
        errors=errors,
        code=error_code,
        retryable=error_code in RETRYABLE_CODES,
        request_id=request_id,
        context=context or None,
    )


def problem_response(
    status: int,
    title: str,
    detail: str | None = None,
    error_code: str = "INTERNAL_ERROR",
    errors: list[dict[str, Any]] | None = None,
    context: dict[str, Any] | None = None,
) -> ProblemDetailResponse:
    """Render a problem document as an ``application/problem+json`` response."""
    problem = create_problem_detail(
        status=status,
        title=title,
        detail=detail,
        error_code=error_code,
        errors=errors,
        context=context,
    )
    return ProblemDetailResponse(
        status_code=status,
        content=problem.model_dump(mode="json", exclude_none=True),
    )

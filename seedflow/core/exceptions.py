"""Custom exceptions and FastAPI exception handlers.

Implements RFC 7807 Problem Details for machine-readable error responses.

Two families live here:

* generic API errors (not found, validation, conflict, bad request, database);
* the seeding error taxonomy (source unavailable, schema mismatch, governance
  violation, bias risk, delivery failure, state corruption). These are raised
  inside pipeline units and normally converted into health or audit events at
  the unit boundary; they only reach the HTTP layer when an operator action
  fails directly.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from seedflow.core.logging import get_logger
from seedflow.core.problem_details import (
    ERROR_TYPES,
    ProblemDetailResponse,
    problem_response,
)

logger = get_logger(__name__)


# =============================================================================
# Exception Classes
# =============================================================================


class SeedFlowError(Exception):
    """Base exception for SeedFlow application errors.

    All application-specific exceptions should inherit from this class.
    Each exception type maps to an RFC 7807 problem type URI.
    """

    error_type_uri: str = ERROR_TYPES["INTERNAL_ERROR"]

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize application error.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            status_code: HTTP status code.
            details: Additional error context.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    @property
    def title(self) -> str:
        """RFC 7807 title - short summary of problem type."""
        return self.code.replace("_", " ").title()


class NotFoundError(SeedFlowError):
    """Resource not found error (run, target, source, checkpoint)."""

    error_type_uri: str = ERROR_TYPES["NOT_FOUND"]

    def __init__(
        self,
        message: str = "Resource not found",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details=details,
        )


class ValidationError(SeedFlowError):
    """Input validation error."""

    error_type_uri: str = ERROR_TYPES["VALIDATION_ERROR"]

    def __init__(
        self,
        message: str = "Validation failed",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=422,
            details=details,
        )


class DatabaseError(SeedFlowError):
    """Database operation error."""

    error_type_uri: str = ERROR_TYPES["DATABASE_ERROR"]

    def __init__(
        self,
        message: str = "Database operation failed",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="DATABASE_ERROR",
            status_code=500,
            details=details,
        )


class ConflictError(SeedFlowError):
    """Resource conflict error.

    Raised for duplicate registrations and for runs whose target set
    overlaps an in-flight run.
    """

    error_type_uri: str = ERROR_TYPES["CONFLICT"]

    def __init__(
        self,
        message: str = "Resource conflict",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="CONFLICT",
            status_code=409,
            details=details,
        )


class BadRequestError(SeedFlowError):
    """Bad request error."""

    error_type_uri: str = ERROR_TYPES["BAD_REQUEST"]

    def __init__(
        self,
        message: str = "Bad request",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="BAD_REQUEST",
            status_code=400,
            details=details,
        )


class InvalidTransitionError(SeedFlowError):
    """Raised when a seeding run is moved along an edge the state machine forbids."""

    error_type_uri: str = ERROR_TYPES["INVALID_TRANSITION"]

    def __init__(
        self,
        message: str = "Invalid status transition",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="INVALID_TRANSITION",
            status_code=409,
            details=details,
        )


class EmergencyStopError(SeedFlowError):
    """Raised when new work is requested while operations are halted."""

    error_type_uri: str = ERROR_TYPES["EMERGENCY_STOP"]

    def __init__(
        self,
        message: str = "Operations are halted by emergency stop",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="EMERGENCY_STOP",
            status_code=503,
            details=details,
        )


# -----------------------------------------------------------------------------
# Seeding error taxonomy
# -----------------------------------------------------------------------------


class SourceUnavailableError(SeedFlowError):
    """A connector failed its health check or exhausted its retries."""

    error_type_uri: str = ERROR_TYPES["SOURCE_UNAVAILABLE"]

    def __init__(
        self,
        source_id: str,
        message: str = "Source unavailable",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="SOURCE_UNAVAILABLE",
            status_code=503,
            details={"source_id": source_id, **(details or {})},
        )
        self.source_id = source_id


class RateLimitedError(SourceUnavailableError):
    """A connector hit its upstream rate limit mid-collection.

    Records gathered before the limit was hit travel on the exception so
    the pipeline can keep them.
    """

    def __init__(
        self,
        source_id: str,
        message: str = "Source rate limited",
        retry_after: float | None = None,
        partial: list[Any] | None = None,
    ) -> None:
        super().__init__(
            source_id=source_id,
            message=message,
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after
        self.partial = partial or []


class SchemaMismatchError(SeedFlowError):
    """A raw record could not be coerced into any canonical schema."""

    error_type_uri: str = ERROR_TYPES["SCHEMA_MISMATCH"]

    def __init__(
        self,
        message: str = "Record does not match any canonical schema",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="SCHEMA_MISMATCH",
            status_code=422,
            details=details,
        )


class GovernanceViolationError(SeedFlowError):
    """A blocking governance policy rejected a record or batch."""

    error_type_uri: str = ERROR_TYPES["GOVERNANCE_VIOLATION"]

    def __init__(
        self,
        policy: str,
        message: str = "Governance policy violated",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="GOVERNANCE_VIOLATION",
            status_code=409,
            details={"policy": policy, **(details or {})},
        )
        self.policy = policy


class BiasRiskError(SeedFlowError):
    """Bias detection rated a batch high or critical for a bias-sensitive target."""

    error_type_uri: str = ERROR_TYPES["BIAS_RISK"]

    def __init__(
        self,
        risk_tier: str,
        message: str = "Bias risk exceeds tolerance",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="BIAS_RISK",
            status_code=409,
            details={"risk_tier": risk_tier, **(details or {})},
        )
        self.risk_tier = risk_tier


class DeliveryFailureError(SeedFlowError):
    """A distribution target rejected or did not acknowledge a delivery."""

    error_type_uri: str = ERROR_TYPES["DELIVERY_FAILURE"]

    def __init__(
        self,
        target_id: str,
        message: str = "Delivery failed",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="DELIVERY_FAILURE",
            status_code=502,
            details={"target_id": target_id, **(details or {})},
        )
        self.target_id = target_id


class StateCorruptionError(SeedFlowError):
    """A checkpoint or stored batch could not be read back."""

    error_type_uri: str = ERROR_TYPES["STATE_CORRUPTION"]

    def __init__(
        self,
        run_id: str,
        message: str = "Checkpoint is unreadable",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STATE_CORRUPTION",
            status_code=500,
            details={"run_id": run_id, **(details or {})},
        )
        self.run_id = run_id


# =============================================================================
# Exception Handlers (RFC 7807)
# =============================================================================


async def seedflow_exception_handler(
    _request: Request,
    exc: SeedFlowError,
) -> ProblemDetailResponse:
    """Handle SeedFlowError exceptions with RFC 7807 Problem Details.

    Args:
        _request: FastAPI request object.
        exc: The raised exception.

    Returns:
        RFC 7807 Problem Detail response.
    """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "app.error_handled",
        error=exc.message,
        error_type=type(exc).__name__,
        error_code=exc.code,
        status_code=exc.status_code,
        details=exc.details,
    )

    return problem_response(
        status=exc.status_code,
        title=exc.title,
        detail=exc.message,
        error_code=exc.code,
        context=exc.details,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> ProblemDetailResponse:
    """Handle Pydantic validation errors with RFC 7807 Problem Details.

    Args:
        request: FastAPI request object.
        exc: Pydantic validation error.

    Returns:
        RFC 7807 Problem Detail response with field-level errors.
    """
    field_errors: list[dict[str, str]] = []
    for error in exc.errors():
        loc = error.get("loc", [])
        field_path = ".".join(str(part) for part in loc if part != "body")
        field_errors.append(
            {
                "field": field_path,
                "message": str(error.get("msg", "Validation failed")),
                "type": str(error.get("type", "unknown")),
            }
        )

    logger.warning(
        "app.validation_error",
        error_count=len(field_errors),
        path=str(request.url.path),
        fields=[e["field"] for e in field_errors],
    )

    return problem_response(
        status=422,
        title="Validation Error",
        detail=f"Request validation failed with {len(field_errors)} error(s). "
        "Check the 'errors' field for details.",
        error_code="VALIDATION_ERROR",
        errors=field_errors,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> ProblemDetailResponse:
    """Handle unexpected exceptions with RFC 7807 Problem Details."""
    logger.error(
        "app.unhandled_error",
        error=str(exc),
        error_type=type(exc).__name__,
        path=str(request.url.path),
        exc_info=True,
    )

    return problem_response(
        status=500,
        title="Internal Server Error",
        detail="An unexpected error occurred. Contact the operator with the request_id.",
        error_code="INTERNAL_ERROR",
    )


# =============================================================================
# Handler Registration
# =============================================================================


def register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance.
    """
    app.add_exception_handler(SeedFlowError, seedflow_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

"""Tests for RFC 7807 problem documents."""

from seedflow.core.exceptions import ConflictError, NotFoundError, StateCorruptionError
from seedflow.core.logging import request_id_ctx, run_context
from seedflow.core.problem_details import create_problem_detail, problem_response


def test_type_uri_from_error_code():
    """Known codes map to their type URI, unknown ones are derived."""
    known = create_problem_detail(404, "Not Found", error_code="NOT_FOUND")
    unknown = create_problem_detail(418, "Teapot", error_code="TEAPOT")

    assert known.type == "/errors/not-found"
    assert unknown.type == "/errors/teapot"


def test_retryable_only_for_transient_codes():
    """Conflicts are retryable, corrupted state is not."""
    conflict = ConflictError("busy")
    corrupt = StateCorruptionError("r1")

    assert create_problem_detail(409, "Conflict", error_code=conflict.code).retryable is True
    assert create_problem_detail(500, "Corrupt", error_code=corrupt.code).retryable is False


def test_instance_points_at_run():
    """The run in context wins over the request id."""
    token = request_id_ctx.set("req-1")
    try:
        by_request = create_problem_detail(404, "Not Found")
        by_details = create_problem_detail(404, "Not Found", context={"run_id": "r1"})
        with run_context("r2"):
            by_context = create_problem_detail(404, "Not Found")
    finally:
        request_id_ctx.reset(token)

    assert by_request.instance == "/requests/req-1"
    assert by_details.instance == "/orchestrator/runs/r1"
    assert by_context.instance == "/orchestrator/runs/r2"


def test_problem_response_media_type():
    """Responses use the problem+json media type and drop empty fields."""
    error = NotFoundError("Run not found")
    response = problem_response(
        status=error.status_code, title="Not Found", detail=error.message, error_code=error.code
    )

    assert response.media_type == "application/problem+json"
    assert b'"errors"' not in response.body
    assert b'"retryable":false' in response.body

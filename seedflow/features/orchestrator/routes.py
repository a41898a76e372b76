"""Control surface for the seeding orchestrator.

Errors raised by the orchestrator are SeedFlowError subclasses and are
rendered as RFC 7807 problem details by the registered exception handlers.
"""

from fastapi import APIRouter, Depends, Query, Request, status

from seedflow.core.logging import get_logger
from seedflow.features.collection.schemas import CollectionQuery
from seedflow.features.distribution.schemas import TargetConfig, TargetStatus
from seedflow.features.orchestrator.schemas import (
    ActorRequest,
    AuditEventList,
    ConfigReloadResponse,
    OrchestratorStatus,
    OutboxPage,
    OverrideRequest,
    OverrideResponse,
    RunCreate,
    RunKind,
    RunListResponse,
    RunResponse,
    RunState,
    RunStatus,
)
from seedflow.features.orchestrator.service import SeedingOrchestrator
from seedflow.shared.audit import AuditKind

logger = get_logger(__name__)

router = APIRouter(prefix="/orchestrator", tags=["orchestrator"])


def get_orchestrator(request: Request) -> SeedingOrchestrator:
    """Orchestrator created by the application lifespan."""
    orchestrator: SeedingOrchestrator = request.app.state.orchestrator
    return orchestrator


# =============================================================================
# Status and runs
# =============================================================================


@router.get(
    "/status",
    response_model=OrchestratorStatus,
    summary="Orchestrator status",
    description="Emergency stop flag, in-flight runs, source and target health, "
    "active run per target and real-time lane metrics.",
)
async def get_status(
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> OrchestratorStatus:
    return await orchestrator.status()


@router.get(
    "/runs",
    response_model=RunListResponse,
    summary="List seeding runs",
)
async def list_runs(
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(20, ge=1, le=100, description="Runs per page"),
    run_status: RunStatus | None = Query(None, alias="status", description="Filter by status"),
    kind: RunKind | None = Query(None, description="Filter by run kind"),
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> RunListResponse:
    return await orchestrator.list_runs(page, page_size, run_status, kind)


@router.get(
    "/runs/{run_id}",
    response_model=RunResponse,
    summary="Get a seeding run",
    description="Run state with its status history and completed checkpoints.",
)
async def get_run(
    run_id: str,
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> RunResponse:
    return await orchestrator.get_run(run_id)


@router.post(
    "/runs",
    response_model=RunState,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a seeding run",
    description="""
Run collection, cleaning, augmentation, scoring and distribution for the
selected sources and targets.

Stage failures mark the run `failed` (resumable from its last checkpoint)
instead of failing the request. The request is rejected with 409 while
another in-flight run holds one of the targets and with 503 during an
emergency stop.
""",
)
async def start_run(
    request: RunCreate,
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> RunState:
    logger.info(
        "orchestrator.start_run_request_received",
        sources=request.source_filter,
        targets=request.targets,
    )
    run = await orchestrator.start_run(request.source_filter, request.window, request.targets)
    logger.info(
        "orchestrator.start_run_request_completed", run_id=run.run_id, status=run.status.value
    )
    return run


@router.post(
    "/runs/{run_id}/resume",
    response_model=RunState,
    summary="Resume a failed run",
    description="Continue from the last checkpoint. An unreadable checkpoint is "
    "recorded as state corruption and a fresh run is returned instead.",
)
async def resume_run(
    run_id: str,
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> RunState:
    logger.info("orchestrator.resume_request_received", run_id=run_id)
    return await orchestrator.resume_run(run_id)


@router.post(
    "/runs/{run_id}/rollback",
    response_model=RunState,
    summary="Roll targets back to a prior run",
)
async def rollback_run(
    run_id: str,
    request: ActorRequest,
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> RunState:
    logger.warning(
        "orchestrator.rollback_request_received",
        run_id=run_id,
        actor=request.actor,
        reason=request.reason,
    )
    return await orchestrator.rollback(run_id, request.actor, request.reason)


@router.post(
    "/runs/{run_id}/holds/{target_id}/override",
    response_model=OverrideResponse,
    summary="Release held records to a target",
    description="Deliver the records a run held back from a target. Actor and "
    "reason are required and recorded in the audit trail.",
)
async def override_hold(
    run_id: str,
    target_id: str,
    request: OverrideRequest,
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> OverrideResponse:
    logger.warning(
        "orchestrator.override_request_received",
        run_id=run_id,
        target_id=target_id,
        actor=request.actor,
    )
    return await orchestrator.override_hold(run_id, target_id, request.actor, request.reason)


@router.get(
    "/runs/{run_id}/audit",
    response_model=AuditEventList,
    summary="Audit trail of a run",
)
async def run_audit(
    run_id: str,
    kind: AuditKind | None = Query(None, description="Filter by event kind"),
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=1000),
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> AuditEventList:
    return await orchestrator.audit_events(
        run_id=run_id, kind=kind, page=page, page_size=page_size
    )


# =============================================================================
# Sources and targets
# =============================================================================


@router.post(
    "/sources/{source_id}/refresh",
    response_model=RunState,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Force a refresh from one source",
    description="Clear the source's degraded flag and run the pipeline for that source only.",
)
async def force_refresh(
    source_id: str,
    window: CollectionQuery | None = None,
    targets: list[str] | None = Query(None, description="Targets to refresh (default: all)"),
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> RunState:
    logger.info("orchestrator.refresh_request_received", source_id=source_id)
    return await orchestrator.force_refresh(source_id, window, targets)


@router.put(
    "/targets/{target_id}/config",
    response_model=TargetStatus,
    summary="Register or update a target",
    description="Applies to deliveries started after the call; in-flight "
    "deliveries finish with the configuration they started with.",
)
async def update_target_config(
    target_id: str,
    config: TargetConfig,
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> TargetStatus:
    if config.target_id != target_id:
        config = config.model_copy(update={"target_id": target_id})
    logger.info("orchestrator.target_config_request_received", target_id=target_id)
    return await orchestrator.update_target_config(config)


@router.get(
    "/targets/{target_id}/outbox",
    response_model=OutboxPage,
    summary="Poll a store-and-poll target",
    description="Rows appended after the `after` cursor, oldest first. Pass "
    "`next_cursor` back as `after` to continue.",
)
async def read_outbox(
    target_id: str,
    after: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> OutboxPage:
    return await orchestrator.read_outbox(target_id, after, limit)


@router.get(
    "/targets/{target_id}/audit",
    response_model=AuditEventList,
    summary="Audit trail of a target",
)
async def target_audit(
    target_id: str,
    kind: AuditKind | None = Query(None, description="Filter by event kind"),
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=1000),
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> AuditEventList:
    return await orchestrator.audit_events(
        target_id=target_id, kind=kind, page=page, page_size=page_size
    )


# =============================================================================
# Manual controls
# =============================================================================


@router.post(
    "/emergency-stop",
    response_model=OrchestratorStatus,
    summary="Halt all distribution",
    description="No new deliveries are scheduled; deliveries already issued complete.",
)
async def emergency_stop(
    request: ActorRequest,
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> OrchestratorStatus:
    logger.warning(
        "orchestrator.emergency_stop_request_received",
        actor=request.actor,
        reason=request.reason,
    )
    await orchestrator.emergency_stop(request.reason, request.actor)
    return await orchestrator.status()


@router.post(
    "/resume-operations",
    response_model=OrchestratorStatus,
    summary="Lift an emergency stop",
)
async def resume_operations(
    request: ActorRequest,
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> OrchestratorStatus:
    logger.warning("orchestrator.resume_operations_request_received", actor=request.actor)
    await orchestrator.resume_operations(request.actor)
    return await orchestrator.status()


@router.post(
    "/config/reload",
    response_model=ConfigReloadResponse,
    summary="Reload the distribution configuration file",
)
async def reload_config(
    force: bool = Query(True, description="Reload even if the file is unchanged"),
    orchestrator: SeedingOrchestrator = Depends(get_orchestrator),
) -> ConfigReloadResponse:
    return await orchestrator.reload_config(force=force)

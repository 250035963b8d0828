"""
CTO Orchestrator Service - Main FastAPI Application.

Provides API endpoints for:
- Dry-run analysis of work requests (domains, candidates, plan)
- Submitting requests for delegated execution
- Querying plan progress and results, and cancelling plans
- Listing and handling escalations raised by critical quality gates
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import config
from .engine import DelegationEngine
from .errors import (
    EscalationNotFoundError,
    EscalationStateError,
    OrchestratorError,
    PlanNotFoundError,
    PlanningError,
    UnknownWorkerError,
)
from .escalations import Escalation, EscalationActionRequest
from .models import (
    AnalyzeResponse,
    ErrorResponse,
    HealthCheckResponse,
    PlanResultResponse,
    PlanStatusResponse,
    SubmitResponse,
    Worker,
    WorkRequest,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Track service start time for uptime
SERVICE_START_TIME = time.time()

SERVICE_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for FastAPI application.

    Handles startup and shutdown tasks.
    """
    # Startup
    logger.info("Starting CTO Orchestrator service...")
    logger.info(f"Subagent Manager URL: {config.subagent_manager_url}")

    app.state.engine = DelegationEngine()
    logger.info(f"Loaded {len(app.state.engine.registry)} workers")

    logger.info("CTO Orchestrator service started successfully")
    yield

    # Shutdown
    logger.info("Shutting down CTO Orchestrator service...")
    await app.state.engine.close()
    logger.info("CTO Orchestrator service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="CTO Orchestrator Service",
    description="Delegates work to specialist agents with staged plans and quality gates",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


def get_engine() -> DelegationEngine:
    return app.state.engine


# ============================================================================
# Exception Handlers
# ============================================================================

_ERROR_STATUS = {
    UnknownWorkerError: status.HTTP_400_BAD_REQUEST,
    PlanningError: status.HTTP_400_BAD_REQUEST,
    PlanNotFoundError: status.HTTP_404_NOT_FOUND,
    EscalationNotFoundError: status.HTTP_404_NOT_FOUND,
    EscalationStateError: status.HTTP_409_CONFLICT,
}


@app.exception_handler(OrchestratorError)
async def orchestrator_exception_handler(
    request: Request, exc: OrchestratorError
) -> JSONResponse:
    """Map delegation errors to HTTP status codes."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"Orchestrator error: {exc}", exc_info=True)
    else:
        logger.warning(f"Request rejected ({status_code}): {exc}")

    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=type(exc).__name__,
            message=str(exc),
        ).model_dump(),
    )


@app.exception_handler(ValidationError)
async def validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    errors = [f"{err['loc']}: {err['msg']}" for err in exc.errors()]
    logger.warning(f"Validation error: {errors}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error="ValidationError",
            message="Invalid request data",
            details={"errors": errors},
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error="HTTPException",
            message=exc.detail or "An error occurred",
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all other exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="InternalServerError",
            message="An internal server error occurred",
            details={"exception": str(exc)},
        ).model_dump(),
    )


# ============================================================================
# API Endpoints
# ============================================================================


@app.get("/", response_model=Dict[str, str])
async def root() -> Dict[str, str]:
    """Root endpoint with service information."""
    return {
        "service": "CTO Orchestrator",
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", response_model=HealthCheckResponse)
async def health_check() -> HealthCheckResponse:
    """
    Health check endpoint.

    Returns service status and dependency health.
    """
    dependencies: Dict[str, str] = {}

    async with httpx.AsyncClient(timeout=5.0) as client:
        try:
            response = await client.get(f"{config.subagent_manager_url}/health")
            dependencies["subagent_manager"] = (
                "healthy" if response.status_code == 200 else "unhealthy"
            )
        except httpx.HTTPError:
            dependencies["subagent_manager"] = "unreachable"

    all_healthy = all(state == "healthy" for state in dependencies.values())

    return HealthCheckResponse(
        status="healthy" if all_healthy else "degraded",
        version=SERVICE_VERSION,
        dependencies=dependencies,
        uptime_seconds=time.time() - SERVICE_START_TIME,
    )


@app.get("/workers", response_model=List[Worker])
async def list_workers() -> List[Worker]:
    """List the worker roster in name order."""
    return list(get_engine().registry)


@app.post("/analyze", response_model=AnalyzeResponse)
async def analyze_request(request: WorkRequest) -> AnalyzeResponse:
    """
    Dry-run a work request.

    Returns the analysis, ranked candidates and the plan that would run,
    without executing anything.
    """
    logger.info(f"Received analyze request: {request.description[:80]!r}")
    return get_engine().analyze(request)


@app.post("/plans", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_plan(request: WorkRequest) -> SubmitResponse:
    """
    Submit a work request for delegated execution.

    This endpoint:
    1. Analyzes the request and scores the worker roster
    2. Builds the plan (errors surface here as 400)
    3. Starts execution in the background
    4. Returns the plan handle and a summary of the plan

    Raises:
        UnknownWorkerError: If the request names an unknown worker
        PlanningError: If no plan can be built
    """
    engine = get_engine()
    handle = await engine.submit(request)
    plan = engine.tracker.get(handle.plan_id).plan
    return SubmitResponse(handle=handle, analysis=plan.analysis, plan=plan.summary())


@app.get("/plans", response_model=List[PlanStatusResponse])
async def list_plans() -> List[PlanStatusResponse]:
    """List tracked plans."""
    return get_engine().list_statuses()


@app.get("/plans/{plan_id}", response_model=PlanStatusResponse)
async def get_plan_status(plan_id: str) -> PlanStatusResponse:
    """Current wave and per-task states of a plan."""
    return get_engine().get_status(plan_id)


@app.get("/plans/{plan_id}/result", response_model=PlanResultResponse)
async def get_plan_result(plan_id: str) -> PlanResultResponse:
    """Terminal result of a plan, or a pending marker."""
    engine = get_engine()
    plan_status = engine.get_status(plan_id)
    result = engine.get_result(plan_id)
    return PlanResultResponse(
        plan_id=plan_id,
        state=plan_status.state,
        pending=result is None,
        result=result,
    )


@app.post("/plans/{plan_id}/cancel", response_model=PlanStatusResponse)
async def cancel_plan(plan_id: str) -> PlanStatusResponse:
    """
    Cancel a running plan.

    Raises:
        HTTPException: 409 if the plan has already finished
    """
    engine = get_engine()
    if not await engine.cancel(plan_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Plan {plan_id} has already finished",
        )
    return engine.get_status(plan_id)


# ============================================================================
# Escalation Endpoints
# ============================================================================


@app.get("/escalations", response_model=List[Escalation])
async def list_escalations(
    plan_id: Optional[str] = None,
    include_resolved: bool = False,
) -> List[Escalation]:
    """
    List escalations.

    Args:
        plan_id: Optional filter by plan ID
        include_resolved: Include resolved escalations

    Returns:
        Escalations, most severe first
    """
    return await get_engine().escalations.list_escalations(plan_id, include_resolved)


@app.get("/escalations/{escalation_id}", response_model=Escalation)
async def get_escalation(escalation_id: str) -> Escalation:
    """Get an escalation by ID."""
    return await get_engine().escalations.get_escalation(escalation_id)


@app.post("/escalations/{escalation_id}/acknowledge", response_model=Escalation)
async def acknowledge_escalation(
    escalation_id: str, action: EscalationActionRequest
) -> Escalation:
    """Acknowledge an open escalation."""
    return await get_engine().escalations.acknowledge(escalation_id, action.actor)


@app.post("/escalations/{escalation_id}/resolve", response_model=Escalation)
async def resolve_escalation(
    escalation_id: str, action: EscalationActionRequest
) -> Escalation:
    """Resolve an escalation."""
    return await get_engine().escalations.resolve(
        escalation_id, action.actor, action.resolution
    )


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> None:
    """Main entry point for running the service."""
    import uvicorn

    logger.info("Starting CTO Orchestrator service with uvicorn...")

    uvicorn.run(
        "cto_orchestrator.service.main:app",
        host=config.host,
        port=config.port,
        reload=config.reload,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()

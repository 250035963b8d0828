"""
Delegation engine: the caller-facing API.

Wires analyzer, scorer, planner, executor, quality gate, progress tracker and
escalations together. Plans are built synchronously on submit so that bad
requests fail immediately; execution continues in a background task.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple, Union
from uuid import uuid4

import anyio

from .config import OrchestratorConfig, config
from .errors import OrchestratorError
from .escalations import EscalationManager, escalation_manager
from .executor import OrchestrationExecutor
from .models import (
    AbortCause,
    AnalyzeResponse,
    Analysis,
    Candidate,
    FailureKind,
    Plan,
    PlanHandle,
    PlanResult,
    PlanState,
    PlanStatusResponse,
    RiskLevel,
    Wave,
    WorkRequest,
)
from .analyzer import RequestAnalyzer
from .planner import DelegationPlanner
from .progress import ProgressTracker
from .quality_gate import QualityGateEnforcer
from .registry import DelegationConfig, get_delegation_config
from .scorer import score
from .workers import HttpWorkerClient, WorkerClient

logger = logging.getLogger(__name__)

HandleLike = Union[PlanHandle, str]


def _plan_id(handle: HandleLike) -> str:
    return handle.plan_id if isinstance(handle, PlanHandle) else handle


class DelegationEngine:
    """
    Routes work requests to specialist workers and runs the resulting plans.

    Example:
        engine = DelegationEngine(client=my_client)
        handle = await engine.submit(WorkRequest(description="Audit our OAuth login"))
        result = await engine.wait(handle)
    """

    def __init__(
        self,
        delegation: Optional[DelegationConfig] = None,
        client: Optional[WorkerClient] = None,
        tracker: Optional[ProgressTracker] = None,
        escalations: Optional[EscalationManager] = None,
        settings: Optional[OrchestratorConfig] = None,
    ) -> None:
        settings = settings or config
        self.delegation = delegation or get_delegation_config()
        self.registry = self.delegation.registry
        self.analyzer = RequestAnalyzer(self.delegation)
        self.planner = DelegationPlanner(self.delegation)

        self._owns_client = client is None
        self.client: WorkerClient = client or HttpWorkerClient()
        self.tracker = tracker or ProgressTracker(settings.max_tracked_plans)
        self.escalations = escalations or escalation_manager
        self.gate = QualityGateEnforcer(self.client, settings.reviewer_timeout_seconds)
        self.executor = OrchestrationExecutor(
            self.client,
            self.gate,
            self.tracker,
            worker_timeout=settings.worker_timeout_seconds,
            max_retries=settings.task_max_retries,
            retry_backoff=settings.retry_backoff_seconds,
            on_escalate=self._escalate,
        )
        self._tasks: Dict[str, "asyncio.Task[PlanResult]"] = {}

    async def close(self) -> None:
        """Cancel running plans and release the worker client."""
        for plan_id in list(self._tasks):
            await self.cancel(plan_id)
        if self._owns_client and isinstance(self.client, HttpWorkerClient):
            await self.client.close()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def prepare(self, request: WorkRequest) -> Tuple[Analysis, List[Candidate], Plan]:
        """
        Analyze, score and plan a request without executing it.

        Raises:
            UnknownWorkerError: If the request names an unknown worker
            PlanningError: If no plan can be built
        """
        analysis = self.analyzer.analyze(request)
        candidates = score(analysis, self.registry)
        plan = self.planner.plan(analysis, candidates, request)
        return analysis, candidates, plan

    def analyze(self, request: WorkRequest) -> AnalyzeResponse:
        """Dry run: the analysis, ranked candidates and plan for a request."""
        analysis, candidates, plan = self.prepare(request)
        return AnalyzeResponse(analysis=analysis, candidates=candidates, plan=plan)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def submit(self, request: WorkRequest) -> PlanHandle:
        """
        Plan a request and start executing it in the background.

        Returns:
            Handle used for status, result, wait and cancel calls
        """
        _, _, plan = self.prepare(request)
        handle = PlanHandle(plan_id=str(uuid4()))
        await self.tracker.register(handle.plan_id, plan)

        task = asyncio.create_task(self.executor.execute(plan, handle.plan_id))
        self._tasks[handle.plan_id] = task
        task.add_done_callback(lambda t: self._on_done(handle.plan_id, t))

        logger.info(f"Submitted plan '{handle.plan_id}': {plan.summary()}")
        return handle

    def _on_done(self, plan_id: str, task: "asyncio.Task[PlanResult]") -> None:
        self._tasks.pop(plan_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Plan '{plan_id}' execution crashed: {task.exception()}")

    def get_status(self, handle: HandleLike) -> PlanStatusResponse:
        """
        Raises:
            PlanNotFoundError: If the handle is unknown
        """
        return self.tracker.status(_plan_id(handle))

    def get_result(self, handle: HandleLike) -> Optional[PlanResult]:
        """Terminal result, or None while the plan is still pending."""
        return self.tracker.result(_plan_id(handle))

    def list_statuses(self) -> List[PlanStatusResponse]:
        return [self.tracker.status(plan_id) for plan_id in self.tracker.plan_ids()]

    async def wait(self, handle: HandleLike, timeout: Optional[float] = None) -> PlanResult:
        """
        Wait for a plan to reach a terminal state.

        Args:
            handle: Plan handle or plan id
            timeout: Seconds to wait before raising TimeoutError

        Raises:
            PlanNotFoundError: If the handle is unknown
            TimeoutError: If the timeout expires first
        """
        plan_id = _plan_id(handle)
        self.tracker.status(plan_id)

        task = self._tasks.get(plan_id)
        if task is not None:
            with anyio.fail_after(timeout):
                try:
                    await asyncio.shield(task)
                except asyncio.CancelledError:
                    if not task.cancelled():
                        raise

        result = self.tracker.result(plan_id)
        if result is None:
            raise OrchestratorError(f"Plan '{plan_id}' finished without a result")
        return result

    async def cancel(self, handle: HandleLike) -> bool:
        """
        Cancel a running plan.

        Returns:
            True if the plan was running and is now aborted, False if it had
            already finished

        Raises:
            PlanNotFoundError: If the handle is unknown
        """
        plan_id = _plan_id(handle)
        self.tracker.status(plan_id)

        task = self._tasks.get(plan_id)
        if task is None or task.done():
            return False

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        # Cancelled before its first step: the executor never ran.
        if self.tracker.result(plan_id) is None:
            await self.tracker.record_result(
                plan_id,
                PlanResult(
                    plan_id=plan_id,
                    state=PlanState.ABORTED,
                    abort=AbortCause(kind=FailureKind.CANCELLED, reason="plan cancelled"),
                ),
            )
        logger.info(f"Plan '{plan_id}' cancelled by caller")
        return True

    async def run(self, request: WorkRequest, timeout: Optional[float] = None) -> PlanResult:
        """Submit a request and wait for its result."""
        handle = await self.submit(request)
        return await self.wait(handle, timeout=timeout)

    async def _escalate(
        self, plan_id: str, wave: Wave, target: str, reason: str, priority: RiskLevel
    ) -> None:
        await self.escalations.create_escalation(
            plan_id=plan_id,
            reason=reason,
            target=target,
            priority=priority,
            wave_index=wave.index,
            wave_name=wave.name,
            context={"reviewers": wave.required_gate.reviewers if wave.required_gate else []},
        )

"""
Shared fixtures for the CTO Orchestrator tests.

Workers and reviewers are replaced by a scripted in-memory client so that no
test touches the network.
"""

from typing import Dict, List, Optional, Sequence, Union

import anyio
import pytest

from cto_orchestrator.service.analyzer import RequestAnalyzer
from cto_orchestrator.service.config import OrchestratorConfig
from cto_orchestrator.service.escalations import EscalationManager
from cto_orchestrator.service.models import (
    Analysis,
    ConcurrencyMode,
    DomainTag,
    GateSpec,
    Plan,
    ReviewDecision,
    ReviewRequest,
    RiskLevel,
    Task,
    TaskInvocation,
    Verdict,
    Wave,
    WorkerOutput,
)
from cto_orchestrator.service.planner import DelegationPlanner
from cto_orchestrator.service.progress import ProgressTracker
from cto_orchestrator.service.registry import DelegationConfig, load_delegation_config

WorkerStep = Union[WorkerOutput, Exception]
ReviewStep = Union[ReviewDecision, Verdict, Exception]


class ScriptedWorkerClient:
    """
    In-memory WorkerClient driven by per-worker scripts.

    Each script is a list consumed front to back; its last entry repeats.
    Unscripted workers succeed and unscripted reviewers approve.
    """

    def __init__(
        self,
        workers: Optional[Dict[str, List[WorkerStep]]] = None,
        reviewers: Optional[Dict[str, List[ReviewStep]]] = None,
        delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.workers = {name: list(steps) for name, steps in (workers or {}).items()}
        self.reviewers = {name: list(steps) for name, steps in (reviewers or {}).items()}
        self.delays = delays or {}
        self.invocations: List[TaskInvocation] = []
        self.reviews: List[ReviewRequest] = []

    @staticmethod
    def _next(script: List) -> object:
        return script.pop(0) if len(script) > 1 else script[0]

    async def invoke(self, invocation: TaskInvocation) -> WorkerOutput:
        self.invocations.append(invocation)
        delay = self.delays.get(invocation.worker)
        if delay:
            await anyio.sleep(delay)

        script = self.workers.get(invocation.worker)
        step = self._next(script) if script else None
        if step is None:
            return WorkerOutput(
                status="success", output=f"{invocation.worker}:{invocation.task_id}"
            )
        if isinstance(step, Exception):
            raise step
        return step

    async def review(self, request: ReviewRequest) -> Verdict:
        self.reviews.append(request)
        delay = self.delays.get(request.reviewer)
        if delay:
            await anyio.sleep(delay)

        script = self.reviewers.get(request.reviewer)
        step = self._next(script) if script else ReviewDecision.APPROVE
        if isinstance(step, Exception):
            raise step
        if isinstance(step, Verdict):
            return step
        return Verdict(reviewer=request.reviewer, decision=step, notes=f"{step.value} by {request.reviewer}")

    def invoked_workers(self) -> List[str]:
        return [invocation.worker for invocation in self.invocations]


def make_plan(
    waves: Sequence[Sequence[str]],
    mode: ConcurrencyMode = ConcurrencyMode.PARALLEL,
    gate: Optional[GateSpec] = None,
    chain_waves: bool = True,
) -> Plan:
    """Build a hand-written plan: one list of worker names per wave."""
    built: List[Wave] = []
    previous: frozenset = frozenset()
    for index, workers in enumerate(waves):
        tasks = [
            Task(
                id=f"w{index + 1}-t{n}",
                assigned_worker=worker,
                description=f"task for {worker}",
                depends_on=previous if chain_waves else frozenset(),
            )
            for n, worker in enumerate(workers, start=1)
        ]
        built.append(
            Wave(
                index=index,
                name=f"wave-{index + 1}",
                tasks=tasks,
                concurrency_mode=mode,
                required_gate=gate,
            )
        )
        previous = frozenset(task.id for task in tasks)

    return Plan(
        request_fingerprint="test",
        analysis=Analysis(
            domains=frozenset({DomainTag.BACKEND}),
            complexity_score=0.5,
            risk_level=RiskLevel.MEDIUM,
        ),
        waves=built,
    )


@pytest.fixture
def delegation() -> DelegationConfig:
    """Packaged delegation tables, freshly loaded."""
    return load_delegation_config()


@pytest.fixture
def analyzer(delegation: DelegationConfig) -> RequestAnalyzer:
    return RequestAnalyzer(delegation)


@pytest.fixture
def planner(delegation: DelegationConfig) -> DelegationPlanner:
    return DelegationPlanner(delegation)


@pytest.fixture
def settings() -> OrchestratorConfig:
    """Fast settings: short timeouts and no retry backoff."""
    return OrchestratorConfig(
        worker_timeout_seconds=1.0,
        reviewer_timeout_seconds=1.0,
        task_max_retries=1,
        retry_backoff_seconds=0.0,
        max_tracked_plans=50,
    )


@pytest.fixture
def tracker() -> ProgressTracker:
    return ProgressTracker(max_plans=50)


@pytest.fixture
def escalations() -> EscalationManager:
    return EscalationManager()


@pytest.fixture
def scripted_client() -> ScriptedWorkerClient:
    return ScriptedWorkerClient()


@pytest.fixture
def client_factory() -> type:
    """The scripted client class, for tests that need custom scripts."""
    return ScriptedWorkerClient


@pytest.fixture
def plan_factory():
    """Builder for hand-written plans."""
    return make_plan

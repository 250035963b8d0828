"""
Orchestration executor for delegation plans.

Walks a Plan wave by wave:

    not_started -> running(i) -> gate_check(i) -> running(i+1) ... -> delivered | aborted

Handles task dispatch per concurrency mode, worker retries with exponential
backoff, the gate revision loop, escalation of critical rejections and
cooperative cancellation.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import anyio

from .errors import CriticalRejection, GateRejected, TaskFailed, WorkerInvocationError
from .models import (
    AbortCause,
    ConcurrencyMode,
    FailureKind,
    GateOutcome,
    Plan,
    PlanResult,
    PlanState,
    RiskLevel,
    Task,
    TaskInvocation,
    TaskResult,
    TaskStatus,
    Wave,
    WaveResult,
    WorkerOutput,
)
from .progress import ProgressTracker
from .quality_gate import QualityGateEnforcer
from .workers import WorkerClient

logger = logging.getLogger(__name__)

# (plan_id, wave, target, reason, priority) -> None
EscalationCallback = Callable[[str, Wave, str, str, RiskLevel], Awaitable[None]]


def idempotency_key(plan_id: str, task_id: str, revision: int) -> str:
    return f"{plan_id}:{task_id}:r{revision}"


class _PlanRun:
    """Mutable execution state for one plan. Owned by a single execute() call."""

    def __init__(self, plan: Plan, plan_id: str) -> None:
        self.plan = plan
        self.plan_id = plan_id
        self.started_at = datetime.utcnow()
        self.history: List[WaveResult] = []
        self.current: Optional[WaveResult] = None
        self.outputs: Dict[str, Any] = {}
        self.completed: Set[str] = set()


class OrchestrationExecutor:
    """
    Executes delegation plans against external workers.

    Responsibilities:
    - Dispatch ready tasks sequentially or in parallel per wave
    - Retry failed worker invocations with exponential backoff
    - Run quality gates and the bounded revision loop
    - Record every transition in the progress tracker
    """

    def __init__(
        self,
        client: WorkerClient,
        gate: QualityGateEnforcer,
        tracker: ProgressTracker,
        worker_timeout: float = 300.0,
        max_retries: int = 1,
        retry_backoff: float = 1.0,
        on_escalate: Optional[EscalationCallback] = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            client: Worker invocation client
            gate: Quality gate enforcer used between waves
            tracker: Progress tracker receiving state updates
            worker_timeout: Timeout for a single worker call in seconds
            max_retries: Retries after a failed worker call
            retry_backoff: Base delay for exponential backoff in seconds
            on_escalate: Called when a gate failure must be escalated
        """
        self.client = client
        self.gate = gate
        self.tracker = tracker
        self.worker_timeout = worker_timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.on_escalate = on_escalate

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _invoke(self, invocation: TaskInvocation) -> WorkerOutput:
        """Run one worker call under the timeout; any failure is a WorkerInvocationError."""
        try:
            with anyio.fail_after(self.worker_timeout):
                output = await self.client.invoke(invocation)
        except TimeoutError:
            raise WorkerInvocationError(
                invocation.worker,
                invocation.task_id,
                f"timed out after {self.worker_timeout}s",
            )
        except WorkerInvocationError:
            raise
        except Exception as e:
            raise WorkerInvocationError(invocation.worker, invocation.task_id, str(e)) from e

        if not output.succeeded:
            raise WorkerInvocationError(
                invocation.worker,
                invocation.task_id,
                output.error or f"worker reported status '{output.status}'",
            )
        return output

    def _describe(self, task: Task, feedback: List[str], revision: int) -> str:
        if not feedback:
            return task.description
        lines = "\n".join(f"- {line}" for line in feedback)
        return f"{task.description}\n\nReviewer feedback (revision {revision}):\n{lines}"

    async def _run_task(
        self,
        run: _PlanRun,
        wave: Wave,
        task: Task,
        result: TaskResult,
        feedback: List[str],
    ) -> None:
        """
        Run a task to a terminal status, recording it in ``result``.

        Never raises except on cancellation; failures end as ``failed``.
        """
        description = self._describe(task, feedback, result.revision)
        attempts_allowed = self.max_retries + 1

        result.status = TaskStatus.RUNNING
        result.started_at = datetime.utcnow()
        await self.tracker.set_task_status(run.plan_id, task.id, TaskStatus.RUNNING)

        for attempt in range(1, attempts_allowed + 1):
            result.attempts = attempt
            invocation = TaskInvocation(
                plan_id=run.plan_id,
                task_id=task.id,
                worker=task.assigned_worker,
                description=description,
                attempt=attempt,
                revision=result.revision,
                idempotency_key=idempotency_key(run.plan_id, task.id, result.revision),
                context={
                    "wave": wave.name,
                    "wave_index": wave.index,
                    "upstream": {dep: run.outputs.get(dep) for dep in sorted(task.depends_on)},
                },
            )
            try:
                output = await self._invoke(invocation)
            except WorkerInvocationError as e:
                result.error = e.message
                if attempt < attempts_allowed:
                    delay = self.retry_backoff * (2.0 ** (attempt - 1))
                    logger.warning(
                        f"Task '{task.id}' attempt {attempt} failed: {e.message}. "
                        f"Retrying in {delay}s..."
                    )
                    await anyio.sleep(delay)
                    continue
                logger.error(f"Task '{task.id}' failed after {attempt} attempt(s): {e.message}")
                result.status = TaskStatus.FAILED
                result.completed_at = datetime.utcnow()
                await self.tracker.set_task_status(
                    run.plan_id, task.id, TaskStatus.FAILED, message=e.message
                )
                return

            result.output = output.output
            result.error = None
            result.status = TaskStatus.SUCCEEDED
            result.completed_at = datetime.utcnow()
            run.outputs[task.id] = output.output
            await self.tracker.set_task_status(run.plan_id, task.id, TaskStatus.SUCCEEDED)
            logger.info(f"Task '{task.id}' ({task.assigned_worker}) succeeded")
            return

    # ------------------------------------------------------------------
    # Waves
    # ------------------------------------------------------------------

    def _raise_for_failure(self, tasks: List[Task], results: Dict[str, TaskResult]) -> None:
        for task in tasks:
            result = results[task.id]
            if result.status == TaskStatus.FAILED:
                raise TaskFailed(
                    task.id,
                    f"{task.assigned_worker} failed after {result.attempts} attempt(s): "
                    f"{result.error}",
                )

    async def _run_wave(
        self, run: _PlanRun, wave: Wave, wave_result: WaveResult, feedback: List[str]
    ) -> None:
        """
        Run every task of a wave once.

        Raises:
            TaskFailed: If a task exhausts its retries
        """
        results = {
            task.id: TaskResult(task_id=task.id, worker=task.assigned_worker, revision=wave_result.revisions)
            for task in wave.tasks
        }
        wave_result.task_results = list(results.values())
        done: Set[str] = set(run.completed)

        if wave.concurrency_mode == ConcurrencyMode.SEQUENTIAL:
            for task in wave.tasks:
                if not task.is_ready(frozenset(done)):
                    raise TaskFailed(task.id, "dependencies not satisfied")
                await self._run_task(run, wave, task, results[task.id], feedback)
                self._raise_for_failure([task], results)
                done.add(task.id)
            return

        pending = list(wave.tasks)
        while pending:
            ready = [task for task in pending if task.is_ready(frozenset(done))]
            if not ready:
                raise TaskFailed(pending[0].id, "dependencies not satisfied")

            async with anyio.create_task_group() as tg:
                for task in ready:
                    tg.start_soon(self._run_task, run, wave, task, results[task.id], feedback)

            self._raise_for_failure(ready, results)
            done.update(task.id for task in ready)
            pending = [task for task in pending if task.id not in done]

    async def _run_gated_wave(self, run: _PlanRun, wave: Wave) -> WaveResult:
        """
        Run a wave and its quality gate, revising until approved or out of budget.

        Raises:
            TaskFailed: If a task exhausts its retries
            CriticalRejection: If critical-risk work is rejected
            GateRejected: If the gate's revision budget is exhausted
        """
        wave_result = WaveResult(index=wave.index, name=wave.name, status=TaskStatus.RUNNING)
        run.current = wave_result
        run.history.append(wave_result)
        feedback: List[str] = []
        gate = wave.required_gate

        while True:
            wave_result.status = TaskStatus.RUNNING
            await self.tracker.set_state(
                run.plan_id,
                PlanState.RUNNING,
                wave.index,
                wave.name,
                message=f"running wave {wave.index} ({wave.name}), revision {wave_result.revisions}",
            )
            logger.info(
                f"Plan '{run.plan_id}': running wave {wave.index + 1}/{len(run.plan.waves)} "
                f"'{wave.name}' ({wave.concurrency_mode.value}, revision {wave_result.revisions})"
            )

            try:
                await self._run_wave(run, wave, wave_result, feedback)
            except TaskFailed:
                wave_result.status = TaskStatus.FAILED
                raise

            if gate is None:
                break

            await self.tracker.set_state(run.plan_id, PlanState.GATE_CHECK, wave.index, wave.name)
            verdict = await self.gate.review(
                wave_result.task_results,
                gate,
                plan_id=run.plan_id,
                wave_index=wave.index,
                context={"wave": wave.name, "revision": wave_result.revisions},
            )
            wave_result.gate_verdicts.append(verdict)
            for result in wave_result.task_results:
                result.review_verdicts = list(verdict.verdicts)
            await self.tracker.add_event(
                run.plan_id, "gate", f"{verdict.outcome.value}: {verdict.reason}", wave.index
            )

            if verdict.approved:
                break

            for result in wave_result.task_results:
                result.status = TaskStatus.REJECTED
                await self.tracker.set_task_status(
                    run.plan_id, result.task_id, TaskStatus.REJECTED, message=verdict.reason
                )
            wave_result.status = TaskStatus.REJECTED

            if verdict.outcome == GateOutcome.CRITICAL_REJECTION:
                raise CriticalRejection(wave.index, verdict.reason)
            if wave_result.revisions >= gate.max_retries:
                raise GateRejected(wave.index, verdict.reason)

            wave_result.revisions += 1
            feedback = verdict.feedback_lines() or [verdict.reason]
            logger.warning(
                f"Wave '{wave.name}' not approved ({verdict.outcome.value}); "
                f"revision {wave_result.revisions}/{gate.max_retries}"
            )

        wave_result.status = TaskStatus.SUCCEEDED
        run.completed.update(task.id for task in wave.tasks)
        return wave_result

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def _escalate(
        self, run: _PlanRun, wave: Wave, reason: str, priority: RiskLevel
    ) -> Optional[str]:
        gate = wave.required_gate
        target = (gate.escalate_to if gate else None) or "human"
        if self.on_escalate is None:
            logger.warning(f"Plan '{run.plan_id}' needs escalation to '{target}' but no handler is set")
            return None
        try:
            await self.on_escalate(run.plan_id, wave, target, reason, priority)
        except Exception as e:
            logger.error(f"Escalation handler failed for plan '{run.plan_id}': {e}")
            return None
        return target

    async def _finish(
        self,
        run: _PlanRun,
        state: PlanState,
        abort: Optional[AbortCause] = None,
    ) -> PlanResult:
        outputs: Dict[str, Any] = {}
        if state == PlanState.DELIVERED and run.history:
            outputs = run.history[-1].outputs()

        result = PlanResult(
            plan_id=run.plan_id,
            state=state,
            outputs=outputs,
            waves=[wave.model_copy(deep=True) for wave in run.history],
            abort=abort,
            started_at=run.started_at,
            completed_at=datetime.utcnow(),
        )
        await self.tracker.record_result(run.plan_id, result)

        if state == PlanState.DELIVERED:
            logger.info(f"Plan '{run.plan_id}' delivered after {len(run.history)} wave(s)")
        else:
            logger.error(
                f"Plan '{run.plan_id}' aborted ({abort.kind.value if abort else 'unknown'}): "
                f"{abort.reason if abort else ''}"
            )
        return result

    async def _cancel(self, run: _PlanRun) -> None:
        """Mark in-flight work cancelled and record the aborted result."""
        wave = run.current
        if wave is not None:
            for result in wave.task_results:
                if result.status in (TaskStatus.RUNNING, TaskStatus.PENDING):
                    result.status = TaskStatus.CANCELLED
                    result.completed_at = datetime.utcnow()
                    await self.tracker.set_task_status(
                        run.plan_id, result.task_id, TaskStatus.CANCELLED
                    )
            wave.status = TaskStatus.CANCELLED
        await self._finish(
            run,
            PlanState.ABORTED,
            AbortCause(
                kind=FailureKind.CANCELLED,
                reason="plan cancelled",
                wave_index=wave.index if wave else None,
                wave_name=wave.name if wave else None,
            ),
        )

    async def execute(self, plan: Plan, plan_id: str) -> PlanResult:
        """
        Execute a plan to a terminal state.

        Args:
            plan: Plan to execute
            plan_id: Identifier used for tracking, idempotency keys and escalations

        Returns:
            Terminal plan result, delivered or aborted with its first fatal cause

        Raises:
            The backend's cancellation exception, after recording an aborted
            result, if the caller cancels execution.
        """
        if plan_id not in self.tracker:
            await self.tracker.register(plan_id, plan)

        run = _PlanRun(plan, plan_id)
        logger.info(f"Starting plan '{plan_id}' with {len(plan.waves)} wave(s)")

        try:
            for wave in plan.waves:
                try:
                    await self._run_gated_wave(run, wave)
                except TaskFailed as e:
                    return await self._finish(
                        run,
                        PlanState.ABORTED,
                        AbortCause(
                            kind=FailureKind.TASK_FAILED,
                            reason=str(e),
                            wave_index=wave.index,
                            wave_name=wave.name,
                            task_id=e.task_id,
                        ),
                    )
                except CriticalRejection as e:
                    escalated_to = await self._escalate(run, wave, e.reason, RiskLevel.CRITICAL)
                    return await self._finish(
                        run,
                        PlanState.ABORTED,
                        AbortCause(
                            kind=FailureKind.CRITICAL_REJECTION,
                            reason=e.reason,
                            wave_index=wave.index,
                            wave_name=wave.name,
                            escalated_to=escalated_to,
                        ),
                    )
                except GateRejected as e:
                    escalated_to = None
                    if wave.required_gate and wave.required_gate.escalate_to:
                        escalated_to = await self._escalate(
                            run, wave, e.reason, wave.required_gate.risk_level
                        )
                    return await self._finish(
                        run,
                        PlanState.ABORTED,
                        AbortCause(
                            kind=FailureKind.GATE_REJECTED,
                            reason=e.reason,
                            wave_index=wave.index,
                            wave_name=wave.name,
                            escalated_to=escalated_to,
                        ),
                    )

            run.current = None
            return await self._finish(run, PlanState.DELIVERED)

        except anyio.get_cancelled_exc_class():
            logger.warning(f"Plan '{plan_id}' cancelled")
            with anyio.CancelScope(shield=True):
                await self._cancel(run)
            raise

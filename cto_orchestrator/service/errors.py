"""
Exception hierarchy for the delegation engine.

Task-level errors are recovered locally by the executor up to the retry
bound; wave-level errors end up as an aborted PlanResult rather than
propagating to the caller.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base exception for delegation engine errors."""

    pass


class RegistryConfigError(OrchestratorError):
    """Raised when the delegation configuration is invalid."""

    pass


class UnknownWorkerError(OrchestratorError):
    """Raised when a request names a worker that is not in the registry."""

    def __init__(self, worker_name: str) -> None:
        super().__init__(f"Unknown worker: '{worker_name}'")
        self.worker_name = worker_name


class PlanningError(OrchestratorError):
    """Raised when no plan can be built for an analysis."""

    pass


class WorkerInvocationError(OrchestratorError):
    """Raised when a single worker invocation fails or times out."""

    def __init__(self, worker: str, task_id: str, message: str) -> None:
        super().__init__(f"Worker '{worker}' failed on task '{task_id}': {message}")
        self.worker = worker
        self.task_id = task_id
        self.message = message


class TaskFailed(OrchestratorError):
    """Raised when a task exhausts its retry budget."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Task '{task_id}' failed: {reason}")
        self.task_id = task_id
        self.reason = reason


class GateRejected(OrchestratorError):
    """Raised when a wave's quality gate rejects it after all revisions."""

    def __init__(self, wave_index: int, reason: str) -> None:
        super().__init__(f"Quality gate rejected wave {wave_index}: {reason}")
        self.wave_index = wave_index
        self.reason = reason


class CriticalRejection(GateRejected):
    """Raised when a reviewer rejects critical-risk work. Never retried."""

    pass


class PlanAborted(OrchestratorError):
    """Raised when a plan stops before delivery."""

    def __init__(self, plan_id: str, reason: str, wave_index: Optional[int] = None) -> None:
        super().__init__(f"Plan '{plan_id}' aborted: {reason}")
        self.plan_id = plan_id
        self.reason = reason
        self.wave_index = wave_index


class PlanNotFoundError(OrchestratorError):
    """Raised when a plan handle is not known to the tracker."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan '{plan_id}' not found")
        self.plan_id = plan_id


class EscalationNotFoundError(OrchestratorError):
    """Raised when an escalation id is not known."""

    def __init__(self, escalation_id: str) -> None:
        super().__init__(f"Escalation '{escalation_id}' not found")
        self.escalation_id = escalation_id


class EscalationStateError(OrchestratorError):
    """Raised when an escalation transition is not allowed from its current state."""

    pass

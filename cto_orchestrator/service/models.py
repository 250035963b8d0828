"""
Pydantic models for the CTO Orchestrator service.

Defines the data structures flowing through the delegation pipeline
(request -> analysis -> candidates -> plan -> results) and the API contracts.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import PlanAborted


# ============================================================================
# Enums
# ============================================================================


class DomainTag(str, Enum):
    """Domain labels shared by requests and worker capability profiles."""

    ARCHITECTURE = "architecture"
    SECURITY = "security"
    AUTHENTICATION = "authentication"
    PAYMENTS = "payments"
    COMPLIANCE = "compliance"
    FRONTEND = "frontend"
    BACKEND = "backend"
    GOLANG = "golang"
    PERFORMANCE = "performance"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    AI = "ai"
    WORKFLOW = "workflow"
    EXPERIMENTATION = "experimentation"
    CODE_QUALITY = "code_quality"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    """Coarse risk classification driving quality gate strictness."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @classmethod
    def highest(cls, *levels: "RiskLevel") -> "RiskLevel":
        """Return the most severe of the given levels."""
        return max(levels, key=lambda level: level.rank)


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class ConcurrencyMode(str, Enum):
    """How tasks within a wave are dispatched."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ApprovalRule(str, Enum):
    """How reviewer verdicts combine into a gate decision."""

    ANY_ONE = "any_one"
    ALL = "all"
    MAJORITY = "majority"


class TaskStatus(str, Enum):
    """Execution status of a task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ReviewDecision(str, Enum):
    """Decision returned by a single reviewer."""

    APPROVE = "approve"
    CHANGES_REQUESTED = "changes_requested"
    REJECT = "reject"


class GateOutcome(str, Enum):
    """Aggregated result of a quality gate."""

    APPROVED = "approved"
    REVISE = "revise"
    REJECTED = "rejected"
    CRITICAL_REJECTION = "critical_rejection"


class PlanState(str, Enum):
    """Executor state machine for a plan."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    GATE_CHECK = "gate_check"
    DELIVERED = "delivered"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (PlanState.DELIVERED, PlanState.ABORTED)


class FailureKind(str, Enum):
    """Cause classification carried by an aborted plan."""

    TASK_FAILED = "task_failed"
    GATE_REJECTED = "gate_rejected"
    CRITICAL_REJECTION = "critical_rejection"
    CANCELLED = "cancelled"


# ============================================================================
# Request & Analysis Models
# ============================================================================


class WorkRequest(BaseModel):
    """A unit of work submitted by a caller. Immutable once submitted."""

    model_config = ConfigDict(frozen=True)

    description: str = Field(..., description="Free-form description of the desired work")
    worker_override: Optional[str] = Field(
        default=None, description="Explicit worker to use instead of routing"
    )
    requirements: Optional[Dict[str, Any]] = Field(
        default=None, description="Attached structured requirements document"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("worker_override")
    @classmethod
    def normalize_override(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank overrides as absent."""
        if v is None:
            return None
        v = v.strip().lower()
        return v or None


class Analysis(BaseModel):
    """Structured classification of a WorkRequest."""

    model_config = ConfigDict(frozen=True)

    domains: FrozenSet[DomainTag] = Field(..., min_length=1)
    complexity_score: float = Field(..., ge=0.0, le=1.0)
    risk_level: RiskLevel
    explicit_worker: Optional[str] = Field(
        default=None, description="Worker requested explicitly by the caller"
    )
    defaulted: bool = Field(
        default=False, description="True when safe defaults replaced the analysis"
    )

    def sorted_domains(self) -> List[DomainTag]:
        return sorted(self.domains, key=lambda d: d.value)


# ============================================================================
# Capability Models
# ============================================================================


class Worker(BaseModel):
    """Capability profile of a specialist worker."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    description: str = Field(default="")
    domain_weights: Dict[DomainTag, float] = Field(default_factory=dict)
    roles: FrozenSet[str] = Field(default_factory=frozenset)

    @field_validator("domain_weights")
    @classmethod
    def validate_weights(cls, v: Dict[DomainTag, float]) -> Dict[DomainTag, float]:
        """Domain weights must lie in [0, 1]."""
        for tag, weight in v.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"weight for '{tag.value}' must be within [0, 1], got {weight}")
        return v

    def weight_for(self, tag: DomainTag) -> float:
        return self.domain_weights.get(tag, 0.0)


class Candidate(BaseModel):
    """A worker scored against an analysis."""

    model_config = ConfigDict(frozen=True)

    worker: Worker
    confidence: float = Field(..., ge=0.0, le=1.0)

    @property
    def name(self) -> str:
        return self.worker.name


# ============================================================================
# Plan Models
# ============================================================================


class GateSpec(BaseModel):
    """Review requirements a wave must satisfy before the plan proceeds."""

    model_config = ConfigDict(frozen=True)

    reviewers: List[str] = Field(..., min_length=1, description="Reviewer worker names")
    approval_rule: ApprovalRule = Field(default=ApprovalRule.ALL)
    max_retries: int = Field(default=2, ge=0, le=10, description="Revision budget")
    risk_level: RiskLevel = Field(default=RiskLevel.MEDIUM)
    escalate_to: Optional[str] = Field(
        default=None, description="Escalation target when the gate fails terminally"
    )


class Task(BaseModel):
    """A unit of work assigned to one worker."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Deterministic task identifier (w<wave>-t<n>)")
    assigned_worker: str
    description: str
    depends_on: FrozenSet[str] = Field(default_factory=frozenset)

    def is_ready(self, succeeded: FrozenSet[str]) -> bool:
        """Check whether every dependency has succeeded."""
        return self.depends_on <= succeeded


class Wave(BaseModel):
    """An ordered stage of a plan sharing a concurrency mode and one gate."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    name: str
    tasks: List[Task] = Field(..., min_length=1)
    concurrency_mode: ConcurrencyMode = Field(default=ConcurrencyMode.PARALLEL)
    required_gate: Optional[GateSpec] = Field(default=None)


class Plan(BaseModel):
    """
    An immutable execution plan.

    Plans are pure functions of (Analysis, Registry): building a plan twice
    for the same request yields equal Plan objects.
    """

    model_config = ConfigDict(frozen=True)

    request_fingerprint: str = Field(..., description="SHA256 of the originating request")
    analysis: Analysis
    waves: List[Wave] = Field(..., min_length=1)

    @property
    def tasks(self) -> List[Task]:
        return [task for wave in self.waves for task in wave.tasks]

    def summary(self) -> Dict[str, Any]:
        """Compact description used in logs and API responses."""
        return {
            "waves": [
                {
                    "name": wave.name,
                    "mode": wave.concurrency_mode.value,
                    "workers": [task.assigned_worker for task in wave.tasks],
                    "gate": wave.required_gate.reviewers if wave.required_gate else None,
                }
                for wave in self.waves
            ],
            "complexity": self.analysis.complexity_score,
            "risk": self.analysis.risk_level.value,
        }


# ============================================================================
# Worker & Reviewer Contracts
# ============================================================================


class TaskInvocation(BaseModel):
    """Payload sent to a worker for one task attempt."""

    plan_id: str
    task_id: str
    worker: str
    description: str
    attempt: int = Field(default=1, ge=1)
    revision: int = Field(default=0, ge=0)
    idempotency_key: str
    context: Dict[str, Any] = Field(default_factory=dict)


# Worker statuses counted as success; the Subagent Manager reports "completed".
SUCCESS_STATUSES = frozenset({"success", "completed"})


class WorkerOutput(BaseModel):
    """Structured response from a worker."""

    status: str = Field(..., description="Execution status (completed, success, failed, timeout)")
    output: Any = Field(default=None)
    error: Optional[str] = Field(default=None)

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES


class ReviewRequest(BaseModel):
    """Payload sent to a reviewer for a completed wave."""

    plan_id: str
    wave_index: int
    reviewer: str
    outputs: Dict[str, Any] = Field(default_factory=dict, description="task_id -> output")
    risk_level: RiskLevel
    context: Dict[str, Any] = Field(default_factory=dict)


class Verdict(BaseModel):
    """A single reviewer's decision."""

    reviewer: str
    decision: ReviewDecision
    notes: str = Field(default="")
    feedback: List[str] = Field(default_factory=list, description="Structured change requests")


class GateVerdict(BaseModel):
    """Aggregated decision of a quality gate."""

    outcome: GateOutcome
    verdicts: List[Verdict] = Field(default_factory=list)
    reason: str = Field(default="")

    @property
    def approved(self) -> bool:
        return self.outcome == GateOutcome.APPROVED

    def feedback_lines(self) -> List[str]:
        """Flatten non-approving verdicts into revision feedback."""
        lines: List[str] = []
        for verdict in self.verdicts:
            if verdict.decision == ReviewDecision.APPROVE:
                continue
            if verdict.notes:
                lines.append(f"{verdict.reviewer}: {verdict.notes}")
            lines.extend(f"{verdict.reviewer}: {item}" for item in verdict.feedback)
        return lines


# ============================================================================
# Execution Records
# ============================================================================


class TaskResult(BaseModel):
    """Execution record for a task. Written only by the executor and gate."""

    task_id: str
    worker: str
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    output: Any = Field(default=None)
    error: Optional[str] = Field(default=None)
    attempts: int = Field(default=0, ge=0)
    revision: int = Field(default=0, ge=0)
    review_verdicts: List[Verdict] = Field(default_factory=list)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)


class WaveResult(BaseModel):
    """Execution record for a wave, including its gate history."""

    index: int
    name: str
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    task_results: List[TaskResult] = Field(default_factory=list)
    gate_verdicts: List[GateVerdict] = Field(default_factory=list)
    revisions: int = Field(default=0, ge=0)

    def outputs(self) -> Dict[str, Any]:
        return {
            result.task_id: result.output
            for result in self.task_results
            if result.status == TaskStatus.SUCCEEDED
        }


class AbortCause(BaseModel):
    """The first fatal cause that stopped a plan."""

    kind: FailureKind
    reason: str
    wave_index: Optional[int] = Field(default=None)
    wave_name: Optional[str] = Field(default=None)
    task_id: Optional[str] = Field(default=None)
    escalated_to: Optional[str] = Field(default=None)


class PlanResult(BaseModel):
    """Terminal result of a plan execution."""

    plan_id: str
    state: PlanState
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Outputs of the final wave (task_id -> output)"
    )
    waves: List[WaveResult] = Field(default_factory=list, description="Full wave history")
    abort: Optional[AbortCause] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def delivered(self) -> bool:
        return self.state == PlanState.DELIVERED

    def raise_for_status(self) -> "PlanResult":
        """Raise PlanAborted if the plan did not deliver."""
        if self.state == PlanState.ABORTED:
            reason = self.abort.reason if self.abort else "unknown cause"
            wave_index = self.abort.wave_index if self.abort else None
            raise PlanAborted(self.plan_id, reason, wave_index)
        return self


# ============================================================================
# Progress Models
# ============================================================================


class ProgressEvent(BaseModel):
    """Timestamped entry in a plan's progress log."""

    timestamp: datetime = Field(default_factory=datetime.utcnow)
    kind: str = Field(..., description="Event type (state, task, gate, result)")
    message: str = Field(default="")
    wave_index: Optional[int] = Field(default=None)
    task_id: Optional[str] = Field(default=None)


class PlanRecord(BaseModel):
    """Tracker-owned progress record for one plan."""

    plan_id: str
    plan: Plan
    state: PlanState = Field(default=PlanState.NOT_STARTED)
    wave: Optional[int] = Field(default=None)
    wave_name: Optional[str] = Field(default=None)
    task_states: Dict[str, TaskStatus] = Field(default_factory=dict)
    events: List[ProgressEvent] = Field(default_factory=list)
    result: Optional[PlanResult] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================================
# API Request/Response Models
# ============================================================================


class PlanHandle(BaseModel):
    """Opaque reference returned by submit()."""

    plan_id: str
    submitted_at: datetime = Field(default_factory=datetime.utcnow)


class SubmitResponse(BaseModel):
    """Response from plan submission."""

    handle: PlanHandle
    analysis: Analysis
    plan: Dict[str, Any] = Field(..., description="Plan summary")


class AnalyzeResponse(BaseModel):
    """Dry-run response: analysis, ranked candidates and the plan they produce."""

    analysis: Analysis
    candidates: List[Candidate]
    plan: Plan


class PlanStatusResponse(BaseModel):
    """Progress snapshot for a plan."""

    plan_id: str
    state: PlanState
    wave: Optional[int] = Field(default=None, description="Index of the current wave")
    wave_name: Optional[str] = Field(default=None)
    task_states: Dict[str, TaskStatus] = Field(default_factory=dict)
    updated_at: Optional[datetime] = Field(default=None)


class PlanResultResponse(BaseModel):
    """Result lookup: pending, or the terminal PlanResult."""

    plan_id: str
    state: PlanState
    pending: bool
    result: Optional[PlanResult] = Field(default=None)


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status (healthy, degraded, unhealthy)")
    version: str = Field(..., description="Service version")
    dependencies: Dict[str, str] = Field(..., description="Status of dependent services")
    uptime_seconds: float = Field(..., ge=0.0, description="Service uptime")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional details")
    request_id: Optional[str] = Field(default=None, description="Request ID for tracing")

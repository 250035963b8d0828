"""
CTO Orchestrator: multi-agent delegation and orchestration engine.

This module provides the delegation service responsible for:
- Request analysis (domains, complexity, risk)
- Confidence scoring of specialist workers
- Staged planning for complex work
- Wave execution with retries and cancellation
- Mandatory quality gates and escalation

Workers and reviewers are external collaborators reached through a
WorkerClient; the engine never defines what they produce.
"""

__version__ = "1.0.0"
__author__ = "Agentic Framework Team"

from .service.config import OrchestratorConfig, config
from .service.engine import DelegationEngine
from .service.models import (
    Analysis,
    Candidate,
    DomainTag,
    GateSpec,
    Plan,
    PlanHandle,
    PlanResult,
    PlanState,
    RiskLevel,
    TaskStatus,
    Wave,
    Worker,
    WorkRequest,
)
from .service.registry import CapabilityRegistry, DelegationConfig, get_delegation_config

__all__ = [
    "OrchestratorConfig",
    "config",
    "DelegationEngine",
    "Analysis",
    "Candidate",
    "DomainTag",
    "GateSpec",
    "Plan",
    "PlanHandle",
    "PlanResult",
    "PlanState",
    "RiskLevel",
    "TaskStatus",
    "Wave",
    "Worker",
    "WorkRequest",
    "CapabilityRegistry",
    "DelegationConfig",
    "get_delegation_config",
]

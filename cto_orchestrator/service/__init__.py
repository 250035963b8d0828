"""
CTO Orchestrator service implementation.

Contains the FastAPI application, the delegation engine, and all service logic.
"""

from .analyzer import RequestAnalyzer
from .config import OrchestratorConfig, config
from .engine import DelegationEngine
from .executor import OrchestrationExecutor
from .main import app
from .models import (
    AnalyzeResponse,
    PlanResultResponse,
    PlanStatusResponse,
    SubmitResponse,
    WorkRequest,
)
from .planner import DelegationPlanner
from .progress import ProgressTracker
from .quality_gate import QualityGateEnforcer
from .workers import HttpWorkerClient, WorkerClient

__all__ = [
    "app",
    "config",
    "OrchestratorConfig",
    "DelegationEngine",
    "RequestAnalyzer",
    "DelegationPlanner",
    "OrchestrationExecutor",
    "QualityGateEnforcer",
    "ProgressTracker",
    "HttpWorkerClient",
    "WorkerClient",
    "AnalyzeResponse",
    "PlanResultResponse",
    "PlanStatusResponse",
    "SubmitResponse",
    "WorkRequest",
]

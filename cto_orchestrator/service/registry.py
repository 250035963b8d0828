"""
Capability registry and delegation tables.

The delegation tables (worker roster, trigger patterns, risk sets, gate table
and staging template) are static configuration. They are loaded once from
YAML, validated with pydantic and shared read-only by the analyzer, scorer
and planner.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, model_validator

from .config import config
from .errors import RegistryConfigError, UnknownWorkerError
from .models import ApprovalRule, ConcurrencyMode, DomainTag, RiskLevel, Worker

logger = logging.getLogger(__name__)

DEFAULT_DELEGATION_PATH = Path(__file__).resolve().parent.parent / "config" / "delegation.yaml"


class CapabilityRegistry:
    """
    Immutable roster of specialist workers.

    Iteration, ``names()`` and role lookups all follow worker name order so
    that every consumer sees the same deterministic ordering.
    """

    def __init__(self, workers: Iterable[Worker]) -> None:
        ordered = sorted(workers, key=lambda w: w.name)
        by_name: Dict[str, Worker] = {}
        for worker in ordered:
            if worker.name in by_name:
                raise RegistryConfigError(f"Duplicate worker name: '{worker.name}'")
            by_name[worker.name] = worker
        self._workers = MappingProxyType(by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._workers

    def __iter__(self) -> Iterator[Worker]:
        return iter(self._workers.values())

    def __len__(self) -> int:
        return len(self._workers)

    def get(self, name: str) -> Worker:
        """
        Look up a worker by name.

        Raises:
            UnknownWorkerError: If no worker has that name
        """
        try:
            return self._workers[name]
        except KeyError:
            raise UnknownWorkerError(name) from None

    def names(self) -> List[str]:
        return list(self._workers)

    def with_role(self, role: str) -> List[Worker]:
        return [worker for worker in self._workers.values() if role in worker.roles]

    def first_with_role(self, role: str) -> Optional[Worker]:
        matches = self.with_role(role)
        return matches[0] if matches else None


# ============================================================================
# Delegation Tables
# ============================================================================


class RiskTables(BaseModel):
    """Domain sets used for risk classification."""

    model_config = ConfigDict(frozen=True)

    sensitive_domains: FrozenSet[DomainTag] = Field(default_factory=frozenset)
    critical_domains: FrozenSet[DomainTag] = Field(default_factory=frozenset)
    low_risk_domains: FrozenSet[DomainTag] = Field(default_factory=frozenset)


class ComplexityWeights(BaseModel):
    """Contributions of each signal to the complexity score."""

    model_config = ConfigDict(frozen=True)

    per_domain: float = Field(default=0.15, ge=0.0, le=1.0)
    domain_cap: float = Field(default=0.6, ge=0.0, le=1.0)
    scope_bonus: float = Field(default=0.3, ge=0.0, le=1.0)
    requirements_bonus: float = Field(default=0.25, ge=0.0, le=1.0)
    override_cap: float = Field(default=0.3, ge=0.0, le=1.0)
    default_score: float = Field(default=0.5, ge=0.0, le=1.0)


class Thresholds(BaseModel):
    """Complexity cutoffs and candidate selection limits for planning."""

    model_config = ConfigDict(frozen=True)

    simple_below: float = Field(default=0.3, ge=0.0, le=1.0)
    complex_from: float = Field(default=0.7, ge=0.0, le=1.0)
    support_window: float = Field(default=0.2, ge=0.0, le=1.0)
    max_tasks_per_wave: int = Field(default=4, ge=1)
    min_confidence: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Floor for staging a candidate in complex plans"
    )


class GateLevel(BaseModel):
    """Gate template for one risk level."""

    model_config = ConfigDict(frozen=True)

    reviewer_roles: List[str] = Field(..., min_length=1)
    approval_rule: ApprovalRule = Field(default=ApprovalRule.ALL)
    max_retries: int = Field(default=2, ge=0, le=10)
    escalate_to: Optional[str] = Field(default=None)


class StageTemplate(BaseModel):
    """One stage of the complex-plan template."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    roles: FrozenSet[str] = Field(default_factory=frozenset)
    concurrency: ConcurrencyMode = Field(default=ConcurrencyMode.PARALLEL)
    gate_floor: RiskLevel = Field(default=RiskLevel.LOW)
    fallback_worker: Optional[str] = Field(default=None)
    catch_all: bool = Field(default=False)

    def matches(self, worker: Worker) -> bool:
        return bool(self.roles & worker.roles)


class DelegationConfig(BaseModel):
    """Validated delegation tables. Read-only after load."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(default="1.0.0")
    workers: List[Worker] = Field(..., min_length=1)
    triggers: Dict[DomainTag, List[str]] = Field(default_factory=dict)
    scope_patterns: List[str] = Field(default_factory=list)
    override_patterns: List[str] = Field(default_factory=list)
    risk: RiskTables = Field(default_factory=RiskTables)
    complexity: ComplexityWeights = Field(default_factory=ComplexityWeights)
    thresholds: Thresholds = Field(default_factory=Thresholds)
    gates: Dict[RiskLevel, Optional[GateLevel]] = Field(default_factory=dict)
    domain_reviewer_roles: Dict[DomainTag, List[str]] = Field(default_factory=dict)
    stages: List[StageTemplate] = Field(..., min_length=1)

    _registry: Optional[CapabilityRegistry] = PrivateAttr(default=None)

    @model_validator(mode="after")
    def validate_tables(self) -> "DelegationConfig":
        """Cross-check the tables against the roster."""
        names = [worker.name for worker in self.workers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate worker names: {duplicates}")

        roles = set()
        for worker in self.workers:
            roles.update(worker.roles)

        for level, gate in self.gates.items():
            if gate is None:
                continue
            missing = [role for role in gate.reviewer_roles if role not in roles]
            if missing:
                raise ValueError(f"gate '{level.value}' references unstaffed roles {missing}")

        for tag, extra_roles in self.domain_reviewer_roles.items():
            missing = [role for role in extra_roles if role not in roles]
            if missing:
                raise ValueError(f"domain '{tag.value}' references unstaffed roles {missing}")

        stage_names = [stage.name for stage in self.stages]
        if len(set(stage_names)) != len(stage_names):
            raise ValueError(f"duplicate stage names: {stage_names}")
        for stage in self.stages:
            if stage.fallback_worker and stage.fallback_worker not in names:
                raise ValueError(
                    f"stage '{stage.name}' fallback worker '{stage.fallback_worker}' "
                    f"is not in the roster"
                )

        patterns = [p for group in self.triggers.values() for p in group]
        for pattern in patterns + self.scope_patterns + self.override_patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid pattern {pattern!r}: {e}")
        for pattern in self.override_patterns:
            if re.compile(pattern).groups < 1:
                raise ValueError(f"override pattern {pattern!r} must capture the worker name")

        if self.thresholds.simple_below > self.thresholds.complex_from:
            raise ValueError("thresholds.simple_below must not exceed thresholds.complex_from")

        return self

    @property
    def registry(self) -> CapabilityRegistry:
        if self._registry is None:
            self._registry = CapabilityRegistry(self.workers)
        return self._registry

    def gate_level(self, risk: RiskLevel) -> Optional[GateLevel]:
        return self.gates.get(risk)

    def catch_all_stage(self) -> Optional[StageTemplate]:
        for stage in self.stages:
            if stage.catch_all:
                return stage
        return None


def load_delegation_config(path: Optional[Union[str, Path]] = None) -> DelegationConfig:
    """
    Load delegation tables from a YAML file.

    Args:
        path: YAML file to load (the packaged default when omitted)

    Returns:
        Validated delegation configuration

    Raises:
        RegistryConfigError: If the file is missing or invalid
    """
    config_path = Path(path) if path else DEFAULT_DELEGATION_PATH
    if not config_path.exists():
        raise RegistryConfigError(f"Delegation config not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise RegistryConfigError(f"Invalid YAML in delegation config: {e}")

    return parse_delegation_config(data, source=str(config_path))


def parse_delegation_config(data: object, source: str = "<memory>") -> DelegationConfig:
    """Validate already-parsed delegation tables."""
    if not isinstance(data, dict):
        raise RegistryConfigError(f"Delegation config {source} must be a mapping")

    try:
        delegation = DelegationConfig(**data)
    except ValidationError as e:
        raise RegistryConfigError(f"Invalid delegation config {source}: {e}")

    logger.info(
        f"Loaded delegation config v{delegation.version} from {source}: "
        f"{len(delegation.workers)} workers, {len(delegation.stages)} stages"
    )
    return delegation


@lru_cache(maxsize=1)
def get_delegation_config() -> DelegationConfig:
    """Return the process-wide delegation tables, loading them on first use."""
    return load_delegation_config(config.delegation_config_path)

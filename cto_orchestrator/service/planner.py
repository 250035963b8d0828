"""
Delegation planner.

Builds an immutable Plan from an Analysis and its ranked candidates. The
complexity score picks one of three shapes:

- simple: one wave, one task for the top candidate
- moderate: one wave with the top candidate and its close supporters
- complex: a multi-wave plan following the configured staging template

Planning is a pure function of its inputs and the delegation tables, so the
same request always produces an equal Plan.
"""

import hashlib
import json
import logging
from typing import Dict, FrozenSet, List, Optional, Sequence

from .errors import PlanningError
from .models import (
    Analysis,
    Candidate,
    ConcurrencyMode,
    DomainTag,
    GateSpec,
    Plan,
    RiskLevel,
    Task,
    Wave,
    WorkRequest,
)
from .registry import DelegationConfig, StageTemplate

logger = logging.getLogger(__name__)

# Float slack for confidence ties and the support window.
_EPSILON = 1e-9


def task_id(wave_number: int, task_number: int) -> str:
    return f"w{wave_number}-t{task_number}"


def _tied(a: Candidate, b: Candidate) -> bool:
    return abs(a.confidence - b.confidence) <= _EPSILON


def _mode_for(rounds: Sequence[Sequence[Candidate]]) -> ConcurrencyMode:
    """Sequential only when every round holds a single task."""
    if len(rounds) > 1 and all(len(group) == 1 for group in rounds):
        return ConcurrencyMode.SEQUENTIAL
    return ConcurrencyMode.PARALLEL


class DelegationPlanner:
    """Turns analyses and ranked candidates into execution plans."""

    def __init__(self, delegation: DelegationConfig) -> None:
        self.delegation = delegation
        self.registry = delegation.registry

    def _compute_hash(self, data: object) -> str:
        """
        Compute SHA256 hash of data for request fingerprinting.

        Args:
            data: JSON-serializable data

        Returns:
            Hex digest of SHA256 hash
        """
        content = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(content).hexdigest()

    def fingerprint(self, analysis: Analysis, request: Optional[WorkRequest]) -> str:
        if request is not None:
            return self._compute_hash(request.model_dump(mode="json"))
        return self._compute_hash(analysis.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def build_gate(self, level: RiskLevel, domains: Sequence[DomainTag]) -> Optional[GateSpec]:
        """
        Build the quality gate for a risk level.

        Args:
            level: Effective risk level of the wave
            domains: Request domains, used for domain-specific reviewers

        Returns:
            GateSpec, or None when the level needs no review
        """
        template = self.delegation.gate_level(level)
        if template is None:
            return None

        roles = list(template.reviewer_roles)
        if level.rank >= RiskLevel.HIGH.rank:
            for tag in sorted(domains, key=lambda d: d.value):
                for role in self.delegation.domain_reviewer_roles.get(tag, []):
                    if role not in roles:
                        roles.append(role)

        reviewers: List[str] = []
        for role in roles:
            worker = self.registry.first_with_role(role)
            if worker is None:
                raise PlanningError(f"No reviewer holds role '{role}'")
            if worker.name not in reviewers:
                reviewers.append(worker.name)

        return GateSpec(
            reviewers=reviewers,
            approval_rule=template.approval_rule,
            max_retries=template.max_retries,
            risk_level=level,
            escalate_to=template.escalate_to,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def stage_for(self, candidate: Candidate) -> Optional[StageTemplate]:
        """First stage whose role filter matches, else the catch-all stage."""
        for stage in self.delegation.stages:
            if stage.matches(candidate.worker):
                return stage
        return self.delegation.catch_all_stage()

    def _stage_position(self, candidate: Candidate) -> int:
        stage = self.stage_for(candidate)
        if stage is None:
            return len(self.delegation.stages)
        return self.delegation.stages.index(stage)

    # ------------------------------------------------------------------
    # Plan shapes
    # ------------------------------------------------------------------

    def _single_task_waves(self, analysis: Analysis, top: Candidate, description: str) -> List[Wave]:
        task = Task(id=task_id(1, 1), assigned_worker=top.name, description=description)
        return [
            Wave(
                index=0,
                name="direct",
                tasks=[task],
                concurrency_mode=ConcurrencyMode.SEQUENTIAL,
                required_gate=self.build_gate(analysis.risk_level, analysis.sorted_domains()),
            )
        ]

    def select_supporters(self, candidates: Sequence[Candidate]) -> List[Candidate]:
        """
        Pick the top candidate plus those within the support window.

        At most ``max_tasks_per_wave`` are taken, extended to every candidate
        tied with the last one admitted.
        """
        thresholds = self.delegation.thresholds
        top = candidates[0].confidence
        window = [
            c for c in candidates if top - c.confidence <= thresholds.support_window + _EPSILON
        ]
        selected = list(window[: thresholds.max_tasks_per_wave])
        for extra in window[thresholds.max_tasks_per_wave :]:
            if not _tied(extra, selected[-1]):
                break
            selected.append(extra)
        return selected

    def _stage_rounds(self, selected: Sequence[Candidate]) -> List[List[Candidate]]:
        """
        Group a moderate wave's candidates into rounds, one per stage.

        A candidate tied with one from an earlier stage joins that earlier
        round.
        """
        positions: Dict[str, int] = {}
        for candidate in selected:
            positions[candidate.name] = min(
                self._stage_position(other) for other in selected if _tied(other, candidate)
            )
        return [
            [c for c in selected if positions[c.name] == position]
            for position in sorted(set(positions.values()))
        ]

    def _chain_rounds(
        self,
        rounds: Sequence[Sequence[Candidate]],
        wave_number: int,
        description: str,
        previous: FrozenSet[str] = frozenset(),
    ) -> List[Task]:
        """Tasks for successive rounds; each round depends on the one before it."""
        tasks: List[Task] = []
        upstream = previous
        for group in rounds:
            ids = []
            for candidate in group:
                task = Task(
                    id=task_id(wave_number, len(tasks) + 1),
                    assigned_worker=candidate.name,
                    description=description,
                    depends_on=upstream,
                )
                tasks.append(task)
                ids.append(task.id)
            upstream = previous | frozenset(ids)
        return tasks

    def _moderate_waves(
        self, analysis: Analysis, candidates: Sequence[Candidate], description: str
    ) -> List[Wave]:
        selected = self.select_supporters(candidates)
        rounds = self._stage_rounds(selected)
        tasks = self._chain_rounds(rounds, 1, description)
        gate = self.build_gate(analysis.risk_level, analysis.sorted_domains())
        return [
            Wave(
                index=0,
                name="delegation",
                tasks=tasks,
                concurrency_mode=_mode_for(rounds),
                required_gate=gate,
            )
        ]

    def _complex_waves(
        self, analysis: Analysis, candidates: Sequence[Candidate], description: str
    ) -> List[Wave]:
        stages = self.delegation.stages
        limit = self.delegation.thresholds.max_tasks_per_wave
        floor = self.delegation.thresholds.min_confidence
        buckets: Dict[str, List[Candidate]] = {stage.name: [] for stage in stages}

        for candidate in candidates:
            if candidate.confidence < floor and candidate is not candidates[0]:
                continue
            stage = self.stage_for(candidate)
            if stage is None:
                logger.debug(f"Worker '{candidate.name}' matches no stage; skipped")
                continue
            bucket = buckets[stage.name]
            if len(bucket) < limit or _tied(candidate, bucket[-1]):
                bucket.append(candidate)

        staffed = sum(1 for bucket in buckets.values() if bucket)
        assigned = {c.name for bucket in buckets.values() for c in bucket}
        for stage in stages:
            if staffed >= 2:
                break
            if buckets[stage.name] or not stage.fallback_worker:
                continue
            if stage.fallback_worker in assigned:
                continue
            fallback = self.registry.get(stage.fallback_worker)
            buckets[stage.name].append(Candidate(worker=fallback, confidence=0.0))
            assigned.add(fallback.name)
            staffed += 1
            logger.info(f"Stage '{stage.name}' staffed by fallback worker '{fallback.name}'")

        if staffed < 2:
            raise PlanningError("Complex request could not be staffed across two stages")

        waves: List[Wave] = []
        previous: FrozenSet[str] = frozenset()
        for stage in stages:
            bucket = buckets[stage.name]
            if not bucket:
                continue
            if stage.concurrency == ConcurrencyMode.SEQUENTIAL:
                rounds: List[List[Candidate]] = []
                for candidate in bucket:
                    if rounds and _tied(candidate, rounds[-1][-1]):
                        rounds[-1].append(candidate)
                    else:
                        rounds.append([candidate])
                mode = stage.concurrency
                if any(len(group) > 1 for group in rounds):
                    mode = ConcurrencyMode.PARALLEL
            else:
                rounds = [bucket]
                mode = stage.concurrency

            tasks = self._chain_rounds(
                rounds, len(waves) + 1, f"[{stage.name}] {description}", previous
            )
            level = RiskLevel.highest(analysis.risk_level, stage.gate_floor)
            waves.append(
                Wave(
                    index=len(waves),
                    name=stage.name,
                    tasks=tasks,
                    concurrency_mode=mode,
                    required_gate=self.build_gate(level, analysis.sorted_domains()),
                )
            )
            previous = frozenset(task.id for task in tasks)
        return waves

    def plan(
        self,
        analysis: Analysis,
        candidates: Sequence[Candidate],
        request: Optional[WorkRequest] = None,
    ) -> Plan:
        """
        Build an execution plan.

        Args:
            analysis: Request analysis
            candidates: Ranked candidates from the scorer
            request: Originating request, used for task descriptions and the
                plan fingerprint

        Returns:
            Immutable plan

        Raises:
            PlanningError: If there are no candidates or the plan cannot be staffed
        """
        if not candidates:
            raise PlanningError(
                f"No worker covers domains {[d.value for d in analysis.sorted_domains()]}"
            )

        description = request.description if request is not None else ""
        if not description.strip():
            description = "Handle " + ", ".join(d.value for d in analysis.sorted_domains()) + " work"

        thresholds = self.delegation.thresholds
        if analysis.explicit_worker or analysis.complexity_score < thresholds.simple_below:
            waves = self._single_task_waves(analysis, candidates[0], description)
        elif analysis.complexity_score < thresholds.complex_from:
            waves = self._moderate_waves(analysis, candidates, description)
        else:
            waves = self._complex_waves(analysis, candidates, description)

        plan = Plan(
            request_fingerprint=self.fingerprint(analysis, request),
            analysis=analysis,
            waves=waves,
        )
        logger.info(
            f"Planned {len(plan.waves)} wave(s), {len(plan.tasks)} task(s): "
            + " -> ".join(
                f"{w.name}({','.join(t.assigned_worker for t in w.tasks)})" for w in plan.waves
            )
        )
        return plan

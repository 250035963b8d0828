"""
Quality gate enforcement.

Reviewers for a wave are dispatched concurrently and their verdicts combined
under the gate's approval rule. A reviewer that errors or times out counts
as requesting changes; it never counts as an approval.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import anyio

from .models import (
    ApprovalRule,
    GateOutcome,
    GateSpec,
    GateVerdict,
    ReviewDecision,
    ReviewRequest,
    RiskLevel,
    TaskResult,
    Verdict,
)
from .workers import WorkerClient

logger = logging.getLogger(__name__)


def aggregate(gate: GateSpec, verdicts: Sequence[Verdict]) -> GateVerdict:
    """
    Combine reviewer verdicts into a gate decision.

    A reject at critical risk is terminal whatever the approval rule. A gate
    that fails its rule is ``revise`` when any reviewer asked for changes and
    ``rejected`` otherwise; both are revisable within the gate's budget.
    """
    approvals = sum(1 for v in verdicts if v.decision == ReviewDecision.APPROVE)
    rejects = [v for v in verdicts if v.decision == ReviewDecision.REJECT]
    changes = [v for v in verdicts if v.decision == ReviewDecision.CHANGES_REQUESTED]
    verdicts = list(verdicts)

    if rejects and gate.risk_level == RiskLevel.CRITICAL:
        names = ", ".join(v.reviewer for v in rejects)
        return GateVerdict(
            outcome=GateOutcome.CRITICAL_REJECTION,
            verdicts=verdicts,
            reason=f"Critical-risk work rejected by {names}: "
            + "; ".join(v.notes for v in rejects if v.notes),
        )

    if gate.approval_rule == ApprovalRule.ANY_ONE:
        passed = approvals >= 1
    elif gate.approval_rule == ApprovalRule.ALL:
        passed = approvals == len(gate.reviewers) and len(verdicts) == len(gate.reviewers)
    else:
        passed = approvals > len(rejects) + len(changes)

    if passed:
        return GateVerdict(
            outcome=GateOutcome.APPROVED,
            verdicts=verdicts,
            reason=f"{approvals}/{len(gate.reviewers)} reviewer(s) approved",
        )

    dissent = changes + rejects
    reason = "; ".join(
        f"{v.reviewer} {v.decision.value}" + (f" ({v.notes})" if v.notes else "") for v in dissent
    ) or f"{approvals}/{len(gate.reviewers)} approvals do not satisfy rule '{gate.approval_rule.value}'"
    outcome = GateOutcome.REVISE if changes else GateOutcome.REJECTED
    return GateVerdict(outcome=outcome, verdicts=verdicts, reason=reason)


class QualityGateEnforcer:
    """Runs a wave's reviewers and applies its gate rules."""

    def __init__(self, client: WorkerClient, reviewer_timeout: float = 120.0) -> None:
        self.client = client
        self.reviewer_timeout = reviewer_timeout

    async def _ask(self, request: ReviewRequest) -> Verdict:
        """Get one reviewer's verdict; failures become change requests."""
        try:
            with anyio.fail_after(self.reviewer_timeout):
                verdict = await self.client.review(request)
        except TimeoutError:
            logger.warning(
                f"Reviewer '{request.reviewer}' timed out after {self.reviewer_timeout}s "
                f"on wave {request.wave_index}"
            )
            return Verdict(
                reviewer=request.reviewer,
                decision=ReviewDecision.CHANGES_REQUESTED,
                notes=f"review timed out after {self.reviewer_timeout}s",
            )
        except Exception as e:
            logger.warning(f"Reviewer '{request.reviewer}' failed on wave {request.wave_index}: {e}")
            return Verdict(
                reviewer=request.reviewer,
                decision=ReviewDecision.CHANGES_REQUESTED,
                notes=f"review failed: {e}",
            )

        if verdict.reviewer != request.reviewer:
            verdict = verdict.model_copy(update={"reviewer": request.reviewer})
        return verdict

    async def review(
        self,
        task_results: Sequence[TaskResult],
        gate: GateSpec,
        plan_id: str = "",
        wave_index: int = 0,
        context: Optional[Dict[str, Any]] = None,
    ) -> GateVerdict:
        """
        Review a completed wave.

        Args:
            task_results: Results of the wave's tasks
            gate: GateSpec for the wave
            plan_id: Plan the wave belongs to
            wave_index: Index of the wave under review
            context: Extra context passed to every reviewer

        Returns:
            Aggregated gate verdict
        """
        outputs = {result.task_id: result.output for result in task_results}
        short_circuit = (
            gate.approval_rule == ApprovalRule.ANY_ONE and gate.risk_level != RiskLevel.CRITICAL
        )
        collected: Dict[str, Verdict] = {}

        logger.info(
            f"Quality gate for plan '{plan_id}' wave {wave_index}: "
            f"reviewers={gate.reviewers}, rule={gate.approval_rule.value}, "
            f"risk={gate.risk_level.value}"
        )

        async with anyio.create_task_group() as tg:

            async def run_reviewer(reviewer: str) -> None:
                request = ReviewRequest(
                    plan_id=plan_id,
                    wave_index=wave_index,
                    reviewer=reviewer,
                    outputs=outputs,
                    risk_level=gate.risk_level,
                    context=dict(context or {}),
                )
                verdict = await self._ask(request)
                collected[reviewer] = verdict
                if short_circuit and verdict.decision == ReviewDecision.APPROVE:
                    logger.info(f"Reviewer '{reviewer}' approved; skipping remaining reviews")
                    tg.cancel_scope.cancel()

            for reviewer in gate.reviewers:
                tg.start_soon(run_reviewer, reviewer)

        verdicts: List[Verdict] = [collected[r] for r in gate.reviewers if r in collected]
        result = aggregate(gate, verdicts)

        if result.approved:
            logger.info(f"Wave {wave_index} of plan '{plan_id}' approved: {result.reason}")
        else:
            logger.warning(
                f"Wave {wave_index} of plan '{plan_id}' not approved "
                f"({result.outcome.value}): {result.reason}"
            )
        return result

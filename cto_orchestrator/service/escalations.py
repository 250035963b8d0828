"""
Escalations for terminal gate failures.

Critical-risk gates name an escalation target. When such a gate rejects work
the plan aborts and an escalation is opened here so that a human (or another
system) can acknowledge and resolve it.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum
from uuid import uuid4
from pydantic import BaseModel, Field
import logging

from .errors import EscalationNotFoundError, EscalationStateError
from .models import RiskLevel

logger = logging.getLogger(__name__)


class EscalationStatus(str, Enum):
    """Escalation lifecycle status."""

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class Escalation(BaseModel):
    """Model for an escalation raised by a failed quality gate."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    plan_id: str
    wave_index: Optional[int] = None
    wave_name: Optional[str] = None
    target: str = Field(default="human", description="Who the escalation is addressed to")
    reason: str
    priority: RiskLevel = RiskLevel.HIGH
    status: EscalationStatus = EscalationStatus.OPEN
    created_at: datetime = Field(default_factory=datetime.utcnow)
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    # Reviewer verdicts and other diagnostics for whoever picks it up
    context: Dict[str, Any] = Field(default_factory=dict)


class EscalationActionRequest(BaseModel):
    """Body for acknowledge/resolve calls."""

    actor: str = Field(..., min_length=1)
    resolution: Optional[str] = None


class EscalationManager:
    """
    Keeps open and historical escalations.

    Open escalations are listed most severe first, then oldest first.
    """

    def __init__(self, max_history: int = 10000) -> None:
        self.open_escalations: Dict[str, Escalation] = {}
        self.history: List[Escalation] = []
        self.max_history = max_history

    async def create_escalation(
        self,
        plan_id: str,
        reason: str,
        target: str = "human",
        priority: RiskLevel = RiskLevel.HIGH,
        wave_index: Optional[int] = None,
        wave_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Escalation:
        """
        Open a new escalation.

        Args:
            plan_id: Plan that was aborted
            reason: Why the plan could not proceed
            target: Escalation target named by the gate
            priority: Severity used for ordering
            wave_index: Wave whose gate failed
            wave_name: Name of that wave
            context: Additional diagnostics

        Returns:
            Created escalation
        """
        escalation = Escalation(
            plan_id=plan_id,
            reason=reason,
            target=target,
            priority=priority,
            wave_index=wave_index,
            wave_name=wave_name,
            context=context or {},
        )
        self.open_escalations[escalation.id] = escalation

        logger.warning(
            f"Opened escalation {escalation.id} to '{target}' for plan {plan_id} "
            f"(priority: {priority.value}): {reason}"
        )
        return escalation

    async def get_escalation(self, escalation_id: str) -> Escalation:
        """
        Get an escalation by ID.

        Raises:
            EscalationNotFoundError: If the ID is unknown
        """
        if escalation_id in self.open_escalations:
            return self.open_escalations[escalation_id]

        for escalation in self.history:
            if escalation.id == escalation_id:
                return escalation

        raise EscalationNotFoundError(escalation_id)

    async def list_escalations(
        self,
        plan_id: Optional[str] = None,
        include_resolved: bool = False,
    ) -> List[Escalation]:
        """
        List escalations.

        Args:
            plan_id: Filter by plan ID
            include_resolved: Include resolved escalations from history

        Returns:
            Escalations ordered by priority (critical first) then creation time
        """
        escalations = list(self.open_escalations.values())
        if include_resolved:
            escalations.extend(self.history)

        if plan_id:
            escalations = [e for e in escalations if e.plan_id == plan_id]

        escalations.sort(key=lambda e: (-e.priority.rank, e.created_at))
        return escalations

    async def acknowledge(self, escalation_id: str, actor: str) -> Escalation:
        """
        Acknowledge an open escalation.

        Raises:
            EscalationNotFoundError: If the ID is unknown
            EscalationStateError: If the escalation is not open
        """
        escalation = await self.get_escalation(escalation_id)
        if escalation.status != EscalationStatus.OPEN:
            raise EscalationStateError(
                f"Escalation {escalation_id} already {escalation.status.value}"
            )

        escalation.status = EscalationStatus.ACKNOWLEDGED
        escalation.acknowledged_by = actor
        escalation.acknowledged_at = datetime.utcnow()

        logger.info(f"Escalation {escalation_id} acknowledged by {actor}")
        return escalation

    async def resolve(
        self, escalation_id: str, actor: str, resolution: Optional[str] = None
    ) -> Escalation:
        """
        Resolve an escalation and move it to history.

        Raises:
            EscalationNotFoundError: If the ID is unknown
            EscalationStateError: If the escalation is already resolved
        """
        escalation = await self.get_escalation(escalation_id)
        if escalation.status == EscalationStatus.RESOLVED:
            raise EscalationStateError(f"Escalation {escalation_id} already resolved")

        escalation.status = EscalationStatus.RESOLVED
        escalation.resolved_by = actor
        escalation.resolved_at = datetime.utcnow()
        escalation.resolution = resolution
        self._move_to_history(escalation_id)

        logger.info(f"Escalation {escalation_id} resolved by {actor}: {resolution or 'no notes'}")
        return escalation

    def _move_to_history(self, escalation_id: str) -> None:
        """Move an escalation from open to history."""
        if escalation_id in self.open_escalations:
            escalation = self.open_escalations.pop(escalation_id)
            self.history.append(escalation)

            # Limit history size
            if len(self.history) > self.max_history:
                self.history = self.history[-(self.max_history // 2):]


# Global escalation manager instance
escalation_manager = EscalationManager()

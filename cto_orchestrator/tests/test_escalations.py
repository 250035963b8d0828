"""
Tests for escalations raised by failed quality gates.

Module: cto_orchestrator/tests/test_escalations.py
"""

import pytest

from cto_orchestrator.service.errors import EscalationNotFoundError, EscalationStateError
from cto_orchestrator.service.escalations import EscalationManager, EscalationStatus
from cto_orchestrator.service.models import RiskLevel


class TestEscalationManager:
    """Test suite for EscalationManager."""

    @pytest.mark.asyncio
    async def test_create_escalation(self, escalations: EscalationManager) -> None:
        """Test opening an escalation."""
        escalation = await escalations.create_escalation(
            plan_id="plan-123",
            reason="security-auditor rejected the payment flow",
            target="human",
            priority=RiskLevel.CRITICAL,
            wave_index=0,
            wave_name="delegation",
            context={"reviewers": ["security-auditor"]},
        )

        assert escalation.id is not None
        assert escalation.plan_id == "plan-123"
        assert escalation.status == EscalationStatus.OPEN
        assert escalation.priority == RiskLevel.CRITICAL
        assert escalation.wave_name == "delegation"
        assert escalation.context["reviewers"] == ["security-auditor"]

    @pytest.mark.asyncio
    async def test_get_escalation(self, escalations: EscalationManager) -> None:
        created = await escalations.create_escalation(plan_id="plan-123", reason="rejected")

        retrieved = await escalations.get_escalation(created.id)

        assert retrieved.id == created.id
        assert retrieved.target == "human"

    @pytest.mark.asyncio
    async def test_get_nonexistent_escalation(self, escalations: EscalationManager) -> None:
        with pytest.raises(EscalationNotFoundError):
            await escalations.get_escalation("nonexistent-id")

    @pytest.mark.asyncio
    async def test_list_orders_by_priority(self, escalations: EscalationManager) -> None:
        """Test that critical escalations are listed first."""
        high = await escalations.create_escalation(
            plan_id="plan-1", reason="gate exhausted", priority=RiskLevel.HIGH
        )
        critical = await escalations.create_escalation(
            plan_id="plan-2", reason="critical reject", priority=RiskLevel.CRITICAL
        )

        listed = await escalations.list_escalations()

        assert [e.id for e in listed] == [critical.id, high.id]

    @pytest.mark.asyncio
    async def test_list_filters_by_plan(self, escalations: EscalationManager) -> None:
        await escalations.create_escalation(plan_id="plan-1", reason="a")
        await escalations.create_escalation(plan_id="plan-2", reason="b")

        listed = await escalations.list_escalations(plan_id="plan-2")

        assert [e.plan_id for e in listed] == ["plan-2"]

    @pytest.mark.asyncio
    async def test_acknowledge(self, escalations: EscalationManager) -> None:
        created = await escalations.create_escalation(plan_id="plan-1", reason="a")

        acknowledged = await escalations.acknowledge(created.id, "oncall@example.com")

        assert acknowledged.status == EscalationStatus.ACKNOWLEDGED
        assert acknowledged.acknowledged_by == "oncall@example.com"
        assert acknowledged.acknowledged_at is not None

        with pytest.raises(EscalationStateError):
            await escalations.acknowledge(created.id, "someone-else")

    @pytest.mark.asyncio
    async def test_resolve_moves_to_history(self, escalations: EscalationManager) -> None:
        created = await escalations.create_escalation(plan_id="plan-1", reason="a")

        resolved = await escalations.resolve(created.id, "cto", resolution="payment flow redesigned")

        assert resolved.status == EscalationStatus.RESOLVED
        assert resolved.resolution == "payment flow redesigned"
        assert created.id not in escalations.open_escalations
        assert await escalations.list_escalations() == []

        history = await escalations.list_escalations(include_resolved=True)
        assert [e.id for e in history] == [created.id]
        # Resolved escalations remain retrievable.
        assert (await escalations.get_escalation(created.id)).resolved_by == "cto"

    @pytest.mark.asyncio
    async def test_resolve_twice(self, escalations: EscalationManager) -> None:
        created = await escalations.create_escalation(plan_id="plan-1", reason="a")
        await escalations.resolve(created.id, "cto")

        with pytest.raises(EscalationStateError):
            await escalations.resolve(created.id, "cto")

    @pytest.mark.asyncio
    async def test_history_limit(self) -> None:
        manager = EscalationManager(max_history=4)

        for i in range(5):
            created = await manager.create_escalation(plan_id=f"plan-{i}", reason="a")
            await manager.resolve(created.id, "cto")

        assert len(manager.history) == 2
        assert manager.history[-1].plan_id == "plan-4"

"""
Progress tracking for running plans.

The tracker is the only state written from concurrent execution paths. All
writes are serialized through one asyncio.Lock; reads return deep copies and
never wait on the lock.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from .errors import PlanNotFoundError
from .models import (
    Plan,
    PlanRecord,
    PlanResult,
    PlanState,
    PlanStatusResponse,
    ProgressEvent,
    TaskStatus,
)

logger = logging.getLogger(__name__)


class ProgressTracker:
    """
    Plan-scoped log of state, current wave and per-task status.

    Finished plans are kept up to ``max_plans``; beyond that the oldest
    terminal records are dropped first.
    """

    def __init__(self, max_plans: int = 1000) -> None:
        self.max_plans = max_plans
        self._records: Dict[str, PlanRecord] = {}
        self._lock = asyncio.Lock()

    def _record(self, plan_id: str) -> PlanRecord:
        record = self._records.get(plan_id)
        if record is None:
            raise PlanNotFoundError(plan_id)
        return record

    def _touch(self, record: PlanRecord, event: ProgressEvent) -> None:
        record.events.append(event)
        record.updated_at = event.timestamp

    def _evict(self) -> None:
        overflow = len(self._records) - self.max_plans
        if overflow <= 0:
            return
        finished = sorted(
            (r for r in self._records.values() if r.state.is_terminal),
            key=lambda r: r.updated_at,
        )
        for record in finished[:overflow]:
            del self._records[record.plan_id]
            logger.debug(f"Evicted finished plan '{record.plan_id}' from tracker")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def register(self, plan_id: str, plan: Plan) -> None:
        """Start tracking a plan with every task pending."""
        async with self._lock:
            record = PlanRecord(
                plan_id=plan_id,
                plan=plan,
                task_states={task.id: TaskStatus.PENDING for task in plan.tasks},
            )
            self._touch(record, ProgressEvent(kind="state", message="registered"))
            self._records[plan_id] = record
            self._evict()

    async def set_state(
        self,
        plan_id: str,
        state: PlanState,
        wave_index: Optional[int] = None,
        wave_name: Optional[str] = None,
        message: str = "",
    ) -> None:
        async with self._lock:
            record = self._record(plan_id)
            record.state = state
            if wave_index is not None:
                record.wave = wave_index
                record.wave_name = wave_name
            self._touch(
                record,
                ProgressEvent(kind="state", message=message or state.value, wave_index=wave_index),
            )

    async def set_task_status(
        self, plan_id: str, task_id: str, status: TaskStatus, message: str = ""
    ) -> None:
        async with self._lock:
            record = self._record(plan_id)
            record.task_states[task_id] = status
            self._touch(
                record,
                ProgressEvent(
                    kind="task",
                    message=message or status.value,
                    wave_index=record.wave,
                    task_id=task_id,
                ),
            )

    async def add_event(
        self, plan_id: str, kind: str, message: str, wave_index: Optional[int] = None
    ) -> None:
        async with self._lock:
            record = self._record(plan_id)
            self._touch(record, ProgressEvent(kind=kind, message=message, wave_index=wave_index))

    async def record_result(self, plan_id: str, result: PlanResult) -> None:
        """Store the terminal result and move the plan to its final state."""
        async with self._lock:
            record = self._record(plan_id)
            record.result = result.model_copy(deep=True)
            record.state = result.state
            self._touch(record, ProgressEvent(kind="result", message=result.state.value))
            self._evict()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._records

    def get(self, plan_id: str) -> PlanRecord:
        """Return a snapshot of a plan's record."""
        return self._record(plan_id).model_copy(deep=True)

    def status(self, plan_id: str) -> PlanStatusResponse:
        record = self._record(plan_id)
        return PlanStatusResponse(
            plan_id=plan_id,
            state=record.state,
            wave=record.wave,
            wave_name=record.wave_name,
            task_states=dict(record.task_states),
            updated_at=record.updated_at,
        )

    def result(self, plan_id: str) -> Optional[PlanResult]:
        record = self._record(plan_id)
        if record.result is None:
            return None
        return record.result.model_copy(deep=True)

    def events(self, plan_id: str) -> List[ProgressEvent]:
        return [event.model_copy() for event in self._record(plan_id).events]

    def plan_ids(self) -> List[str]:
        return list(self._records)

    def active_count(self) -> int:
        return sum(1 for r in self._records.values() if not r.state.is_terminal)

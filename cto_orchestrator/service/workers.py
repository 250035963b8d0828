"""
Worker and reviewer invocation contracts.

Workers and reviewers are external collaborators. The executor and the
quality gate only talk to them through a WorkerClient; the default client
calls the Subagent Manager service over HTTP.
"""

import logging
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from .config import config
from .errors import WorkerInvocationError
from .models import ReviewRequest, TaskInvocation, Verdict, WorkerOutput

logger = logging.getLogger(__name__)


class WorkerClient(Protocol):
    """Invocation contract for specialist workers and reviewers."""

    async def invoke(self, invocation: TaskInvocation) -> WorkerOutput:
        ...

    async def review(self, request: ReviewRequest) -> Verdict:
        ...


class HttpWorkerClient:
    """
    WorkerClient backed by the Subagent Manager HTTP API.

    Tasks are posted to ``/subagent/execute`` in the Subagent Manager's
    request shape (``subagent_id``, ``task``, ``inputs``) and reviews to
    ``/subagent/review``. Transport failures, non-2xx responses and
    malformed bodies are all raised as WorkerInvocationError.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Subagent Manager URL (from config when omitted)
            http_client: HTTP client for service calls (created if not provided)
        """
        self.base_url = (base_url or config.subagent_manager_url).rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=config.http_timeout_seconds)

    async def close(self) -> None:
        """Close HTTP client and cleanup resources."""
        await self.http_client.aclose()

    async def _post(self, path: str, payload: dict, worker: str, task_ref: str) -> dict:
        try:
            response = await self.http_client.post(f"{self.base_url}{path}", json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException:
            raise WorkerInvocationError(worker, task_ref, "request timed out")
        except httpx.HTTPStatusError as e:
            raise WorkerInvocationError(
                worker,
                task_ref,
                f"HTTP {e.response.status_code}: {e.response.text}",
            )
        except (httpx.HTTPError, ValueError) as e:
            raise WorkerInvocationError(worker, task_ref, str(e))

    async def invoke(self, invocation: TaskInvocation) -> WorkerOutput:
        """
        Execute one task attempt on a worker.

        Args:
            invocation: Task payload, including its idempotency key

        Returns:
            Worker output

        Raises:
            WorkerInvocationError: If the call fails or returns a malformed body
        """
        logger.info(
            f"Invoking worker '{invocation.worker}' for task '{invocation.task_id}' "
            f"(attempt {invocation.attempt}, revision {invocation.revision})"
        )
        payload = {
            "subagent_id": invocation.worker,
            "task": invocation.description,
            "inputs": invocation.model_dump(mode="json", exclude={"worker", "description"}),
        }
        body = await self._post(
            "/subagent/execute",
            payload,
            invocation.worker,
            invocation.task_id,
        )
        try:
            return WorkerOutput(**body)
        except (TypeError, ValidationError) as e:
            raise WorkerInvocationError(
                invocation.worker, invocation.task_id, f"malformed response: {e}"
            )

    async def review(self, request: ReviewRequest) -> Verdict:
        """
        Ask a reviewer for a verdict on a wave's outputs.

        Raises:
            WorkerInvocationError: If the call fails or returns a malformed body
        """
        task_ref = f"wave-{request.wave_index}-review"
        body = await self._post(
            "/subagent/review",
            request.model_dump(mode="json"),
            request.reviewer,
            task_ref,
        )
        try:
            body.setdefault("reviewer", request.reviewer)
            return Verdict(**body)
        except (AttributeError, TypeError, ValidationError) as e:
            raise WorkerInvocationError(request.reviewer, task_ref, f"malformed verdict: {e}")

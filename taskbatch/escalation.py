"""Escalation coordination between running tasks and the operator.

A task that needs a decision registers an EscalationRequest and waits on a
future. Only that task waits; the rest of the batch keeps running. The
operator (or a timeout policy) resolves the future exactly once.
"""

import asyncio
import logging
from collections.abc import Callable

from taskbatch import telemetry
from taskbatch.errors import EscalationPendingError, StaleEscalationResolutionError
from taskbatch.models import EscalationRequest, EscalationResponse

logger = logging.getLogger(__name__)


class EscalationCoordinator:
    """Holds at most one pending escalation per task id.

    Must be used from the event loop thread.
    """

    def __init__(self) -> None:
        self._requests: dict[str, EscalationRequest] = {}
        self._futures: dict[str, asyncio.Future[EscalationResponse]] = {}

    def open(self, request: EscalationRequest) -> asyncio.Future[EscalationResponse]:
        """Register a pending escalation and return the future to await.

        Raises:
            EscalationPendingError: If the task already has one pending
        """
        if request.task_id in self._futures:
            raise EscalationPendingError(request.task_id)

        future: asyncio.Future[EscalationResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._requests[request.task_id] = request
        self._futures[request.task_id] = future
        telemetry.record_escalation(request.task_id)
        logger.info("Task %s escalated: %s", request.task_id, request.question)
        return future

    async def raise_escalation(
        self,
        request: EscalationRequest,
        timeout: float | None = None,
        fallback: EscalationResponse | None = None,
        on_open: Callable[[EscalationRequest], None] | None = None,
    ) -> EscalationResponse:
        """Register an escalation and wait for its response.

        Args:
            request: The question to ask
            timeout: Seconds to wait before resolving with fallback;
                None waits until resolved or cancelled
            fallback: Response used on timeout (default: agent_decide)
            on_open: Called once the request is registered, before waiting

        Returns:
            The operator's response, the fallback, or skip if cancelled
        """
        future = self.open(request)
        try:
            if on_open is not None:
                on_open(request)
            if timeout is None:
                return await asyncio.shield(future)
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout)
            except asyncio.TimeoutError:
                response = fallback or EscalationResponse.agent_decide()
                logger.warning(
                    "Escalation for task %s timed out after %ss, using %s",
                    request.task_id,
                    timeout,
                    response.kind,
                )
                self._settle(request.task_id, response)
                return response
        finally:
            self.discard(request.task_id)

    def resolve(self, task_id: str, response: EscalationResponse) -> None:
        """Deliver the operator's response to the waiting task.

        Raises:
            StaleEscalationResolutionError: If nothing is pending for task_id
        """
        if not self._settle(task_id, response):
            raise StaleEscalationResolutionError(task_id)
        logger.info("Escalation for task %s resolved (%s)", task_id, response.kind)

    def cancel(self, task_id: str) -> bool:
        """Unblock a waiting task with a skip response.

        Returns:
            True if an escalation was pending
        """
        return self._settle(task_id, EscalationResponse.skip())

    def cancel_all(self) -> None:
        for task_id in list(self._futures):
            self.cancel(task_id)

    def pending(self) -> list[EscalationRequest]:
        """Unanswered escalations, oldest first."""
        return [
            self._requests[tid]
            for tid, fut in self._futures.items()
            if not fut.done()
        ]

    def get(self, task_id: str) -> EscalationRequest | None:
        future = self._futures.get(task_id)
        if future is None or future.done():
            return None
        return self._requests[task_id]

    def discard(self, task_id: str) -> None:
        self._requests.pop(task_id, None)
        self._futures.pop(task_id, None)

    def _settle(self, task_id: str, response: EscalationResponse) -> bool:
        future = self._futures.get(task_id)
        if future is None or future.done():
            return False
        future.set_result(response)
        return True

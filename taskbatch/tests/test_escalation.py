"""Tests for escalation coordination."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from taskbatch.errors import EscalationPendingError, StaleEscalationResolutionError
from taskbatch.escalation import EscalationCoordinator
from taskbatch.models import EscalationOption, EscalationRequest, EscalationResponse


def _request(task_id: str = "A") -> EscalationRequest:
    return EscalationRequest(
        task_id=task_id,
        reason="ambiguous",
        question="Which database?",
        options=[
            EscalationOption(id="pg", label="Postgres", recommended=True),
            EscalationOption(id="sqlite", label="SQLite"),
        ],
    )


class TestRaiseEscalation:
    """Tests for EscalationCoordinator.raise_escalation()."""

    @pytest.mark.asyncio
    async def test_operator_response_is_delivered(self) -> None:
        coordinator = EscalationCoordinator()
        waiter = asyncio.create_task(coordinator.raise_escalation(_request()))
        await asyncio.sleep(0)

        assert [r.task_id for r in coordinator.pending()] == ["A"]
        coordinator.resolve("A", EscalationResponse.choose("pg"))

        assert await waiter == EscalationResponse.choose("pg")
        assert coordinator.pending() == []

    @pytest.mark.asyncio
    async def test_second_resolution_is_stale(self) -> None:
        coordinator = EscalationCoordinator()
        waiter = asyncio.create_task(coordinator.raise_escalation(_request()))
        await asyncio.sleep(0)

        coordinator.resolve("A", EscalationResponse.text("use pg"))
        with pytest.raises(StaleEscalationResolutionError):
            coordinator.resolve("A", EscalationResponse.text("use sqlite"))

        assert (await waiter).value == "use pg"

    def test_resolve_without_escalation_is_stale(self) -> None:
        with pytest.raises(StaleEscalationResolutionError, match="B"):
            EscalationCoordinator().resolve("B", EscalationResponse.skip())

    @pytest.mark.asyncio
    async def test_duplicate_escalation_rejected(self) -> None:
        coordinator = EscalationCoordinator()
        waiter = asyncio.create_task(coordinator.raise_escalation(_request()))
        await asyncio.sleep(0)

        with pytest.raises(EscalationPendingError):
            await coordinator.raise_escalation(_request())

        coordinator.cancel("A")
        await waiter

    @pytest.mark.asyncio
    async def test_cancel_unblocks_with_skip(self) -> None:
        coordinator = EscalationCoordinator()
        waiter = asyncio.create_task(coordinator.raise_escalation(_request()))
        await asyncio.sleep(0)

        assert coordinator.cancel("A") is True
        assert (await waiter).kind == "skip"
        assert coordinator.cancel("A") is False

    @pytest.mark.asyncio
    async def test_cancel_all(self) -> None:
        coordinator = EscalationCoordinator()
        waiters = [
            asyncio.create_task(coordinator.raise_escalation(_request(tid)))
            for tid in ("A", "B")
        ]
        await asyncio.sleep(0)

        coordinator.cancel_all()

        results = await asyncio.gather(*waiters)
        assert [r.kind for r in results] == ["skip", "skip"]

    @pytest.mark.asyncio
    async def test_timeout_uses_agent_decide_by_default(self) -> None:
        coordinator = EscalationCoordinator()

        response = await coordinator.raise_escalation(_request(), timeout=0.01)

        assert response.kind == "agent_decide"
        assert coordinator.get("A") is None

    @pytest.mark.asyncio
    async def test_timeout_uses_fallback(self) -> None:
        coordinator = EscalationCoordinator()

        response = await coordinator.raise_escalation(
            _request(), timeout=0.01, fallback=EscalationResponse.choose("pg")
        )

        assert response == EscalationResponse.choose("pg")

    @pytest.mark.asyncio
    async def test_on_open_sees_registered_request(self) -> None:
        """The notification fires after the request can be resolved."""
        coordinator = EscalationCoordinator()
        seen = []

        def on_open(request: EscalationRequest) -> None:
            seen.append(coordinator.get(request.task_id))
            coordinator.resolve(request.task_id, EscalationResponse.agent_decide())

        response = await coordinator.raise_escalation(_request(), on_open=on_open)

        assert seen[0].question == "Which database?"
        assert response.kind == "agent_decide"

    @pytest.mark.asyncio
    async def test_escalations_are_independent(self) -> None:
        coordinator = EscalationCoordinator()
        a = asyncio.create_task(coordinator.raise_escalation(_request("A")))
        b = asyncio.create_task(coordinator.raise_escalation(_request("B")))
        await asyncio.sleep(0)

        coordinator.resolve("B", EscalationResponse.text("b answer"))
        assert (await b).value == "b answer"
        assert not a.done()

        coordinator.resolve("A", EscalationResponse.text("a answer"))
        assert (await a).value == "a answer"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_clears_slot(self) -> None:
        coordinator = EscalationCoordinator()
        waiter = asyncio.create_task(coordinator.raise_escalation(_request()))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert coordinator.pending() == []
        with pytest.raises(StaleEscalationResolutionError):
            coordinator.resolve("A", EscalationResponse.skip())

    @pytest.mark.asyncio
    async def test_records_escalation_metric(self) -> None:
        coordinator = EscalationCoordinator()
        with patch("taskbatch.escalation.telemetry") as mock_telemetry:
            mock_telemetry.record_escalation = MagicMock()
            coordinator.open(_request())

        mock_telemetry.record_escalation.assert_called_once_with("A")
        coordinator.cancel("A")

import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from bill_reconciler.errors import StorageError
from bill_reconciler.models import MatchCandidate, MatchConfidence, ReconciliationReport
from bill_reconciler.services.scheduler import ReconciliationScheduler

TODAY = date(2025, 6, 20)


def _report(user_id: str, applied: int = 0) -> ReconciliationReport:
    return ReconciliationReport(
        user_id=user_id,
        range_start=date(2025, 5, 16),
        range_end=date(2025, 6, 27),
        auto_applied=[
            MatchCandidate(
                occurrence_id=f"b{index}-2025-06-15",
                bill_id=f"b{index}",
                due_date=date(2025, 6, 15),
                transaction_id=f"t{index}",
                score=100,
                confidence=MatchConfidence.HIGH,
            )
            for index in range(applied)
        ],
    )


def _coordinator(side_effect) -> MagicMock:
    coordinator = MagicMock()
    coordinator.clock = lambda: TODAY
    coordinator.reconcile = AsyncMock(side_effect=side_effect)
    return coordinator


@pytest.mark.anyio
async def test_run_once_isolates_failing_users() -> None:
    async def reconcile(user_id, start, end, *, today):
        if user_id == "broken":
            raise StorageError("down")
        return _report(user_id, applied=2)

    coordinator = _coordinator(reconcile)
    scheduler = ReconciliationScheduler(coordinator, ["u1", "broken", "u2"], 60, 35, 7)

    summary = await scheduler.run_once()

    assert summary["failed_users"] == 1
    assert summary["auto_applied"] == 4
    assert coordinator.reconcile.await_count == 3
    coordinator.reconcile.assert_any_await("u1", date(2025, 5, 16), date(2025, 6, 27), today=TODAY)
    status = scheduler.get_status()
    assert status["stage"] == "complete"
    assert status["runs"] == 1


@pytest.mark.anyio
async def test_unexpected_error_in_one_user_does_not_stop_the_run() -> None:
    async def reconcile(user_id, start, end, *, today):
        if user_id == "broken":
            raise RuntimeError("boom")
        return _report(user_id, applied=1)

    scheduler = ReconciliationScheduler(_coordinator(reconcile), ["u1", "broken"], 60, 35, 7)

    summary = await scheduler.run_once()

    assert summary["failed_users"] == 1
    assert summary["auto_applied"] == 1


@pytest.mark.anyio
async def test_background_loop_survives_unexpected_errors() -> None:
    coordinator = _coordinator(RuntimeError("boom"))
    scheduler = ReconciliationScheduler(coordinator, ["u1"], 0.01, 35, 7)

    assert scheduler.start() is True
    await asyncio.sleep(0.1)

    assert scheduler.get_status()["active"] is True
    assert scheduler.runs >= 2
    await scheduler.stop()
    assert scheduler.get_status()["stage"] == "stopped"


def test_scheduler_without_users_or_interval_is_disabled() -> None:
    coordinator = _coordinator(None)
    assert ReconciliationScheduler(coordinator, [], 60, 35, 7).enabled is False
    assert ReconciliationScheduler(coordinator, ["u1"], 0, 35, 7).enabled is False
    assert ReconciliationScheduler(coordinator, ["u1"], 0, 35, 7).start() is False


@pytest.mark.anyio
async def test_background_loop_runs_until_stopped() -> None:
    coordinator = _coordinator(lambda user_id, start, end, *, today: _report(user_id))
    scheduler = ReconciliationScheduler(coordinator, ["u1"], 3600, 35, 7)

    assert scheduler.start() is True
    assert scheduler.start() is False
    await asyncio.sleep(0.05)
    assert scheduler.get_status()["active"] is True

    await scheduler.stop()

    assert scheduler.runs == 1
    assert scheduler.get_status()["active"] is False
    assert scheduler.get_status()["stage"] == "stopped"
    assert scheduler.request_stop() is False

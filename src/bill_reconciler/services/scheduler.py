import asyncio
import contextlib
from datetime import timedelta
from typing import Any

from bill_reconciler.domain.dates import format_duration
from bill_reconciler.errors import BillReconcilerError
from bill_reconciler.logger import get_logger
from bill_reconciler.models import ReconciliationReport
from bill_reconciler.services.reconciliation import ReconciliationCoordinator

logger = get_logger(__name__)


class ReconciliationScheduler:
    def __init__(
        self,
        coordinator: ReconciliationCoordinator,
        user_ids: list[str],
        interval_seconds: float,
        lookback_days: int,
        lookahead_days: int,
    ) -> None:
        self.coordinator = coordinator
        self.user_ids = list(user_ids)
        self.interval_seconds = interval_seconds
        self.lookback_days = lookback_days
        self.lookahead_days = lookahead_days
        self.stop_event = asyncio.Event()
        self.active = False
        self.runs = 0
        self._task: asyncio.Task[None] | None = None
        self.status: dict[str, Any] = {"stage": "idle", "active": False}

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0 and bool(self.user_ids)

    def get_status(self) -> dict[str, Any]:
        status = dict(self.status)
        status["active"] = self.active
        status["runs"] = self.runs
        status["users"] = len(self.user_ids)
        status["interval_seconds"] = self.interval_seconds
        return status

    async def _reconcile_user(self, user_id: str) -> ReconciliationReport | None:
        today = self.coordinator.clock()
        start = today - timedelta(days=self.lookback_days)
        end = today + timedelta(days=self.lookahead_days)
        try:
            return await self.coordinator.reconcile(user_id, start, end, today=today)
        except BillReconcilerError as exc:
            logger.error("[SCHEDULER] Pass for user %s failed: %s", user_id, exc)
            return None
        except Exception:
            logger.exception("[SCHEDULER] Pass for user %s failed unexpectedly.", user_id)
            return None

    async def run_once(self) -> dict[str, Any]:
        """Reconcile every configured user; one user's failure does not stop the rest."""
        self.status.clear()
        self.status.update({"stage": "running", "active": True})
        reports = await asyncio.gather(*(self._reconcile_user(user_id) for user_id in self.user_ids))
        self.runs += 1

        completed = [report for report in reports if report is not None]
        summary = {
            "stage": "complete",
            "users": len(self.user_ids),
            "failed_users": len(reports) - len(completed),
            "auto_applied": sum(len(report.auto_applied) for report in completed),
            "for_review": sum(len(report.for_review) for report in completed),
            "write_failures": sum(len(report.failed) for report in completed),
            "duration_display": format_duration(
                max((report.duration_seconds for report in completed), default=0.0)
            ),
        }
        self.status.clear()
        self.status.update(summary)
        logger.info(
            "[SCHEDULER] Run %s complete: %s auto-applied, %s for review, %s user(s) failed.",
            self.runs,
            summary["auto_applied"],
            summary["for_review"],
            summary["failed_users"],
        )
        return summary

    async def _loop(self) -> None:
        self.active = True
        try:
            while not self.stop_event.is_set():
                await self.run_once()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self.stop_event.wait(), timeout=self.interval_seconds)
        finally:
            self.active = False
            self.status["stage"] = "stopped"

    def start(self) -> bool:
        if not self.enabled or self.active or (self._task and not self._task.done()):
            return False
        self.stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "[SCHEDULER] Reconciling %d user(s) every %s s.",
            len(self.user_ids),
            self.interval_seconds,
        )
        return True

    def request_stop(self) -> bool:
        if self._task and not self._task.done():
            self.stop_event.set()
            return True
        return False

    async def stop(self) -> None:
        if self.request_stop() and self._task:
            await self._task
        self._task = None

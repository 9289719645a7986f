"""Deadline watchdog: cancels a request that stays pending too long, using APScheduler.

The coordinator enforces no timeout of its own. The watchdog subscribes to
its snapshots, arms a one-shot job when a request starts processing and
disarms it when the request leaves processing. A job that fires for an id
that is still pending calls ``cancel()``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from windify.coordinator import CoordinatorState

if TYPE_CHECKING:
    from windify.config import WatchdogConfig
    from windify.coordinator import CoordinatorSnapshot, TransformCoordinator

logger = logging.getLogger(__name__)


def build_trigger(deadline_seconds: float) -> DateTrigger:
    """One-shot trigger ``deadline_seconds`` from now."""
    run_date = datetime.now(timezone.utc) + timedelta(seconds=deadline_seconds)
    return DateTrigger(run_date=run_date)


class DeadlineWatchdog:
    """Cancels the coordinator's pending request after ``deadline_seconds``.

    Must be started from inside the running event loop.
    """

    def __init__(self, coordinator: TransformCoordinator, deadline_seconds: float) -> None:
        if deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")
        self.coordinator = coordinator
        self.deadline_seconds = deadline_seconds
        self.expired: list[str] = []

        self._scheduler = AsyncIOScheduler()
        self._armed_id: str | None = None
        self._unsubscribe = None

    @classmethod
    def from_config(
        cls, coordinator: TransformCoordinator, config: WatchdogConfig
    ) -> DeadlineWatchdog | None:
        """Return a watchdog, or None when no deadline is configured."""
        if config.deadline_seconds is None:
            return None
        return cls(coordinator, config.deadline_seconds)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        self._scheduler.start()
        self._unsubscribe = self.coordinator.subscribe(self._on_snapshot)
        # A request may already be in flight.
        self._on_snapshot(self.coordinator.get_state())
        logger.info(f"Deadline watchdog started (deadline={self.deadline_seconds}s)")

    def shutdown(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._armed_id = None
        logger.info("Deadline watchdog stopped")

    async def __aenter__(self) -> DeadlineWatchdog:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.shutdown()

    # ------------------------------------------------------------------

    def _on_snapshot(self, snapshot: CoordinatorSnapshot) -> None:
        if snapshot.state is CoordinatorState.PROCESSING and snapshot.request is not None:
            if snapshot.request.id != self._armed_id:
                self._disarm()
                self._arm(snapshot.request.id)
        else:
            self._disarm()

    def _arm(self, request_id: str) -> None:
        self._scheduler.add_job(
            self._expire,
            trigger=build_trigger(self.deadline_seconds),
            args=[request_id],
            id=_job_id(request_id),
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._armed_id = request_id
        logger.debug(f"Armed deadline for request {request_id}")

    def _disarm(self) -> None:
        if self._armed_id is None:
            return
        try:
            self._scheduler.remove_job(_job_id(self._armed_id))
        except JobLookupError:
            pass  # already fired
        self._armed_id = None

    async def _expire(self, request_id: str) -> None:
        # Coroutine job: runs on the event loop, not in an executor thread.
        if self.coordinator.pending_id != request_id:
            return
        logger.warning(
            f"Request {request_id} exceeded its {self.deadline_seconds}s deadline, cancelling"
        )
        self.expired.append(request_id)
        self._armed_id = None
        self.coordinator.cancel()


def _job_id(request_id: str) -> str:
    return f"deadline_{request_id}"

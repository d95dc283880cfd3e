"""APScheduler wrapper for periodic housekeeping while the server runs."""

from __future__ import annotations

from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..logging_conf import component_logger

CLEANUP_JOB_ID = "housekeeping::cleanup_old_jobs"


class APSchedulerAdapter:
    """Manage APScheduler jobs for the harvester's maintenance tasks."""

    def __init__(self) -> None:
        self.scheduler = BackgroundScheduler()
        self.logger = component_logger("scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_cleanup(
        self,
        callback: Callable[[], int],
        interval_minutes: float,
    ) -> None:
        """Run ``callback`` every ``interval_minutes``, replacing any earlier registration."""

        self.scheduler.add_job(
            self._guarded(callback),
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=CLEANUP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info("job_scheduled", job=CLEANUP_JOB_ID, interval_minutes=interval_minutes)

    def remove_cleanup(self) -> None:
        if self.scheduler.get_job(CLEANUP_JOB_ID) is not None:
            self.scheduler.remove_job(CLEANUP_JOB_ID)

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs

    def _guarded(self, callback: Callable[[], int]) -> Callable[[], None]:
        def run() -> None:
            try:
                removed = callback()
            except Exception as exc:  # noqa: BLE001
                self.logger.error("housekeeping_failed", error=str(exc))
                return
            self.logger.info("housekeeping_completed", removed=removed)

        return run


__all__ = ["APSchedulerAdapter", "CLEANUP_JOB_ID"]

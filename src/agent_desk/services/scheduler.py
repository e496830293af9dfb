"""APScheduler-based periodic jobs: dashboard metrics push and idle session sweep."""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from agent_desk.config import RealtimeConfig
from agent_desk.log import get_logger
from agent_desk.services.base import Service

if TYPE_CHECKING:
    from agent_desk.realtime.hub import BroadcastHub
    from agent_desk.routing.sessions import SessionService

logger = get_logger(__name__)

METRICS_JOB_ID = "push_metrics"
SWEEP_JOB_ID = "sweep_stale_sessions"


class SchedulerService(Service):
    """Background task scheduler using APScheduler."""

    def __init__(self, config: RealtimeConfig):
        self._config = config
        self._scheduler = AsyncIOScheduler(timezone=config.timezone)
        self._hub: BroadcastHub | None = None
        self._sessions: SessionService | None = None

    def set_app_context(self, hub: BroadcastHub, sessions: SessionService) -> None:
        """Inject app-level dependencies used by the periodic jobs."""
        self._hub = hub
        self._sessions = sessions
        logger.info("scheduler_app_context_set")

    @property
    def service_name(self) -> str:
        return "scheduler"

    async def start(self) -> None:
        if self._config.metrics_interval_seconds > 0:
            self.add_interval_job(
                self._config.metrics_interval_seconds, self.push_metrics, job_id=METRICS_JOB_ID
            )
        if self._config.stale_session_minutes > 0:
            # Sweeping more often than once a minute buys nothing.
            interval = max(60, self._config.stale_session_minutes * 60 // 4)
            self.add_interval_job(interval, self.sweep_stale_sessions, job_id=SWEEP_JOB_ID)
        self._scheduler.start()
        logger.info("scheduler_started", timezone=self._config.timezone)

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler runs shutdown as a loop callback; let it happen.
            await asyncio.sleep(0)
        logger.info("scheduler_stopped")

    async def health_check(self) -> bool:
        return self._scheduler.running

    def add_interval_job(
        self,
        seconds: float,
        callback: Callable[..., Coroutine[Any, Any, Any]],
        job_id: Optional[str] = None,
        **kwargs: Any,
    ) -> str:
        """Add a recurring job. Returns the job ID."""
        job_id = job_id or uuid.uuid4().hex[:12]
        self._scheduler.add_job(
            callback,
            IntervalTrigger(seconds=seconds),
            id=job_id,
            kwargs=kwargs,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info("interval_job_added", job_id=job_id, seconds=seconds)
        return job_id

    def remove_job(self, job_id: str) -> bool:
        """Remove a scheduled job. Returns True if found and removed."""
        if self._scheduler.get_job(job_id) is None:
            return False
        self._scheduler.remove_job(job_id)
        logger.info("job_removed", job_id=job_id)
        return True

    def list_jobs(self) -> list[dict[str, Any]]:
        """List all scheduled jobs."""
        jobs = []
        for job in self._scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append(
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": str(next_run) if next_run else None,
                    "trigger": str(job.trigger),
                }
            )
        return jobs

    async def push_metrics(self) -> int:
        if self._hub is None:
            logger.error("scheduler_metrics_no_context")
            return 0
        try:
            return await self._hub.push_metrics()
        except Exception as e:
            logger.error("scheduler_metrics_error", error=str(e))
            return 0

    async def sweep_stale_sessions(self) -> int:
        if self._sessions is None:
            logger.error("scheduler_sweep_no_context")
            return 0
        try:
            return await self._sessions.sweep_stale(self._config.stale_session_minutes)
        except Exception as e:
            logger.error("scheduler_sweep_error", error=str(e))
            return 0

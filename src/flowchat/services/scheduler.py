"""APScheduler-based maintenance: idle-session close, retention purge, bucket cleanup."""

from __future__ import annotations

from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from flowchat.config import SchedulerConfig
from flowchat.core.session import SessionStore
from flowchat.log import get_logger
from flowchat.services.rate_limiter import RateLimiter

logger = get_logger(__name__)

SWEEP_JOB_ID = "session_sweep"


def cron_trigger(cron_expr: str, timezone: str = "UTC") -> CronTrigger:
    """Five-field cron expression (minute hour day month day_of_week)."""
    parts = cron_expr.split()
    if len(parts) != 5:
        raise ValueError(f"Cron expression needs 5 fields, got {len(parts)}: '{cron_expr}'")
    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone,
    )


class MaintenanceScheduler:
    """Runs the session sweep on a cron schedule, off the request path."""

    def __init__(
        self,
        config: SchedulerConfig,
        sessions: SessionStore,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self._config = config
        self._sessions = sessions
        self._rate_limiter = rate_limiter
        self._scheduler = AsyncIOScheduler(timezone=config.timezone)

    @property
    def service_name(self) -> str:
        return "maintenance"

    async def start(self) -> None:
        self._scheduler.add_job(
            self.run_sweep,
            cron_trigger(self._config.sweep_cron, self._config.timezone),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info("scheduler_started", timezone=self._config.timezone, cron=self._config.sweep_cron)

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    async def health_check(self) -> bool:
        return self._scheduler.running

    async def run_sweep(self) -> int:
        """One maintenance pass. Returns the number of sessions purged."""
        try:
            purged = await self._sessions.sweep()
        except Exception as e:
            logger.error("session_sweep_failed", error=str(e))
            raise
        if self._rate_limiter is not None:
            buckets = self._rate_limiter.purge_expired()
            logger.debug("rate_buckets_purged", count=buckets)
        return purged

    def list_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "id": job.id,
                "next_run_time": str(job.next_run_time) if getattr(job, "next_run_time", None) else None,
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]

"""Tests for the maintenance scheduler."""

import pytest

from flowchat.config import RateLimitRule, SchedulerConfig
from flowchat.core.session import SessionStore
from flowchat.services.rate_limiter import RateLimiter
from flowchat.services.scheduler import SWEEP_JOB_ID, MaintenanceScheduler, cron_trigger


class TestCronTrigger:
    def test_five_fields(self):
        trigger = cron_trigger("*/15 2 * * mon-fri", "UTC")
        assert "minute='*/15'" in str(trigger)

    @pytest.mark.parametrize("expr", ["", "0 *", "0 0 * * * *"])
    def test_wrong_field_count(self, expr):
        with pytest.raises(ValueError):
            cron_trigger(expr)


class TestMaintenanceScheduler:
    async def test_start_registers_sweep_job(self, repo):
        scheduler = MaintenanceScheduler(SchedulerConfig(), SessionStore(repo))
        await scheduler.start()
        try:
            assert await scheduler.health_check()
            assert [job["id"] for job in scheduler.list_jobs()] == [SWEEP_JOB_ID]
        finally:
            await scheduler.stop()

    async def test_run_sweep(self, repo, clock, ticker):
        sessions = SessionStore(repo, clock=clock)
        limiter = RateLimiter({"api": RateLimitRule(threshold=1, window_seconds=10)}, clock=ticker)
        limiter.record("api", "c")
        session_id = await sessions.create("support", "v")
        await sessions.close(session_id)

        clock.advance(days=100)
        ticker.advance(11)
        scheduler = MaintenanceScheduler(SchedulerConfig(), sessions, limiter)
        assert await scheduler.run_sweep() == 1
        assert limiter.purge_expired() == 0

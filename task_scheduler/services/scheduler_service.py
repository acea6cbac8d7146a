"""Scheduler driver: fires job processor operations on cron schedules."""

import asyncio
import signal
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import structlog
from croniter import croniter

from task_scheduler.config import Settings, get_settings
from task_scheduler.database import close_database, open_database
from task_scheduler.services.job_processor import JobProcessor
from task_scheduler.services.logging_service import bind_job_context
from task_scheduler.services.redis_service import close_redis, get_redis

logger = structlog.get_logger(__name__)

Job = Callable[[], Awaitable[None]]


class SchedulerDriver:
    """Runs one trigger loop per cron schedule.

    Each firing runs the job in its own task, so stopping the triggers
    never interrupts a job that is already running.
    """

    def __init__(self, processor: Optional[JobProcessor] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.processor = processor or JobProcessor(settings=self.settings)
        self._triggers: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._running = False
        self._connected = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def jobs(self) -> list[tuple[str, str, Job]]:
        """(name, cron expression, job) for every trigger."""
        return [
            ("health_check", self.settings.health_check_cron, self.run_health_check),
            ("process_jobs", self.settings.process_jobs_cron, self.run_tick),
            ("stats", self.settings.stats_cron, self.run_stats),
            ("retry_failed_notifications", self.settings.retry_cron, self.run_retry),
        ]

    async def connect(self) -> None:
        """Open database and Redis connections.

        Raises:
            RuntimeError: If Redis is unreachable
            Exception: Whatever asyncpg raises when the pool cannot be created
        """
        try:
            await open_database(self.settings)
            if await get_redis() is None:
                raise RuntimeError("Redis is not available")
        except Exception:
            await self._close_connections()
            raise
        self._connected = True

    async def start(self, connect: bool = True) -> None:
        """Connect (unless told not to) and start every trigger loop."""
        if self._running:
            return

        if connect:
            await self.connect()

        self._running = True
        for name, expression, job in self.jobs():
            self._triggers.append(
                asyncio.create_task(self._trigger_loop(name, expression, job), name=f"trigger:{name}")
            )

        logger.info(
            "scheduler_started",
            jobs={name: expression for name, expression, _ in self.jobs()},
        )

    async def stop(self) -> None:
        """Stop triggers, wait for in-flight jobs, then close connections."""
        if not self._running and not self._triggers and not self._connected:
            return

        self._running = False
        for trigger in self._triggers:
            trigger.cancel()
        await asyncio.gather(*self._triggers, return_exceptions=True)
        self._triggers.clear()

        if self._inflight:
            logger.info("scheduler_draining", inflight=len(self._inflight))
            _, pending = await asyncio.wait(
                set(self._inflight), timeout=self.settings.shutdown_timeout_seconds
            )
            if pending:
                logger.warning("scheduler_drain_timeout", pending=len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        await self._close_connections()
        logger.info("scheduler_stopped")

    async def _close_connections(self) -> None:
        # Both closers are no-ops when nothing is open
        await close_database()
        await close_redis()
        self._connected = False

    async def _trigger_loop(self, name: str, expression: str, job: Job) -> None:
        now = datetime.now(timezone.utc)
        schedule = croniter(expression, now)

        while self._running:
            fire_at = schedule.get_next(datetime)
            now = datetime.now(timezone.utc)
            # Skip firings missed while the loop was blocked
            while fire_at < now - timedelta(seconds=1):
                fire_at = schedule.get_next(datetime)

            delay = (fire_at - now).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            if not self._running:
                break
            self.spawn(name, job)

    def spawn(self, name: str, job: Job) -> asyncio.Task:
        """Run a job in a tracked task."""
        task = asyncio.create_task(self._run_job(name, job), name=f"job:{name}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _run_job(self, name: str, job: Job) -> None:
        bind_job_context(name, uuid4().hex[:12])
        try:
            await job()
        except Exception as e:
            logger.error("scheduled_job_failed", error=str(e), exc_info=True)

    async def infrastructure_healthy(self) -> bool:
        database_ok, queue_ok = await asyncio.gather(
            self.processor.database_health(), self.processor.queue_health()
        )
        if not (database_ok and queue_ok):
            logger.warning("infrastructure_unhealthy", database=database_ok, redis=queue_ok)
        return database_ok and queue_ok

    async def run_health_check(self) -> None:
        await self.processor.health_check()

    async def run_tick(self) -> None:
        if not await self.infrastructure_healthy():
            logger.warning("job_processing_skipped", reason="infrastructure_unhealthy")
            return
        await self.processor.process_jobs()

    async def run_stats(self) -> None:
        stats = await self.processor.get_processing_stats()
        logger.info("processing_stats", **stats)

    async def run_retry(self) -> None:
        if not await self.infrastructure_healthy():
            logger.warning("retry_pass_skipped", reason="infrastructure_unhealthy")
            return
        await self.processor.process_failed_notifications()

    async def run_forever(self) -> None:
        """Start, then run until SIGTERM/SIGINT or an unhandled loop error."""
        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()

        def request_stop(reason: str) -> None:
            logger.info("scheduler_shutdown_requested", reason=reason)
            stop_requested.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, request_stop, sig.name)

        def handle_exception(loop, context) -> None:
            exception = context.get("exception")
            logger.error(
                "unhandled_loop_exception",
                message=context.get("message"),
                error=str(exception) if exception else None,
            )
            request_stop("unhandled_exception")

        loop.set_exception_handler(handle_exception)

        await self.start()
        try:
            await stop_requested.wait()
        finally:
            await self.stop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

"""Schedule Manager - one independent timer per schedule.

Each tick starts a new ``ScheduleRun``. If the previous run for the same
schedule is still going, it is terminated first: its outstanding URLs are
recorded as failed and its worker processes are killed, so a stuck batch
costs at most one period.
"""

import asyncio
from typing import Optional

from feedrelay.delivery.pipeline import DeliveryPipeline
from feedrelay.delivery.rate_limiter import ChannelRateLimiter
from feedrelay.failures.fail_tracker import FailureTracker
from feedrelay.main.config import Settings
from feedrelay.main.exceptions import ScheduleConfigurationError
from feedrelay.main.logging import get_logger
from feedrelay.schedules.schedule import Schedule
from feedrelay.schedules.schedule_resolver import build_schedules
from feedrelay.storage.storage import Storage
from feedrelay.worker.cycle_orchestrator import OVERRUN_REASON, CycleSummary, ScheduleRun
from feedrelay.worker.messages import CachedHeadersModel
from feedrelay.worker.pool import WorkerFactory

logger = get_logger(__name__)


class ScheduleManager:
    def __init__(
        self,
        settings: Settings,
        storage: Storage,
        fail_tracker: FailureTracker,
        pipeline: DeliveryPipeline,
        worker_factory: WorkerFactory,
        limiter: Optional[ChannelRateLimiter] = None,
    ):
        self.settings = settings
        self.storage = storage
        self.fail_tracker = fail_tracker
        self.pipeline = pipeline
        self.worker_factory = worker_factory
        self.limiter = limiter

        self.schedules: list[Schedule] = []
        self._running = False
        self._timers: list[asyncio.Task] = []
        self._runs: dict[str, ScheduleRun] = {}
        self._run_tasks: dict[str, asyncio.Task] = {}
        self._run_numbers: dict[str, int] = {}
        self._headers: dict[str, dict[str, CachedHeadersModel]] = {}

    async def load_schedules(self) -> list[Schedule]:
        """Build and validate the schedule set. Invalid configuration is fatal."""
        try:
            custom = await self.storage.schedules.get_all()
            self.schedules = build_schedules(self.settings, custom)
        except ScheduleConfigurationError as e:
            logger.error(f"Invalid schedule configuration: {e}")
            raise
        return self.schedules

    async def start(self) -> None:
        await self.load_schedules()
        self._running = True
        logger.info(
            "Starting schedules",
            extra={
                "schedules": {s.name: s.refresh_rate_minutes for s in self.schedules},
                "batch_size": self.settings.batch_size,
                "parallel_batches": self.settings.parallel_batches,
            },
        )
        self._timers = [
            asyncio.create_task(self._timer_loop(schedule), name=f"schedule:{schedule.name}")
            for schedule in self.schedules
        ]

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.gather(*self._timers)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def _timer_loop(self, schedule: Schedule) -> None:
        while self._running:
            try:
                await self.trigger(schedule)
            except Exception as exc:
                # A schedule timer must keep ticking whatever one cycle does
                logger.error(
                    f"Error starting cycle: {exc}",
                    exc_info=True,
                    extra={"schedule_name": schedule.name},
                )
            await asyncio.sleep(schedule.refresh_rate_seconds)

    async def _refresh_supporters(self) -> None:
        if self.limiter is None:
            return
        try:
            self.limiter.set_supporter_guilds(await self.storage.supporters.get_guild_ids())
        except Exception:
            logger.warning("Failed to refresh supporter guilds", exc_info=True)

    async def trigger(self, schedule: Schedule) -> asyncio.Task:
        """Start a cycle for ``schedule``, terminating an overrunning one first."""
        previous = self._runs.get(schedule.name)
        if previous is not None and previous.in_progress:
            hung = await previous.terminate(OVERRUN_REASON)
            logger.warning(
                "Previous cycle still running, terminated it",
                extra={
                    "schedule_name": schedule.name,
                    "run_number": previous.run_number,
                    "hung_url_count": len(hung),
                    "hung_urls": hung[:20],
                },
            )
            task = self._run_tasks.get(schedule.name)
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        await self._refresh_supporters()

        run_number = self._run_numbers.get(schedule.name, 0)
        self._run_numbers[schedule.name] = run_number + 1

        run = ScheduleRun(
            schedule=schedule,
            schedules=self.schedules,
            run_number=run_number,
            settings=self.settings,
            storage=self.storage,
            fail_tracker=self.fail_tracker,
            pipeline=self.pipeline,
            worker_factory=self.worker_factory,
            cached_headers=self._headers.setdefault(schedule.name, {}),
        )
        self._runs[schedule.name] = run
        task = asyncio.create_task(self._execute(run), name=f"run:{schedule.name}:{run_number}")
        self._run_tasks[schedule.name] = task
        return task

    async def _execute(self, run: ScheduleRun) -> Optional[CycleSummary]:
        try:
            return await run.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Cycle failed",
                extra={"schedule_name": run.schedule.name, "run_number": run.run_number},
            )
            await run.terminate("Cycle aborted")
            return None

    async def stop(self) -> None:
        """Cancel the timers and force-kill every worker process."""
        logger.info("Stopping schedules")
        self._running = False
        for timer in self._timers:
            timer.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []

        for name, run in self._runs.items():
            if run.in_progress:
                run.kill_workers()
            task = self._run_tasks.get(name)
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(*self._run_tasks.values(), return_exceptions=True)
        self._run_tasks.clear()

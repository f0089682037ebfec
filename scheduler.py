"""
Scheduler - runs every enabled recipe on a cron schedule.

A single dispatcher task sleeps until the next cron tick and then kicks off
a run-all. Ticks that land while a run-all is still going are skipped, not
queued. Time comes from an injectable Clock so tests can drive ticks.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from types import MappingProxyType
from typing import Optional, Protocol

from croniter import croniter

import automation_config
from automation_errors import ScheduleOverlap
from persistence.recipe_store import RecipeStore
from persistence.schedule_state import ScheduleStateStore
from recipe_models import PlayerState, RunLogEntry, ScheduleState, utc_now
from recipe_player import RecipePlayer

logger = logging.getLogger(__name__)

INTERVAL_TO_CRON = MappingProxyType({
    "hourly": "0 * * * *",
    "every_4h": "0 */4 * * *",
    "every_6h": "0 */6 * * *",
    "every_12h": "0 */12 * * *",
    "daily": "0 6 * * *",
    "weekly": "0 6 * * 1",
})

CRON_TO_INTERVAL = MappingProxyType({cron: name for name, cron in INTERVAL_TO_CRON.items()})


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock in local time, which is what cron expressions are written against."""

    def now(self) -> datetime:
        return datetime.now().astimezone()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class AutomationScheduler:
    def __init__(
        self,
        recipe_store: RecipeStore,
        player: RecipePlayer,
        state_store: ScheduleStateStore,
        clock: Optional[Clock] = None,
        inter_recipe_delay: float = automation_config.INTER_RECIPE_DELAY_SECONDS,
    ):
        self.recipe_store = recipe_store
        self.player = player
        self.state_store = state_store
        self.clock = clock or SystemClock()
        self.inter_recipe_delay = inter_recipe_delay

        self.state = ScheduleState()
        self.skipped_ticks = 0
        self._dispatcher: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self._cancel_event = asyncio.Event()

    # --- Lifecycle ---

    def init_scheduler(self) -> ScheduleState:
        """Load persisted schedule state and re-arm the dispatcher if it was enabled."""
        self.state = self.state_store.load()
        if self.state.enabled and self.state.cron_expr:
            if croniter.is_valid(self.state.cron_expr):
                self._arm(self.state.cron_expr)
                logger.info(f"Schedule restored: {self.state.cron_expr}")
            else:
                logger.warning(f"Persisted cron expression is invalid, schedule left off: "
                               f"{self.state.cron_expr}")
                self.state.enabled = False
                self._persist()
        return self.get_status()

    def start(self, cron_expr: str) -> ScheduleState:
        """Arm the dispatcher. Replaces any previous schedule."""
        cron_expr = " ".join(cron_expr.split())
        if not croniter.is_valid(cron_expr):
            raise ValueError(f"Invalid cron expression: {cron_expr!r}")

        self._disarm()
        self.state.cron_expr = cron_expr
        self.state.interval = CRON_TO_INTERVAL.get(cron_expr)
        self.state.enabled = True
        self._persist()
        self._arm(cron_expr)
        logger.info(f"Schedule started: {cron_expr}"
                    + (f" ({self.state.interval})" if self.state.interval else ""))
        return self.get_status()

    def stop(self) -> ScheduleState:
        """Disarm the dispatcher. A run already in progress is left to finish."""
        self._disarm()
        self.state.enabled = False
        self._persist()
        logger.info("Schedule stopped")
        return self.get_status()

    def get_status(self) -> ScheduleState:
        return self.state.model_copy(deep=True)

    def next_run_at(self) -> Optional[datetime]:
        if not self.state.enabled or not self.state.cron_expr:
            return None
        return croniter(self.state.cron_expr, self.clock.now()).get_next(datetime)

    def recent_runs(self, limit: int = 50) -> list[RunLogEntry]:
        return self.state_store.recent_runs(limit)

    async def aclose(self) -> None:
        dispatcher = self._dispatcher
        self._disarm()
        if dispatcher is not None:
            await asyncio.gather(dispatcher, return_exceptions=True)
        if self.running:
            self.cancel_run()
            await asyncio.gather(self._run_task, return_exceptions=True)

    # --- Runs ---

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def run_all_now(self) -> bool:
        """
        Run every enabled recipe now and wait for it to finish.

        Returns False without doing anything if a run-all is already in flight.
        """
        task = self._begin_run("manual")
        if task is None:
            return False
        await task
        return True

    def cancel_run(self) -> bool:
        """Cancel the current recipe and skip the rest of the run-all."""
        if not self.running:
            return False
        # The player shares this event, even while it waits for the run-lock
        self._cancel_event.set()
        logger.info("Run-all cancel requested")
        return True

    def _begin_run(self, trigger: str) -> Optional[asyncio.Task]:
        if self.running:
            logger.warning(f"{ScheduleOverlap('run-all already in progress')}; {trigger} run skipped")
            self.skipped_ticks += 1
            return None
        self._cancel_event = asyncio.Event()
        self.state.is_running = True
        self._persist()
        self._run_task = asyncio.create_task(self._run_all(trigger))
        return self._run_task

    async def _run_all(self, trigger: str) -> None:
        try:
            recipes = [r for r in self.recipe_store.list_recipes() if r.enabled]
            logger.info(f"Run-all ({trigger}) starting with {len(recipes)} recipe(s)")
            for index, recipe in enumerate(recipes):
                if index > 0 and self.inter_recipe_delay > 0 and not self._cancel_event.is_set():
                    await self.clock.sleep(self.inter_recipe_delay)
                if self._cancel_event.is_set():
                    logger.info(f"Run-all cancelled, skipping {len(recipes) - index} recipe(s)")
                    break
                await self._run_one(recipe)
        finally:
            self.state.is_running = False
            self.state.current_recording_name = None
            self._persist()
            logger.info(f"Run-all ({trigger}) finished")

    async def _run_one(self, recipe) -> None:
        self.state.current_recording_name = recipe.name
        self._persist()
        started_at = utc_now()
        try:
            result = await self.player.execute(recipe, wait_for_lock=True, cancel_event=self._cancel_event)
            entry = RunLogEntry(
                recipe_id=recipe.id,
                recipe_name=recipe.name,
                state=result.state,
                failed_step_index=result.failed_step_index,
                error=result.error,
                started_at=started_at,
                finished_at=utc_now(),
            )
        except Exception as e:
            # One broken recipe never stops the rest
            logger.error(f"Recipe '{recipe.name}' errored: {e}")
            entry = RunLogEntry(
                recipe_id=recipe.id,
                recipe_name=recipe.name,
                state=PlayerState.FAILED,
                error=str(e),
                started_at=started_at,
                finished_at=utc_now(),
            )
        self.state.last_run_at = entry.finished_at
        self.state_store.append_run(entry)
        self._persist()
        logger.info(f"Recipe '{recipe.name}' {entry.state.value}")

    # --- Dispatcher ---

    def _arm(self, cron_expr: str) -> None:
        self._dispatcher = asyncio.create_task(self._dispatch(cron_expr))

    def _disarm(self) -> None:
        if self._dispatcher is not None and not self._dispatcher.done():
            self._dispatcher.cancel()
        self._dispatcher = None

    async def _dispatch(self, cron_expr: str) -> None:
        cron = croniter(cron_expr, self.clock.now())
        while True:
            next_run = cron.get_next(datetime)
            wait_seconds = (next_run - self.clock.now()).total_seconds()
            if wait_seconds > 0:
                await self.clock.sleep(wait_seconds)
            logger.info(f"Cron tick at {next_run.isoformat()}")
            self._begin_run("schedule")

    def _persist(self) -> None:
        try:
            self.state_store.save(self.state)
        except OSError as e:
            logger.error(f"Could not persist schedule state: {e}")

"""
Automation service.

Wires the recipe store, recorder, resolver, player and scheduler together
behind the boundary operations the API and CLI call. Also hosts the
credential prompt broker: the player asks it for a secret and waits while
a human answers through the API.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

import automation_config
from automation_errors import RecipeNotFound, SessionBusy
from browser_session import open_browser_session
from element_resolver import ElementResolver, VisionLocator
from persistence.recipe_store import RecipeStore
from persistence.schedule_state import ScheduleStateStore
from recipe_editor import delete_step, edit_step, move_step, update_recipe
from recipe_models import PlaybackResult, Recipe, utc_now
from recipe_player import ImportSink, RecipePlayer
from recipe_recorder import CaptureRecorder, ElementDescriber, RecordingSession
from run_lock import RunLock
from scheduler import INTERVAL_TO_CRON, AutomationScheduler, Clock

logger = logging.getLogger(__name__)


@dataclass
class PendingPrompt:
    id: str
    field_label: str
    step_number: int
    total_steps: int
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return asdict(self)


class CredentialPromptBroker:
    """
    Holds open credential requests until someone answers them.

    The supplied value is handed straight to the waiting player and is not
    stored or logged here.
    """

    def __init__(self):
        self._pending: dict[str, tuple[PendingPrompt, asyncio.Future]] = {}

    async def request(self, field_label: str, step_number: int, total_steps: int) -> Optional[str]:
        prompt = PendingPrompt(
            id=uuid.uuid4().hex[:8],
            field_label=field_label,
            step_number=step_number,
            total_steps=total_steps,
        )
        future = asyncio.get_running_loop().create_future()
        self._pending[prompt.id] = (prompt, future)
        logger.info(f"Credential requested for '{field_label}' (prompt {prompt.id})")
        try:
            return await future
        finally:
            self._pending.pop(prompt.id, None)

    def pending(self) -> list[PendingPrompt]:
        return [prompt for prompt, _ in self._pending.values()]

    def supply(self, prompt_id: str, value: str) -> bool:
        return self._resolve(prompt_id, value)

    def decline(self, prompt_id: str) -> bool:
        return self._resolve(prompt_id, None)

    def _resolve(self, prompt_id: str, value: Optional[str]) -> bool:
        entry = self._pending.get(prompt_id)
        if entry is None or entry[1].done():
            return False
        prompt, future = entry
        future.set_result(value)
        logger.info(f"Prompt {prompt_id} for '{prompt.field_label}' "
                    f"{'answered' if value is not None else 'declined'}")
        return True


class AutomationService:
    def __init__(
        self,
        recipe_store: RecipeStore,
        state_store: ScheduleStateStore,
        playback_session_factory: Callable = open_browser_session,
        recording_session_factory: Callable = lambda: open_browser_session(headless=False),
        vision: Optional[VisionLocator] = None,
        describer: Optional[ElementDescriber] = None,
        import_sink: Optional[ImportSink] = None,
        clock: Optional[Clock] = None,
        inter_recipe_delay: float = automation_config.INTER_RECIPE_DELAY_SECONDS,
        **player_options: Any,
    ):
        self.recipe_store = recipe_store
        self.run_lock = RunLock()
        self.prompts = CredentialPromptBroker()
        self.resolver = ElementResolver(vision=vision)
        self.recorder = CaptureRecorder(
            self.run_lock, session_factory=recording_session_factory, describer=describer,
        )
        self.player = RecipePlayer(
            self.run_lock,
            self.resolver,
            session_factory=playback_session_factory,
            credential_prompt=self.prompts,
            import_sink=import_sink,
            **player_options,
        )
        self.scheduler = AutomationScheduler(
            recipe_store, self.player, state_store, clock=clock, inter_recipe_delay=inter_recipe_delay,
        )
        self.last_result: Optional[PlaybackResult] = None
        self._playback_task: Optional[asyncio.Task] = None

    # --- Recording ---

    async def start_recording_mode(self, target_url: str) -> RecordingSession:
        return await self.recorder.start(target_url)

    async def save_recording(self, name: str, institution: Optional[str] = None) -> str:
        """Stop the active recording and store it. Returns the new recipe id."""
        if not self.recorder.active:
            raise ValueError("No recording in progress")
        if not name or not name.strip():
            raise ValueError("Recipe name is required")
        target_url = self.recorder.recording.target_url
        steps = await self.recorder.stop()
        if not steps:
            raise ValueError("Recording captured no steps; nothing saved")
        recipe = Recipe(name=name.strip(), institution=institution, url=target_url, steps=steps)
        self.recipe_store.save(recipe)
        return recipe.id

    async def discard_recording(self) -> bool:
        if not self.recorder.active:
            return False
        await self.recorder.discard()
        return True

    # --- Recipes ---

    def list_recipes(self) -> list[Recipe]:
        return self.recipe_store.list_recipes()

    def get_recipe(self, recipe_id: str) -> Recipe:
        return self.recipe_store.get(recipe_id)

    def delete_recipe(self, recipe_id: str) -> None:
        self.recipe_store.delete(recipe_id)

    def default_recipe(self) -> Recipe:
        """The most recently updated enabled recipe."""
        enabled = [r for r in self.recipe_store.list_recipes() if r.enabled]
        if not enabled:
            raise RecipeNotFound("default")
        return max(enabled, key=lambda r: r.updated_at)

    def _recipe_or_default(self, recipe_id: Optional[str]) -> Recipe:
        return self.recipe_store.get(recipe_id) if recipe_id else self.default_recipe()

    def edit_recipe(self, recipe_id: str, **fields: Any) -> Recipe:
        """Change name, institution, url or enabled."""
        return self.recipe_store.save(update_recipe(self.recipe_store.get(recipe_id), **fields))

    def edit_step(self, recipe_id: str, index: int, **changes: Any) -> Recipe:
        return self.recipe_store.save(edit_step(self.recipe_store.get(recipe_id), index, **changes))

    def delete_step(self, recipe_id: str, index: int) -> Recipe:
        return self.recipe_store.save(delete_step(self.recipe_store.get(recipe_id), index))

    def move_step(self, recipe_id: str, from_index: int, to_index: int) -> Recipe:
        return self.recipe_store.save(move_step(self.recipe_store.get(recipe_id), from_index, to_index))

    # --- Playback ---

    async def trigger_execute(self, recipe_id: Optional[str] = None) -> PlaybackResult:
        """Play a recipe (default: the most recent enabled one) and wait for the result."""
        return await self._execute(self._recipe_or_default(recipe_id), capture_page=False)

    async def execute_via_structured_capture(self, recipe_id: Optional[str] = None) -> PlaybackResult:
        """Same as trigger_execute, then capture the final page for import."""
        return await self._execute(self._recipe_or_default(recipe_id), capture_page=True)

    async def _execute(self, recipe: Recipe, capture_page: bool) -> PlaybackResult:
        result = await self.player.execute(recipe, capture_page=capture_page)
        self.last_result = result
        return result

    def start_playback(self, recipe_id: Optional[str] = None, capture_page: bool = False) -> Recipe:
        """
        Start playback in the background and return the recipe being played.

        Raises SessionBusy straight away if anything else holds the browser.
        """
        if self.run_lock.locked() or self.playback_active:
            raise SessionBusy(self.run_lock.owner or "playback")
        recipe = self._recipe_or_default(recipe_id)
        self._playback_task = asyncio.create_task(self._execute_in_background(recipe, capture_page))
        return recipe

    @property
    def playback_active(self) -> bool:
        return self._playback_task is not None and not self._playback_task.done()

    async def _execute_in_background(self, recipe: Recipe, capture_page: bool) -> None:
        try:
            await self._execute(recipe, capture_page)
        except SessionBusy as e:
            logger.warning(f"Playback of '{recipe.name}' not started: {e}")

    def cancel_playback(self) -> bool:
        if self.scheduler.running:
            return self.scheduler.cancel_run()
        return self.player.cancel()

    # --- Credential prompts ---

    def pending_prompts(self) -> list[PendingPrompt]:
        return self.prompts.pending()

    def supply_credential(self, prompt_id: str, value: str) -> bool:
        return self.prompts.supply(prompt_id, value)

    def decline_credential(self, prompt_id: str) -> bool:
        return self.prompts.decline(prompt_id)

    # --- Scheduling ---

    def start_schedule(self, cron_expr: Optional[str] = None, interval: Optional[str] = None):
        if interval:
            if interval not in INTERVAL_TO_CRON:
                raise ValueError(f"Unknown interval '{interval}' (choose from {', '.join(INTERVAL_TO_CRON)})")
            cron_expr = INTERVAL_TO_CRON[interval]
        return self.scheduler.start(cron_expr or automation_config.DEFAULT_SCHEDULE_CRON)

    def status(self) -> dict:
        schedule = self.scheduler.get_status()
        next_run = self.scheduler.next_run_at()
        return {
            "recording": {
                "active": self.recorder.active,
                "id": self.recorder.recording.id if self.recorder.active else None,
                "steps": len(self.recorder.recording.steps) if self.recorder.active else 0,
            },
            "playback": self.player.progress(),
            "schedule": {**schedule.model_dump(), "next_run_at": next_run.isoformat() if next_run else None},
            "lock_owner": self.run_lock.owner,
            "pending_prompts": len(self.prompts.pending()),
        }

    async def aclose(self) -> None:
        if self.recorder.active:
            await self.recorder.discard()
        if self.playback_active:
            self.player.cancel()
            await asyncio.gather(self._playback_task, return_exceptions=True)
        await self.scheduler.aclose()

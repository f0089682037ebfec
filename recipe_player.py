"""
Recipe Player - replays a recorded recipe step by step against a live page.

Each step is resolved with the ElementResolver and then acted on. Transient
failures are retried with exponential backoff; steps holding a redacted
value suspend the run until a credential is supplied. The run-lock is held
for the whole run and the browser session is always closed on the way out.

State machine:

    idle -> running -> (retrying | prompting) -> running
         -> succeeded | failed | cancelled
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Protocol

import automation_config
from automation_errors import (
    ActionError,
    AutomationError,
    PlaybackCancelled,
    RedactedValueTimeout,
    ResolutionFailure,
    SessionLost,
    VisionLookupError,
)
from browser_session import BrowserSession, open_browser_session
from element_resolver import ElementInfo, ElementResolver
from recipe_models import PlaybackResult, PlayerState, Recipe, Step, StepOutcome
from run_lock import RunLock

logger = logging.getLogger(__name__)

# Failures worth another try after a backoff delay
_RETRYABLE = (ResolutionFailure, ActionError, VisionLookupError)

# A lost session is retried this many times (after reattaching)
_SESSION_RETRIES = 1


class CredentialPrompt(Protocol):
    """Asks a human for a secret. Returns None if they decline."""

    async def request(self, field_label: str, step_number: int, total_steps: int) -> Optional[str]:
        ...


class ImportSink(Protocol):
    """Receives the result of every successful run (downloads, captured page)."""

    async def handle(self, recipe: Recipe, result: PlaybackResult) -> None:
        ...


class _StepFailed(Exception):
    def __init__(self, outcome: StepOutcome):
        super().__init__(outcome.error)
        self.outcome = outcome


def retry_delays(attempts: int, base_ms: int) -> list[int]:
    """Backoff schedule in milliseconds: base * 2^attempt for each retry."""
    return [base_ms * 2 ** attempt for attempt in range(attempts)]


class RecipePlayer:
    """Executes one recipe at a time."""

    def __init__(
        self,
        run_lock: RunLock,
        resolver: ElementResolver,
        session_factory: Callable = open_browser_session,
        credential_prompt: Optional[CredentialPrompt] = None,
        retry_attempts: int = automation_config.RETRY_ATTEMPTS,
        retry_delay_ms: int = automation_config.RETRY_DELAY_MS,
        prompt_timeout: float = automation_config.PROMPT_TIMEOUT_SECONDS,
        step_delay: tuple[float, float] = automation_config.STEP_DELAY_RANGE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        import_sink: Optional[ImportSink] = None,
    ):
        self.run_lock = run_lock
        self.resolver = resolver
        self.session_factory = session_factory
        self.credential_prompt = credential_prompt
        self.retry_attempts = retry_attempts
        self.retry_delay_ms = retry_delay_ms
        self.prompt_timeout = prompt_timeout
        self.step_delay = step_delay
        self._sleep = sleep
        self.import_sink = import_sink

        self.state = PlayerState.IDLE
        self.history: list[PlayerState] = [PlayerState.IDLE]
        self.current_recipe: Optional[Recipe] = None
        self.current_step: Optional[int] = None
        self.log_lines: list[str] = []
        self._cancel_event = asyncio.Event()

    def _log(self, msg: str):
        logger.info(msg)
        self.log_lines.append(msg)

    def _transition(self, state: PlayerState):
        if state != self.state:
            logger.debug(f"Player {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def busy(self) -> bool:
        return self.state not in (PlayerState.IDLE,) and not self.state.is_terminal

    def progress(self) -> dict:
        recipe = self.current_recipe
        return {
            "state": self.state.value,
            "recipe_id": recipe.id if recipe else None,
            "recipe_name": recipe.name if recipe else None,
            "current_step": self.current_step,
            "total_steps": len(recipe.steps) if recipe else 0,
        }

    def cancel(self) -> bool:
        """Request cancellation. Takes effect at the next step boundary or wait."""
        if not self.busy:
            return False
        self._log("Cancel requested")
        self._cancel_event.set()
        return True

    async def execute(self, recipe: Recipe, *, wait_for_lock: bool = False,
                      capture_page: bool = False,
                      cancel_event: Optional[asyncio.Event] = None) -> PlaybackResult:
        """
        Play every step of the recipe.

        Raises SessionBusy if the run-lock is held and wait_for_lock is False.
        Every other failure is reported in the returned PlaybackResult.

        A caller that may have to wait for the lock passes its own cancel_event;
        setting it before the lock is acquired cancels the run before it starts.
        """
        if cancel_event is None:
            cancel_event = asyncio.Event()
        async with self.run_lock.hold(f"playback:{recipe.name}", wait=wait_for_lock):
            self._cancel_event = cancel_event
            self.log_lines = []
            self.history = []
            self.current_recipe = recipe
            self.current_step = None
            self._transition(PlayerState.IDLE)
            try:
                return await self._run(recipe, capture_page)
            finally:
                self.current_step = None

    async def _run(self, recipe: Recipe, capture_page: bool) -> PlaybackResult:
        result = PlaybackResult(recipe_id=recipe.id, recipe_name=recipe.name, state=PlayerState.RUNNING)
        self._transition(PlayerState.RUNNING)
        self._log(f"Starting recipe: {recipe.name} ({len(recipe.steps)} steps)")

        try:
            if self._cancel_event.is_set():
                raise PlaybackCancelled()
            async with self.session_factory() as session:
                await session.navigate(recipe.url)
                for index, step in enumerate(recipe.steps):
                    self.current_step = index
                    if self._cancel_event.is_set():
                        raise PlaybackCancelled()
                    outcome = await self._play_step(session, index, step, len(recipe.steps))
                    result.outcomes.append(outcome)
                    await self._pause()
                result.downloads = await session.collect_downloads()
                if capture_page:
                    result.captured_page = await session.capture_page()
            self._transition(PlayerState.SUCCEEDED)
        except PlaybackCancelled:
            self._transition(PlayerState.CANCELLED)
            if self.current_step is not None and len(result.outcomes) == self.current_step:
                step = recipe.steps[self.current_step]
                result.outcomes.append(StepOutcome(
                    index=self.current_step, type=step.type, label=step.describe(), status="cancelled",
                ))
        except _StepFailed as e:
            self._transition(PlayerState.FAILED)
            result.outcomes.append(e.outcome)
            result.failed_step_index = e.outcome.index
            result.error = e.outcome.error
        except AutomationError as e:
            self._transition(PlayerState.FAILED)
            result.failed_step_index = self.current_step
            result.error = str(e)
        except Exception as e:
            # Browser launch problems and the like end the run, not the player
            logger.error(f"Playback of '{recipe.name}' aborted: {e!r}")
            self._transition(PlayerState.FAILED)
            result.failed_step_index = self.current_step
            result.error = f"{type(e).__name__}: {e}"
        except asyncio.CancelledError:
            self._transition(PlayerState.CANCELLED)
            raise

        result.state = self.state
        self._log(f"Recipe finished: {self.state.value}"
                  + (f" at step {result.failed_step_index + 1}: {result.error}"
                     if result.failed_step_index is not None else ""))
        result.log = list(self.log_lines)
        if self.state == PlayerState.SUCCEEDED and self.import_sink is not None:
            await self._hand_off(recipe, result)
        return result

    async def _hand_off(self, recipe: Recipe, result: PlaybackResult) -> None:
        try:
            await self.import_sink.handle(recipe, result)
        except Exception as e:
            # The run itself succeeded; the import can be retried from the files
            logger.error(f"Import of '{recipe.name}' results failed: {e}")

    async def _play_step(self, session: BrowserSession, index: int, step: Step, total: int) -> StepOutcome:
        label = step.describe()
        self._log(f"[Step {index + 1}/{total}] {label}")

        secret = None
        if step.is_redacted:
            secret = await self._prompt(step, index, total)

        attempt = 0
        session_retries = 0
        try:
            while True:
                if self._cancel_event.is_set():
                    raise PlaybackCancelled()
                try:
                    strategy = await self._attempt(session, index, step, secret)
                    return StepOutcome(
                        index=index, type=step.type, label=label, status="succeeded",
                        strategy=strategy, attempts=attempt + session_retries + 1,
                    )
                except SessionLost as e:
                    if session_retries >= _SESSION_RETRIES:
                        raise self._failure(index, step, attempt + session_retries + 1, e, secret)
                    session_retries += 1
                    self._log(f"  Session lost ({self._scrub(e, secret)}), reattaching")
                    try:
                        await session.reattach()
                    except SessionLost as lost:
                        raise self._failure(index, step, attempt + session_retries, lost, secret)
                except _RETRYABLE as e:
                    if attempt >= self.retry_attempts:
                        raise self._failure(index, step, attempt + session_retries + 1, e, secret)
                    delay_ms = self.retry_delay_ms * 2 ** attempt
                    self._transition(PlayerState.RETRYING)
                    self._log(f"  Attempt {attempt + 1} failed ({self._scrub(e, secret)}), "
                              f"retrying in {delay_ms}ms")
                    await self._wait(self._sleep(delay_ms / 1000))
                    self._transition(PlayerState.RUNNING)
                    attempt += 1
        except (_StepFailed, PlaybackCancelled):
            raise
        except Exception as e:
            if secret is None:
                raise
            raise self._failure(index, step, attempt + session_retries + 1, e, secret) from None
        finally:
            # The secret only lives for this step's action
            secret = None

    async def _attempt(self, session: BrowserSession, index: int, step: Step,
                       secret: Optional[str]) -> Optional[str]:
        page = await session.snapshot(include_screenshot=self.resolver.needs_screenshot(step))
        resolution = await self.resolver.resolve(step, page)
        if not resolution.matched:
            tried = ", ".join(s.value for s in resolution.tried)
            raise ResolutionFailure(index, f"no strategy matched (tried {tried})")
        await self._act(session, step, resolution.element, secret)
        if step.type == "click":
            await session.wait_for_settle()
        return resolution.strategy.value

    async def _act(self, session: BrowserSession, step: Step, element: ElementInfo,
                   secret: Optional[str]) -> None:
        if step.type == "click":
            await session.click(element)
            return
        value = secret if secret is not None else (step.value or "")
        if step.type == "input":
            await session.fill(element, value)
        elif step.type == "select":
            await session.select_option(element, value)

    async def _prompt(self, step: Step, index: int, total: int) -> str:
        label = step.field_label or "Sensitive value"
        if self.credential_prompt is None:
            raise self._failure(index, step, 0, RedactedValueTimeout(label))

        self._transition(PlayerState.PROMPTING)
        self._log(f"  Waiting for '{label}' to be supplied")
        try:
            value = await self._wait(
                self.credential_prompt.request(label, index + 1, total),
                timeout=self.prompt_timeout,
            )
        except asyncio.TimeoutError:
            raise self._failure(index, step, 0, RedactedValueTimeout(label))
        if value is None:
            self._log(f"  '{label}' was declined")
            raise PlaybackCancelled()
        self._transition(PlayerState.RUNNING)
        return value

    async def _wait(self, awaitable: Awaitable, timeout: Optional[float] = None):
        """Await something, giving up early if cancel() is called."""
        task = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, cancelled}, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (task, cancelled):
                if not pending.done():
                    pending.cancel()
            await asyncio.gather(task, cancelled, return_exceptions=True)
        if task in done:
            return task.result()
        if cancelled in done:
            raise PlaybackCancelled()
        raise asyncio.TimeoutError()

    async def _pause(self) -> None:
        low, high = self.step_delay
        if high <= 0:
            return
        await self._wait(self._sleep(random.uniform(low, high)))

    def _failure(self, index: int, step: Step, attempts: int, error: Exception,
                 secret: Optional[str] = None) -> _StepFailed:
        message = self._scrub(error, secret)
        self._log(f"  Step {index + 1} failed: {message}")
        return _StepFailed(StepOutcome(
            index=index, type=step.type, label=step.describe(), status="failed",
            attempts=attempts, error=message,
        ))

    @staticmethod
    def _scrub(error: Exception, secret: Optional[str]) -> str:
        message = str(error) or error.__class__.__name__
        if secret:
            message = message.replace(secret, "***")
        return message

"""
Recipe Recorder - watches a live browser session while the user demonstrates
a task and turns each click, committed text input and select change into a
replayable Step.

The page pushes raw interaction dicts through a bounded queue; a single
consumer task converts them in arrival order, so queue order is step order.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import uuid
from contextlib import AsyncExitStack
from typing import Any, Callable, Optional, Protocol

import automation_config
from automation_errors import AutomationError
from browser_session import BrowserSession, open_browser_session
from recipe_models import (
    REDACTED_VALUE,
    BoundingBox,
    Coordinates,
    Identification,
    Step,
    StepContext,
    VisualCapture,
    utc_now,
)
from run_lock import RunLock

logger = logging.getLogger(__name__)

_STEP_TYPES = {"click", "input", "select"}

# Name/id tokens that mark a field as holding a secret
_SENSITIVE_TOKENS = {"password", "passwd", "pwd", "passcode", "pin", "ssn", "otp"}
_SENSITIVE_AUTOCOMPLETE = {"current-password", "new-password", "one-time-code"}

# Seconds to wait for queued interactions to be processed on stop
_DRAIN_TIMEOUT = 10


class ElementDescriber(Protocol):
    """Optional AI capability that writes a description of an element clip."""

    async def describe(self, screenshot: bytes, identification: Identification) -> str:
        ...


def _text(raw: dict, key: str) -> Optional[str]:
    value = raw.get(key)
    if isinstance(value, str) and value.strip():
        return " ".join(value.split())
    return None


def is_sensitive(raw: dict) -> bool:
    if (raw.get("inputType") or "").lower() == "password":
        return True
    if (raw.get("autocomplete") or "").lower() in _SENSITIVE_AUTOCOMPLETE:
        return True
    for key in ("name", "domId"):
        tokens = re.split(r"[^a-z0-9]+", (raw.get(key) or "").lower())
        if _SENSITIVE_TOKENS.intersection(tokens):
            return True
    return False


def field_label_for(raw: dict) -> str:
    nearby = raw.get("nearbyText") or []
    for candidate in (_text(raw, "ariaLabel"), nearby[0] if nearby else None,
                      _text(raw, "placeholder"), _text(raw, "name")):
        if candidate:
            return candidate
    if (raw.get("inputType") or "").lower() == "password":
        return "Password"
    return "Sensitive value"


def compose_description(raw: dict) -> str:
    """Plain-language description used when no AI describer is configured."""
    role = _text(raw, "role") or _text(raw, "tag") or "element"
    label = _text(raw, "text") or _text(raw, "ariaLabel") or _text(raw, "placeholder") or _text(raw, "title")
    parts = [f"{role} labelled '{label}'" if label else role]
    nearby = [t for t in raw.get("nearbyText") or [] if t and t != label]
    if nearby:
        parts.append(f"near '{nearby[0]}'")
    return " ".join(parts)


def interaction_to_step(raw: dict[str, Any], previous_timestamp: Optional[float] = None) -> Optional[Step]:
    """
    Convert one raw page interaction into a Step.

    Returns None for interactions that do not qualify. A timestamp that does
    not move forward is bumped to previous + 1 ms so step order stays strict.
    """
    step_type = raw.get("type")
    if step_type not in _STEP_TYPES:
        return None

    timestamp = float(raw.get("timestamp") or 0)
    if previous_timestamp is not None and timestamp <= previous_timestamp:
        timestamp = previous_timestamp + 1

    value = None
    field_label = None
    if step_type != "click":
        value = str(raw.get("value") or "")
        if is_sensitive(raw) or value == REDACTED_VALUE:
            value = REDACTED_VALUE
            field_label = field_label_for(raw)

    x = float(raw.get("x") or 0)
    y = float(raw.get("y") or 0)
    width = float(raw.get("width") or 0)
    height = float(raw.get("height") or 0)
    element_x = x + width / 2
    element_y = y + height / 2

    return Step(
        type=step_type,
        timestamp=timestamp,
        identification=Identification(
            text=_text(raw, "text"),
            aria_label=_text(raw, "ariaLabel"),
            placeholder=_text(raw, "placeholder"),
            title=_text(raw, "title"),
            role=_text(raw, "role"),
        ),
        context=StepContext(
            form_index=raw.get("formIndex"),
            element_index=raw.get("elementIndex"),
            nearby_text=[t for t in raw.get("nearbyText") or [] if isinstance(t, str) and t],
            parent_text=_text(raw, "parentText"),
        ),
        coordinates=Coordinates(
            x=float(raw.get("pointerX", element_x)),
            y=float(raw.get("pointerY", element_y)),
            element_x=element_x,
            element_y=element_y,
        ),
        value=value,
        field_label=field_label,
    )


def _same_target(a: Step, b: Step) -> bool:
    return (
        a.context.form_index == b.context.form_index
        and a.context.element_index == b.context.element_index
        and a.identification == b.identification
    )


class RecordingSession:
    """Handle for one active recording."""

    def __init__(self, target_url: str):
        self.id = str(uuid.uuid4())[:8]
        self.target_url = target_url
        self.started_at = utc_now()
        self.steps: list[Step] = []


class CaptureRecorder:
    def __init__(
        self,
        run_lock: RunLock,
        session_factory: Callable = lambda: open_browser_session(headless=False),
        describer: Optional[ElementDescriber] = None,
        capture_visuals: bool = automation_config.CAPTURE_VISUALS,
        queue_size: int = automation_config.RECORDER_QUEUE_SIZE,
    ):
        self.run_lock = run_lock
        self.session_factory = session_factory
        self.describer = describer
        self.capture_visuals = capture_visuals
        self.queue_size = queue_size
        self.recording: Optional[RecordingSession] = None
        self._session: Optional[BrowserSession] = None
        self._stack: Optional[AsyncExitStack] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.recording is not None

    async def start(self, target_url: str) -> RecordingSession:
        await self.run_lock.acquire(f"recording:{target_url}")
        stack = AsyncExitStack()
        try:
            self._session = await stack.enter_async_context(self.session_factory())
            self._queue = asyncio.Queue(maxsize=self.queue_size)
            await self._session.start_capture(self._queue)
            await self._session.navigate(target_url)
        except BaseException:
            await stack.aclose()
            self._session = None
            self._queue = None
            self.run_lock.release()
            raise

        self._stack = stack
        self.recording = RecordingSession(target_url)
        self._consumer = asyncio.create_task(self._consume())
        logger.info(f"Recording {self.recording.id} started at {target_url}")
        return self.recording

    async def stop(self) -> list[Step]:
        """End the recording and return the captured steps (possibly empty)."""
        if self.recording is None:
            return []
        recording = self.recording
        try:
            await self._drain()
        finally:
            await self._teardown()
        logger.info(f"Recording {recording.id} stopped with {len(recording.steps)} step(s)")
        return list(recording.steps)

    async def discard(self) -> None:
        if self.recording is None:
            return
        recording_id = self.recording.id
        if self._consumer is not None:
            self._consumer.cancel()
        await self._teardown()
        logger.info(f"Recording {recording_id} discarded")

    async def _drain(self) -> None:
        await self._queue.put(None)
        try:
            await asyncio.wait_for(self._consumer, timeout=_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Recorder did not drain in time, dropping remaining interactions")

    async def _teardown(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        try:
            if self._stack is not None:
                await self._stack.aclose()
        finally:
            self._stack = None
            self._session = None
            self._queue = None
            self._consumer = None
            self.recording = None
            self.run_lock.release()

    async def _consume(self) -> None:
        while True:
            raw = await self._queue.get()
            if raw is None:
                return
            try:
                await self.add_interaction(raw)
            except (AutomationError, ValueError) as e:
                logger.warning(f"Skipped interaction: {e}")

    async def add_interaction(self, raw: dict[str, Any]) -> Optional[Step]:
        steps = self.recording.steps
        previous = steps[-1].timestamp if steps else None
        step = interaction_to_step(raw, previous)
        if step is None:
            return None

        step.visual = await self._capture_visual(raw, step)

        if step.type == "input" and steps and steps[-1].type == "input" and _same_target(steps[-1], step):
            steps[-1] = step
            logger.debug("Coalesced repeated input on the same field")
        else:
            steps.append(step)
        logger.info(f"Captured step {len(steps)}: {step.describe()}")
        return step

    async def _capture_visual(self, raw: dict, step: Step) -> Optional[VisualCapture]:
        if not self.capture_visuals or self._session is None:
            return None
        # A sensitive field may show its value in plain text
        if step.is_redacted:
            return None
        width = float(raw.get("width") or 0)
        height = float(raw.get("height") or 0)
        if width <= 0 or height <= 0:
            return None
        # The page moved on; a clip now would show the wrong thing
        if raw.get("url") and self._session.current_url != raw["url"]:
            return None

        clip = {"x": float(raw.get("x") or 0), "y": float(raw.get("y") or 0),
                "width": width, "height": height}
        try:
            png = await self._session.screenshot(clip=clip)
        except AutomationError as e:
            logger.debug(f"Visual capture skipped: {e}")
            return None

        description = compose_description(raw)
        if self.describer is not None:
            try:
                description = await self.describer.describe(png, step.identification)
            except Exception as e:
                logger.warning(f"Element description failed, keeping recorded descriptors: {e}")

        return VisualCapture(
            screenshot=base64.b64encode(png).decode("ascii"),
            ai_description=description,
            bounding_box=BoundingBox(width=width, height=height),
        )

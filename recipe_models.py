"""
Recipe data models.

Defines the structure of recorded recipes, the playback result that
comes back from a run, and the persisted schedule state.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

# Stored in place of any value typed into a sensitive field
REDACTED_VALUE = "[REDACTED]"

StepType = Literal["click", "input", "select"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_recipe_id() -> str:
    return str(uuid.uuid4())[:8]


class Identification(BaseModel):
    """Attribute-level descriptors of the target element."""

    text: Optional[str] = None
    aria_label: Optional[str] = None
    placeholder: Optional[str] = None
    title: Optional[str] = None
    role: Optional[str] = None

    def is_empty(self) -> bool:
        return not any((self.text, self.aria_label, self.placeholder, self.title))


class StepContext(BaseModel):
    """Where the element sat in the document when it was recorded."""

    form_index: Optional[int] = None
    element_index: Optional[int] = None
    nearby_text: list[str] = Field(default_factory=list)
    parent_text: Optional[str] = None


class BoundingBox(BaseModel):
    width: float
    height: float


class VisualCapture(BaseModel):
    screenshot: str  # base64 PNG of the element clip
    ai_description: str
    bounding_box: BoundingBox


class Coordinates(BaseModel):
    x: float  # pointer position in the viewport
    y: float
    element_x: float  # centre of the element's box in the viewport
    element_y: float


class Step(BaseModel):
    type: StepType
    timestamp: float  # epoch milliseconds
    identification: Identification = Field(default_factory=Identification)
    context: StepContext = Field(default_factory=StepContext)
    visual: Optional[VisualCapture] = None
    coordinates: Coordinates
    value: Optional[str] = None
    field_label: Optional[str] = None

    @property
    def is_redacted(self) -> bool:
        return self.value == REDACTED_VALUE

    @property
    def has_visual(self) -> bool:
        return self.visual is not None

    def describe(self) -> str:
        """Human-readable one-liner, safe to log."""
        ident = self.identification
        target = ident.text or ident.aria_label or ident.placeholder or ident.title
        target = target or f"({self.coordinates.element_x:.0f}, {self.coordinates.element_y:.0f})"
        if self.type == "click":
            return f"Click '{target}'"
        if self.is_redacted:
            return f"Enter {self.field_label or 'sensitive value'} into '{target}'"
        if self.type == "select":
            return f"Select '{self.value}' in '{target}'"
        preview = (self.value or "")[:40]
        return f"Type '{preview}' into '{target}'"


class Recipe(BaseModel):
    id: str = Field(default_factory=new_recipe_id)
    name: str
    institution: Optional[str] = None
    url: str
    steps: list[Step] = Field(default_factory=list)
    enabled: bool = True
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _timestamps_increase(self) -> "Recipe":
        for prev, step in zip(self.steps, self.steps[1:]):
            if step.timestamp <= prev.timestamp:
                raise ValueError(
                    f"Step timestamps must be strictly increasing "
                    f"({step.timestamp} after {prev.timestamp})"
                )
        return self


class PlayerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RETRYING = "retrying"
    PROMPTING = "prompting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PlayerState.SUCCEEDED, PlayerState.FAILED, PlayerState.CANCELLED)


class StepOutcome(BaseModel):
    index: int
    type: StepType
    label: str
    status: Literal["succeeded", "failed", "cancelled"]
    strategy: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None


class CapturedPage(BaseModel):
    url: str
    title: str = ""
    text: str = ""
    html: str = ""


class PlaybackResult(BaseModel):
    recipe_id: str
    recipe_name: str
    state: PlayerState
    outcomes: list[StepOutcome] = Field(default_factory=list)
    failed_step_index: Optional[int] = None
    error: Optional[str] = None
    downloads: list[str] = Field(default_factory=list)
    captured_page: Optional[CapturedPage] = None
    log: list[str] = Field(default_factory=list)


class ScheduleState(BaseModel):
    is_running: bool = False
    current_recording_name: Optional[str] = None
    last_run_at: Optional[str] = None
    cron_expr: Optional[str] = None
    interval: Optional[str] = None
    enabled: bool = False


class RunLogEntry(BaseModel):
    recipe_id: str
    recipe_name: str
    state: PlayerState
    failed_step_index: Optional[int] = None
    error: Optional[str] = None
    started_at: str
    finished_at: str

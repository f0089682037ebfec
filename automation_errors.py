"""
Errors raised by the recording, playback and scheduling engine.
"""

from __future__ import annotations


class AutomationError(Exception):
    """Base class for engine errors."""


class ResolutionFailure(AutomationError):
    """No strategy located the element for a step. Retryable, then fatal."""

    def __init__(self, step_index: int, reason: str = "no strategy matched"):
        super().__init__(f"Step {step_index}: {reason}")
        self.step_index = step_index
        self.reason = reason


class SessionLost(AutomationError):
    """The browser session went away underneath us. Retryable once."""


class RedactedValueTimeout(AutomationError):
    """Nobody supplied a credential before the prompt timed out."""

    def __init__(self, field_label: str):
        super().__init__(f"No value supplied for '{field_label}'")
        self.field_label = field_label


class VisionCapabilityUnavailable(AutomationError):
    """The AI-vision capability is not configured or not reachable."""


class VisionLookupError(AutomationError):
    """Transient failure while asking the vision capability for a point."""


class ActionError(AutomationError):
    """An action on a resolved element did not go through. Retryable."""


class ScheduleOverlap(AutomationError):
    """A run-all was requested while another one is in flight."""


class SessionBusy(AutomationError):
    """The run-lock is held by another recording or playback."""

    def __init__(self, owner: str | None):
        super().__init__(f"Browser session busy ({owner or 'unknown'})")
        self.owner = owner


class RecipeNotFound(AutomationError):
    def __init__(self, recipe_id: str):
        super().__init__(f"Recipe not found: {recipe_id}")
        self.recipe_id = recipe_id


class PlaybackCancelled(AutomationError):
    """Raised inside the player when a cancel request interrupts a wait."""

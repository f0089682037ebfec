"""
Recipe editing.

Edits never mutate the stored recipe in place; each operation returns a new
Recipe with updated_at bumped, ready to be saved.

A recorded visual capture shows the element as it was identified at record
time. Editing what identifies the element (its type or any identification
field) drops the capture so the vision strategy cannot chase a stale
picture. Editing only the value or field label keeps it.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from recipe_models import REDACTED_VALUE, Identification, Recipe, Step, utc_now

logger = logging.getLogger(__name__)

IDENTIFICATION_FIELDS = frozenset(Identification.model_fields)
PAYLOAD_FIELDS = frozenset({"value", "field_label"})
EDITABLE_FIELDS = IDENTIFICATION_FIELDS | PAYLOAD_FIELDS | {"type"}


def _check_index(recipe: Recipe, index: int) -> None:
    if not 0 <= index < len(recipe.steps):
        raise ValueError(f"Step index {index} out of range (recipe has {len(recipe.steps)} steps)")


def _rebuild(recipe: Recipe, steps: list[Step], **updates: Any) -> Recipe:
    data = recipe.model_dump()
    data.update(updates)
    data["steps"] = [step.model_dump() for step in steps]
    data["updated_at"] = utc_now()
    return Recipe(**data)


def delete_step(recipe: Recipe, index: int) -> Recipe:
    _check_index(recipe, index)
    steps = [step for i, step in enumerate(recipe.steps) if i != index]
    logger.info(f"Deleted step {index + 1} from '{recipe.name}'")
    return _rebuild(recipe, steps)


def move_step(recipe: Recipe, from_index: int, to_index: int) -> Recipe:
    """Move a step. Timestamps are reassigned in order so they stay increasing."""
    _check_index(recipe, from_index)
    _check_index(recipe, to_index)
    timestamps = [step.timestamp for step in recipe.steps]
    steps = list(recipe.steps)
    steps.insert(to_index, steps.pop(from_index))
    steps = [step.model_copy(update={"timestamp": ts}) for step, ts in zip(steps, timestamps)]
    logger.info(f"Moved step {from_index + 1} to {to_index + 1} in '{recipe.name}'")
    return _rebuild(recipe, steps)


def edit_step(recipe: Recipe, index: int, **changes: Any) -> Recipe:
    """
    Change fields of one step.

    Accepted keys are the identification fields (text, aria_label,
    placeholder, title, role), type, value and field_label.
    """
    _check_index(recipe, index)
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot edit step field(s): {', '.join(sorted(unknown))}")

    step = recipe.steps[index]
    if step.is_redacted and "value" in changes and changes["value"] != REDACTED_VALUE:
        raise ValueError("A redacted value cannot be replaced with a literal; it is prompted for at playback")

    data = step.model_dump()
    for key, value in changes.items():
        if key in IDENTIFICATION_FIELDS:
            data["identification"][key] = value
        else:
            data[key] = value

    if data["type"] == "click":
        data["value"] = None
        data["field_label"] = None

    if IDENTIFICATION_FIELDS.intersection(changes) or changes.get("type", step.type) != step.type:
        data["visual"] = None

    steps = list(recipe.steps)
    steps[index] = Step(**data)
    logger.info(f"Edited step {index + 1} of '{recipe.name}': {steps[index].describe()}")
    return _rebuild(recipe, steps)


def update_recipe(recipe: Recipe, name: Optional[str] = None, institution: Optional[str] = None,
                  url: Optional[str] = None, enabled: Optional[bool] = None) -> Recipe:
    updates = {key: value for key, value in
               (("name", name), ("institution", institution), ("url", url), ("enabled", enabled))
               if value is not None}
    if "name" in updates and not updates["name"].strip():
        raise ValueError("Recipe name cannot be empty")
    return _rebuild(recipe, list(recipe.steps), **updates)

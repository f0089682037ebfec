"""
Recipe loader.

Loads recorded recipes from YAML files (for import or inspection outside
the recipe store) and checks them for problems that would make playback
unreliable.
"""

from typing import List
from pathlib import Path

import yaml
from pydantic import ValidationError

from recipe_models import Recipe


def load_recipe(file_path: str) -> Recipe:
    """
    Read a recipe YAML file into a validated Recipe.

    Raises FileNotFoundError for a missing file, ValueError when the document
    is not a recipe, and yaml.YAMLError when it is not YAML at all.
    """
    path = Path(file_path)
    if not path.is_file():
        raise FileNotFoundError(f"Recipe file not found: {file_path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path.name}: expected a mapping at the top level")

    try:
        return Recipe(**data)
    except ValidationError as e:
        # Keep the first problem readable on the command line
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get('loc', ()))
        raise ValueError(f"{location or 'recipe'}: {first.get('msg')}") from e


def validate_recipe(recipe: Recipe) -> List[str]:
    """
    Validate a recipe and return a list of warnings (not errors).

    Args:
        recipe: Recipe to validate

    Returns:
        List of warning messages (empty if no warnings)
    """
    warnings = []

    if not recipe.url.startswith('http://') and not recipe.url.startswith('https://'):
        warnings.append(f"URL may be invalid (missing http/https): {recipe.url}")

    if not recipe.steps:
        warnings.append("Recipe has no steps - playback will only open the start page")

    for index, step in enumerate(recipe.steps, start=1):
        if step.is_redacted and not step.field_label:
            warnings.append(f"Step {index}: redacted value has no field label to prompt with")

        if step.identification.is_empty() and step.context.element_index is None:
            warnings.append(f"Step {index}: no text or structural descriptors, "
                            f"will rely on vision or coordinates")

        if step.type != 'click' and step.value is None:
            warnings.append(f"Step {index}: {step.type} step has no value")

    missing_visuals = sum(1 for step in recipe.steps if not step.has_visual)
    if missing_visuals:
        warnings.append(f"{missing_visuals} step(s) have no visual capture - vision fallback unavailable")

    if not recipe.enabled:
        warnings.append("Recipe is disabled and will be skipped by scheduled runs")

    return warnings

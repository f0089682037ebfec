"""
Recipe storage.

Recipes are kept one per YAML file, named by recipe id. The interface is
a Protocol so a database-backed store can be swapped in later.
"""

import logging
from pathlib import Path
from typing import List, Protocol

import yaml

from automation_errors import RecipeNotFound
from recipe_models import Recipe

logger = logging.getLogger(__name__)


class RecipeStore(Protocol):
    """Abstract interface for recipe storage."""

    def list_recipes(self) -> List[Recipe]:
        """All stored recipes, oldest first."""
        ...

    def get(self, recipe_id: str) -> Recipe:
        """Load one recipe. Raises RecipeNotFound."""
        ...

    def save(self, recipe: Recipe) -> Recipe:
        """Insert or replace a recipe."""
        ...

    def delete(self, recipe_id: str) -> None:
        """Remove a recipe. Raises RecipeNotFound."""
        ...


class YAMLRecipeStore:
    """
    YAML-file implementation of RecipeStore.

    Each recipe lives at <recipes_dir>/<id>.yaml.
    """

    def __init__(self, recipes_dir: str | Path):
        self.recipes_dir = Path(recipes_dir)
        self.recipes_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, recipe_id: str) -> Path:
        # Ids come from outside; keep them inside the directory
        if not recipe_id or "/" in recipe_id or "\\" in recipe_id or recipe_id.startswith("."):
            raise RecipeNotFound(recipe_id)
        return self.recipes_dir / f"{recipe_id}.yaml"

    def _read(self, path: Path) -> Recipe:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return Recipe(**data)

    def list_recipes(self) -> List[Recipe]:
        recipes = []
        for path in sorted(self.recipes_dir.glob("*.yaml")):
            try:
                recipes.append(self._read(path))
            except (yaml.YAMLError, ValueError) as e:
                logger.warning(f"Skipping unreadable recipe {path.name}: {e}")
        recipes.sort(key=lambda r: r.created_at)
        return recipes

    def get(self, recipe_id: str) -> Recipe:
        path = self._path(recipe_id)
        if not path.exists():
            raise RecipeNotFound(recipe_id)
        return self._read(path)

    def save(self, recipe: Recipe) -> Recipe:
        path = self._path(recipe.id)
        tmp = path.with_suffix(".yaml.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            yaml.safe_dump(recipe.model_dump(mode="json"), f, sort_keys=False, allow_unicode=True)
        tmp.replace(path)
        logger.info(f"Saved recipe '{recipe.name}' ({recipe.id}, {len(recipe.steps)} steps)")
        return recipe

    def delete(self, recipe_id: str) -> None:
        path = self._path(recipe_id)
        if not path.exists():
            raise RecipeNotFound(recipe_id)
        path.unlink()
        logger.info(f"Deleted recipe {recipe_id}")

"""
Persistence layer for recipes and schedule state.

This package provides storage interfaces with file-based implementations
(YAML for recipes, JSON/JSONL for the schedule), so a database-backed
store can be swapped in later.
"""

from .recipe_store import RecipeStore, YAMLRecipeStore
from .schedule_state import JSONScheduleStateStore, ScheduleStateStore

__all__ = ['RecipeStore', 'YAMLRecipeStore', 'ScheduleStateStore', 'JSONScheduleStateStore']

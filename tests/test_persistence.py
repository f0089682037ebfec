"""
Tests for the YAML recipe store and the JSON schedule state store.
"""

import tempfile
import unittest
from pathlib import Path

from automation_errors import RecipeNotFound
from persistence import JSONScheduleStateStore, YAMLRecipeStore
from recipe_models import PlayerState, Recipe, RunLogEntry, ScheduleState

from fakes import login_recipe_steps


class TestYAMLRecipeStore(unittest.TestCase):
    """Test the YAML recipe store."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = YAMLRecipeStore(Path(self._tmp.name) / "recipes")

    def tearDown(self):
        self._tmp.cleanup()

    def test_save_and_get_keeps_steps(self):
        """A saved recipe reads back unchanged."""
        recipe = Recipe(name="Bank login", url="https://bank.example", steps=login_recipe_steps())
        self.store.save(recipe)

        loaded = self.store.get(recipe.id)

        self.assertEqual(loaded, recipe)
        self.assertEqual(loaded.steps[1].field_label, "Password")
        self.assertTrue((self.store.recipes_dir / f"{recipe.id}.yaml").exists())

    def test_list_sorted_by_creation(self):
        """Recipes are listed oldest first."""
        b = Recipe(name="B", url="https://b.example", created_at="2024-02-01T00:00:00+00:00")
        a = Recipe(name="A", url="https://a.example", created_at="2024-01-01T00:00:00+00:00")
        self.store.save(b)
        self.store.save(a)
        self.assertEqual([r.name for r in self.store.list_recipes()], ["A", "B"])

    def test_unreadable_file_is_skipped(self):
        """A broken file does not hide the others."""
        self.store.save(Recipe(name="Good", url="https://a.example"))
        (self.store.recipes_dir / "broken.yaml").write_text("name: [unclosed", encoding="utf-8")
        self.assertEqual([r.name for r in self.store.list_recipes()], ["Good"])

    def test_missing_recipe(self):
        """Unknown ids raise RecipeNotFound."""
        with self.assertRaises(RecipeNotFound):
            self.store.get("missing")
        with self.assertRaises(RecipeNotFound):
            self.store.delete("missing")

    def test_path_traversal_rejected(self):
        """Ids cannot escape the recipes directory."""
        with self.assertRaises(RecipeNotFound):
            self.store.get("../etc/passwd")

    def test_delete(self):
        """Deleted recipes disappear from the listing."""
        recipe = self.store.save(Recipe(name="Gone", url="https://a.example"))
        self.store.delete(recipe.id)
        self.assertEqual(self.store.list_recipes(), [])


class TestJSONScheduleStateStore(unittest.TestCase):
    """Test the schedule state and run log store."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = JSONScheduleStateStore(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_defaults_when_nothing_saved(self):
        """An empty directory gives default state and no runs."""
        self.assertEqual(self.store.load(), ScheduleState())
        self.assertEqual(self.store.recent_runs(), [])

    def test_round_trip_resets_run_flags(self):
        """Saved state reloads with run flags cleared."""
        self.store.save(ScheduleState(is_running=True, current_recording_name="Bank login",
                                      last_run_at="2024-01-01T06:00:00+00:00",
                                      cron_expr="0 6 * * *", interval="daily", enabled=True))
        state = self.store.load()
        self.assertFalse(state.is_running)
        self.assertIsNone(state.current_recording_name)
        self.assertEqual(state.cron_expr, "0 6 * * *")
        self.assertEqual(state.last_run_at, "2024-01-01T06:00:00+00:00")
        self.assertTrue(state.enabled)

    def test_corrupt_state_falls_back_to_defaults(self):
        """A corrupt state file gives default state."""
        self.store.state_file.write_text("{not json", encoding="utf-8")
        self.assertEqual(self.store.load(), ScheduleState())

    def test_run_log_keeps_latest(self):
        """The run log returns the newest entries."""
        for i in range(5):
            self.store.append_run(RunLogEntry(
                recipe_id=f"r{i}", recipe_name=f"Recipe {i}", state=PlayerState.SUCCEEDED,
                started_at="2024-01-01T06:00:00+00:00", finished_at="2024-01-01T06:01:00+00:00",
            ))
        runs = self.store.recent_runs(limit=2)
        self.assertEqual([r.recipe_id for r in runs], ["r3", "r4"])
        self.assertEqual(len(self.store.recent_runs()), 5)


if __name__ == '__main__':
    unittest.main()

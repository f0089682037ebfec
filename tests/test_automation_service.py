"""
End-to-end tests through the service boundary: record, save, play with a
credential supplied through the prompt broker, edit and cancel.
"""

import asyncio
import tempfile
import unittest

from automation_errors import RecipeNotFound, SessionBusy
from automation_service import AutomationService
from persistence.recipe_store import YAMLRecipeStore
from persistence.schedule_state import JSONScheduleStateStore
from recipe_models import REDACTED_VALUE, PlayerState, Recipe

from fakes import FakeSession, FakeSessionFactory, RecordingSleep, login_recipe_steps, make_step, wait_until

SECRET = "correct horse battery staple"


class ServiceTestCase(unittest.IsolatedAsyncioTestCase):
    """Service wired to fake sessions and temporary stores."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.recipe_store = YAMLRecipeStore(f"{self._tmp.name}/recipes")
        self.state_store = JSONScheduleStateStore(f"{self._tmp.name}/schedule")

    def tearDown(self):
        self._tmp.cleanup()

    async def asyncSetUp(self):
        self.playback = FakeSessionFactory()
        self.recording_session = FakeSession()
        self.service = AutomationService(
            self.recipe_store,
            self.state_store,
            playback_session_factory=self.playback,
            recording_session_factory=FakeSessionFactory(self.recording_session),
            inter_recipe_delay=0,
            step_delay=(0, 0),
            sleep=RecordingSleep(),
        )

    async def asyncTearDown(self):
        await self.service.aclose()

    def save_login_recipe(self, **kwargs) -> Recipe:
        recipe = Recipe(name="Bank login", institution="Example Bank",
                        url="https://bank.example/login", steps=login_recipe_steps(), **kwargs)
        return self.recipe_store.save(recipe)

    async def answer_prompt(self, value):
        await wait_until(lambda: self.service.pending_prompts())
        prompt = self.service.pending_prompts()[0]
        self.assertEqual(prompt.field_label, "Password")
        self.assertEqual((prompt.step_number, prompt.total_steps), (2, 2))
        self.assertEqual(self.service.player.state, PlayerState.PROMPTING)
        return self.service.supply_credential(prompt.id, value)


class TestTriggerExecute(ServiceTestCase):
    """Test on-demand playback through the service."""

    async def test_login_scenario(self):
        """Login recipe plays with a supplied secret that never reaches logs or results."""
        self.save_login_recipe()

        with self.assertLogs(level="DEBUG") as logs:
            task = asyncio.create_task(self.service.trigger_execute())
            self.assertTrue(await self.answer_prompt(SECRET))
            result = await asyncio.wait_for(task, timeout=1)

        self.assertEqual(result.state, PlayerState.SUCCEEDED)
        self.assertEqual(len(result.outcomes), 2)
        self.assertEqual([o.strategy for o in result.outcomes], ["text", "text"])
        self.assertEqual(self.service.player.history.count(PlayerState.PROMPTING), 1)
        self.assertIn(("fill", 2, SECRET), self.playback.session.actions)

        self.assertNotIn(SECRET, result.model_dump_json())
        self.assertNotIn(SECRET, "\n".join(logs.output))
        self.assertIs(self.service.last_result, result)
        self.assertEqual(self.service.pending_prompts(), [])

    async def test_declined_credential_cancels(self):
        """Declining the credential prompt cancels the run."""
        self.save_login_recipe()
        task = asyncio.create_task(self.service.trigger_execute())
        await wait_until(lambda: self.service.pending_prompts())
        self.assertTrue(self.service.decline_credential(self.service.pending_prompts()[0].id))
        result = await asyncio.wait_for(task, timeout=1)
        self.assertEqual(result.state, PlayerState.CANCELLED)

    async def test_cancel_playback_while_prompting(self):
        """Cancelling during a prompt ends the run and clears the prompt."""
        self.save_login_recipe()
        task = asyncio.create_task(self.service.trigger_execute())
        await wait_until(lambda: self.service.pending_prompts())
        self.assertTrue(self.service.cancel_playback())
        result = await asyncio.wait_for(task, timeout=1)
        self.assertEqual(result.state, PlayerState.CANCELLED)
        self.assertFalse(self.service.run_lock.locked())
        self.assertEqual(self.service.pending_prompts(), [])

    async def test_unknown_prompt(self):
        """Answering an unknown prompt id is refused."""
        self.assertFalse(self.service.supply_credential("nope", "x"))
        self.assertFalse(self.service.decline_credential("nope"))

    async def test_default_recipe_is_most_recently_updated_enabled(self):
        """The default recipe is the latest updated enabled one."""
        older = self.recipe_store.save(Recipe(name="Older", url="https://a.example",
                                              steps=[make_step(text="Login")],
                                              updated_at="2024-01-01T00:00:00+00:00"))
        self.recipe_store.save(Recipe(name="Disabled", url="https://b.example", enabled=False,
                                      steps=[make_step(text="Login")],
                                      updated_at="2024-03-01T00:00:00+00:00"))
        self.assertEqual(self.service.default_recipe().id, older.id)

        result = await self.service.trigger_execute()
        self.assertEqual(result.recipe_id, older.id)

    async def test_no_recipes(self):
        """With no recipes there is nothing to play."""
        with self.assertRaises(RecipeNotFound):
            await self.service.trigger_execute()

    async def test_structured_capture(self):
        """Structured capture returns the final page."""
        recipe = self.recipe_store.save(Recipe(name="Statement", url="https://a.example",
                                               steps=[make_step(text="Login")]))
        result = await self.service.execute_via_structured_capture(recipe.id)
        self.assertEqual(result.state, PlayerState.SUCCEEDED)
        self.assertEqual(result.captured_page.text, "Balance 100.00")

    async def test_background_playback_rejects_second_start(self):
        """A second background playback is refused while one runs."""
        self.save_login_recipe()
        self.service.start_playback()
        with self.assertRaises(SessionBusy):
            self.service.start_playback()
        self.assertTrue(await self.answer_prompt(SECRET))
        await wait_until(lambda: not self.service.playback_active)
        self.assertEqual(self.service.last_result.state, PlayerState.SUCCEEDED)


class TestRecording(ServiceTestCase):
    """Test recording through the service."""

    async def test_record_and_save(self):
        """Captured interactions become a saved recipe with the secret redacted."""
        await self.service.start_recording_mode("https://bank.example/login")
        queue = self.recording_session.queue
        await queue.put({"type": "click", "timestamp": 10, "url": "https://bank.example/login",
                         "tag": "button", "role": "button", "text": "Login",
                         "x": 100, "y": 200, "width": 80, "height": 30})
        await queue.put({"type": "input", "timestamp": 20, "url": "https://bank.example/login",
                         "tag": "input", "inputType": "password", "placeholder": "Password",
                         "value": SECRET, "x": 100, "y": 150, "width": 200, "height": 30})

        recipe_id = await self.service.save_recording("Bank login", "Example Bank")

        recipe = self.service.get_recipe(recipe_id)
        self.assertEqual(recipe.url, "https://bank.example/login")
        self.assertEqual(len(recipe.steps), 2)
        self.assertEqual(recipe.steps[1].value, REDACTED_VALUE)
        self.assertEqual(recipe.steps[1].field_label, "Password")
        stored = (self.recipe_store.recipes_dir / f"{recipe_id}.yaml").read_text(encoding="utf-8")
        self.assertNotIn(SECRET, stored)
        self.assertFalse(self.service.run_lock.locked())

    async def test_playback_refused_while_recording(self):
        """Playback is refused while recording holds the browser."""
        self.save_login_recipe()
        await self.service.start_recording_mode("https://bank.example/login")
        with self.assertRaises(SessionBusy):
            await self.service.trigger_execute()
        self.assertTrue(await self.service.discard_recording())
        self.assertFalse(await self.service.discard_recording())

    async def test_empty_recording_not_saved(self):
        """An empty recording is rejected and releases the recorder."""
        await self.service.start_recording_mode("https://bank.example/login")
        with self.assertRaises(ValueError):
            await self.service.save_recording("Nothing")
        self.assertEqual(self.service.list_recipes(), [])
        self.assertFalse(self.service.recorder.active)

    async def test_save_without_recording(self):
        """Saving with no active recording is an error."""
        with self.assertRaises(ValueError):
            await self.service.save_recording("Nothing")


class TestEditingAndSchedule(ServiceTestCase):
    """Test recipe editing and schedule control through the service."""

    async def test_edit_step_and_recipe(self):
        """Step and recipe edits are persisted."""
        recipe = self.save_login_recipe()
        updated = self.service.edit_step(recipe.id, 0, text="Sign in")
        self.assertEqual(updated.steps[0].identification.text, "Sign in")
        self.assertEqual(self.service.get_recipe(recipe.id).steps[0].identification.text, "Sign in")

        renamed = self.service.edit_recipe(recipe.id, name="Renamed", enabled=False)
        self.assertEqual(renamed.name, "Renamed")
        self.assertFalse(renamed.enabled)

    async def test_start_schedule_by_interval(self):
        """Named intervals map to cron; unknown names are rejected."""
        state = self.service.start_schedule(interval="weekly")
        self.assertEqual(state.cron_expr, "0 6 * * 1")
        self.assertEqual(state.interval, "weekly")
        with self.assertRaises(ValueError):
            self.service.start_schedule(interval="fortnightly")

    async def test_status(self):
        """Status reports idle recording, playback and schedule."""
        status = self.service.status()
        self.assertFalse(status["recording"]["active"])
        self.assertEqual(status["playback"]["state"], "idle")
        self.assertIsNone(status["schedule"]["next_run_at"])


if __name__ == '__main__':
    unittest.main()

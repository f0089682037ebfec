"""
Tests for turning page interactions into recipe steps.
"""

import asyncio
import unittest

from automation_errors import SessionBusy, SessionLost
from recipe_models import REDACTED_VALUE
from recipe_recorder import (
    CaptureRecorder,
    compose_description,
    field_label_for,
    interaction_to_step,
    is_sensitive,
)
from run_lock import RunLock

from fakes import FakeSession, FakeSessionFactory

URL = "https://bank.example/login"


def click_event(timestamp=1000, **overrides):
    raw = {
        "type": "click", "timestamp": timestamp, "url": URL,
        "pointerX": 130, "pointerY": 210,
        "tag": "button", "role": "button", "text": "Login",
        "formIndex": 0, "elementIndex": 2, "nearbyText": ["Forgot password?"],
        "parentText": "Sign in", "x": 100, "y": 200, "width": 80, "height": 30,
    }
    raw.update(overrides)
    return raw


def input_event(value, timestamp=2000, **overrides):
    raw = {
        "type": "input", "timestamp": timestamp, "url": URL, "value": value,
        "tag": "input", "role": "textbox", "placeholder": "Username", "inputType": "text",
        "name": "username", "formIndex": 0, "elementIndex": 0, "nearbyText": ["Username"],
        "x": 100, "y": 100, "width": 200, "height": 30,
    }
    raw.update(overrides)
    return raw


class BrokenDescriber:
    """Describer whose backend is down."""

    async def describe(self, screenshot, identification):
        raise RuntimeError("vision backend 503")


class TestInteractionToStep(unittest.TestCase):
    """Test turning raw interactions into steps."""

    def test_click_descriptors(self):
        """A click keeps its descriptors, context and coordinates."""
        step = interaction_to_step(click_event())
        self.assertEqual(step.type, "click")
        self.assertEqual(step.identification.text, "Login")
        self.assertEqual(step.identification.role, "button")
        self.assertEqual(step.context.element_index, 2)
        self.assertEqual(step.context.nearby_text, ["Forgot password?"])
        self.assertEqual((step.coordinates.x, step.coordinates.y), (130, 210))
        self.assertEqual((step.coordinates.element_x, step.coordinates.element_y), (140, 215))
        self.assertIsNone(step.value)

    def test_non_increasing_timestamp_is_bumped(self):
        """Out-of-order timestamps are bumped past the previous one."""
        step = interaction_to_step(click_event(timestamp=500), previous_timestamp=900)
        self.assertEqual(step.timestamp, 901)

    def test_unknown_type_ignored(self):
        """Unknown interaction types are dropped."""
        self.assertIsNone(interaction_to_step({"type": "scroll", "timestamp": 1}))

    def test_password_value_is_redacted(self):
        """Password values are replaced by the sentinel."""
        step = interaction_to_step(input_event("hunter2", inputType="password", name="pass",
                                               placeholder="Password", nearbyText=["Password"]))
        self.assertEqual(step.value, REDACTED_VALUE)
        self.assertTrue(step.is_redacted)
        self.assertEqual(step.field_label, "Password")
        self.assertNotIn("hunter2", step.model_dump_json())

    def test_plain_value_kept(self):
        """Ordinary values are kept as typed."""
        step = interaction_to_step(input_event("alice"))
        self.assertEqual(step.value, "alice")
        self.assertIsNone(step.field_label)


class TestSensitiveFields(unittest.TestCase):
    """Test sensitive field detection and labelling."""

    def test_detection(self):
        """Password, PIN, SSN and one-time-code fields are sensitive."""
        self.assertTrue(is_sensitive({"inputType": "password"}))
        self.assertTrue(is_sensitive({"autocomplete": "one-time-code"}))
        self.assertTrue(is_sensitive({"name": "user_pin"}))
        self.assertTrue(is_sensitive({"domId": "ssn-field"}))
        self.assertFalse(is_sensitive({"name": "spinner"}))
        self.assertFalse(is_sensitive({"inputType": "text", "name": "username"}))

    def test_field_label_preference(self):
        """Field labels prefer aria-label, then nearby text."""
        self.assertEqual(field_label_for({"ariaLabel": "Member PIN", "placeholder": "PIN"}), "Member PIN")
        self.assertEqual(field_label_for({"nearbyText": ["Passcode"], "placeholder": "****"}), "Passcode")
        self.assertEqual(field_label_for({"inputType": "password"}), "Password")

    def test_compose_description(self):
        """The fallback description names role, text and surroundings."""
        self.assertEqual(compose_description(click_event()), "button labelled 'Login' near 'Forgot password?'")


class TestCaptureRecorder(unittest.IsolatedAsyncioTestCase):
    """Test the recorder against a fake session."""

    async def asyncSetUp(self):
        self.lock = RunLock()
        self.session = FakeSession()
        self.factory = FakeSessionFactory(self.session)
        self.recorder = CaptureRecorder(self.lock, session_factory=self.factory)

    async def test_records_steps_in_arrival_order(self):
        """Steps are recorded in arrival order and the lock is released on stop."""
        recording = await self.recorder.start(URL)
        self.assertTrue(self.lock.locked())
        self.assertEqual(self.session.url, URL)

        await self.session.queue.put(click_event(timestamp=1000))
        await self.session.queue.put(input_event("alice", timestamp=2000))
        await self.session.queue.put({"type": "hover", "timestamp": 2500})
        await self.session.queue.put(click_event(timestamp=3000, text="Continue"))
        steps = await self.recorder.stop()

        self.assertEqual([s.type for s in steps], ["click", "input", "click"])
        self.assertEqual(steps[2].identification.text, "Continue")
        self.assertEqual(recording.target_url, URL)
        self.assertFalse(self.recorder.active)
        self.assertFalse(self.lock.locked())
        self.assertEqual(self.factory.closed, 1)

    async def test_visual_capture(self):
        """Each step gets a screenshot and description."""
        await self.recorder.start(URL)
        await self.session.queue.put(click_event())
        steps = await self.recorder.stop()
        visual = steps[0].visual
        self.assertIsNotNone(visual)
        self.assertEqual(visual.ai_description, "button labelled 'Login' near 'Forgot password?'")
        self.assertEqual(visual.bounding_box.width, 80)

    async def test_visual_skipped_after_navigation(self):
        """No visual is taken once the page has moved on."""
        await self.recorder.start(URL)
        await self.session.queue.put(click_event(url="https://bank.example/other"))
        steps = await self.recorder.stop()
        self.assertIsNone(steps[0].visual)

    async def test_consecutive_inputs_on_same_field_coalesce(self):
        """Repeated input on one field keeps the last value."""
        await self.recorder.start(URL)
        await self.session.queue.put(input_event("al", timestamp=1000))
        await self.session.queue.put(input_event("alice", timestamp=1500))
        steps = await self.recorder.stop()
        self.assertEqual(len(steps), 1)
        self.assertEqual(steps[0].value, "alice")

    async def test_second_start_is_busy(self):
        """A second recording is refused while one is active."""
        await self.recorder.start(URL)
        other = CaptureRecorder(self.lock, session_factory=FakeSessionFactory())
        with self.assertRaises(SessionBusy):
            await other.start(URL)
        await self.recorder.discard()

    async def test_discard_drops_steps_and_releases(self):
        """Discarding drops the steps and frees the lock."""
        await self.recorder.start(URL)
        await self.session.queue.put(click_event())
        await asyncio.sleep(0)
        await self.recorder.discard()
        self.assertFalse(self.recorder.active)
        self.assertFalse(self.lock.locked())
        self.assertEqual(await self.recorder.stop(), [])

    async def test_sensitive_field_gets_no_screenshot(self):
        """A sensitive field is never screenshotted."""
        await self.recorder.start(URL)
        await self.session.queue.put(input_event("123-45-6789", name="ssn", placeholder="SSN",
                                                 nearbyText=["Social security number"]))
        steps = await self.recorder.stop()
        self.assertEqual(steps[0].value, REDACTED_VALUE)
        self.assertIsNone(steps[0].visual)
        self.assertNotIn("123-45-6789", steps[0].model_dump_json())

    async def test_failing_describer_keeps_the_recording(self):
        """A failing describer falls back to recorded descriptors."""
        recorder = CaptureRecorder(self.lock, session_factory=self.factory, describer=BrokenDescriber())
        await recorder.start(URL)
        await self.session.queue.put(click_event(timestamp=1000))
        await self.session.queue.put(click_event(timestamp=2000, text="Continue"))
        with self.assertLogs("recipe_recorder", level="WARNING"):
            steps = await recorder.stop()
        self.assertEqual([s.identification.text for s in steps], ["Login", "Continue"])
        self.assertEqual(steps[0].visual.ai_description, "button labelled 'Login' near 'Forgot password?'")
        self.assertFalse(self.lock.locked())

    async def test_failed_start_releases_lock(self):
        """A failed start releases the lock."""
        class BrokenSession(FakeSession):
            async def navigate(self, url):
                raise SessionLost("browser closed")

        recorder = CaptureRecorder(self.lock, session_factory=FakeSessionFactory(BrokenSession()))
        with self.assertRaises(SessionLost):
            await recorder.start(URL)
        self.assertFalse(self.lock.locked())
        self.assertFalse(recorder.active)


if __name__ == '__main__':
    unittest.main()

"""
Tests for the command-line argument handling.
"""

import contextlib
import io
import unittest
from unittest import mock

import automation_config
from automation_cli import build_parser, playback_headless


class TestParser(unittest.TestCase):
    """Test subcommand parsing."""

    def test_play_arguments(self):
        """Play accepts an optional recipe id and the structured flag."""
        args = build_parser().parse_args(["play", "3f2a9c1d", "--structured"])
        self.assertEqual(args.command, "play")
        self.assertEqual(args.recipe_id, "3f2a9c1d")
        self.assertTrue(args.structured)
        self.assertIsNone(args.file)

    def test_schedule_interval_and_cron_are_exclusive(self):
        """Schedule takes either a named interval or a cron expression, not both."""
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args(["schedule", "--interval", "daily", "--cron", "0 6 * * *"])

    def test_unknown_interval_rejected(self):
        """Only the known interval names are accepted."""
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args(["schedule", "--interval", "fortnightly"])


class TestBrowserVisibility(unittest.TestCase):
    """Test how the playback browser mode is chosen."""

    def test_headless_by_default(self):
        """Without --visible the configured headless setting applies."""
        with mock.patch.object(automation_config, "HEADLESS", True):
            self.assertTrue(playback_headless(build_parser().parse_args(["list"])))

    def test_visible_flag_shows_the_browser(self):
        """--visible overrides a headless configuration."""
        with mock.patch.object(automation_config, "HEADLESS", True):
            self.assertFalse(playback_headless(build_parser().parse_args(["--visible", "list"])))

    def test_headless_flag_is_gone(self):
        """There is no --headless flag; headless is the default, not an option."""
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args(["--headless", "list"])


if __name__ == '__main__':
    unittest.main()

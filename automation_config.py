"""
Configuration settings for recipe recording, playback and scheduling.

Every value can be overridden with an AUTOMATION_* environment variable.
"""

import os
from pathlib import Path


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Root directory for everything the engine writes
DATA_DIR = Path(os.environ.get("AUTOMATION_DATA_DIR", "output"))

# One YAML file per recorded recipe
RECIPES_DIR = Path(os.environ.get("AUTOMATION_RECIPES_DIR", str(DATA_DIR / "recipes")))

# schedule_state.json and run_log.jsonl live here
SCHEDULE_STATE_DIR = Path(os.environ.get("AUTOMATION_SCHEDULE_DIR", str(DATA_DIR / "schedule")))

# Cookies shared between recording and playback sessions so a
# demonstrated login carries over into unattended runs
COOKIES_FILE = Path(os.environ.get(
    "AUTOMATION_COOKIES_FILE", str(DATA_DIR / "browser_session" / "cookies.json")
))

# Files downloaded during playback (e.g. transaction exports)
DOWNLOADS_DIR = Path(os.environ.get("AUTOMATION_DOWNLOADS_DIR", str(DATA_DIR / "downloads")))

# Browser headless mode for playback
# Recording always runs with a visible window
HEADLESS = _env_bool("AUTOMATION_HEADLESS", True)

# Retry attempts per step after the first try
RETRY_ATTEMPTS = int(os.environ.get("AUTOMATION_RETRY_ATTEMPTS", "3"))

# Base delay for exponential backoff: delay = base * 2^attempt
RETRY_DELAY_MS = int(os.environ.get("AUTOMATION_RETRY_DELAY_MS", "2000"))

# How long playback waits for a credential before failing the run
PROMPT_TIMEOUT_SECONDS = float(os.environ.get("AUTOMATION_PROMPT_TIMEOUT", "300"))

# Minimum context similarity (0-1) for a structural match to be accepted
STRUCTURAL_MATCH_THRESHOLD = float(os.environ.get("AUTOMATION_STRUCTURAL_THRESHOLD", "0.6"))

# Cron used when scheduling is enabled without an explicit expression
DEFAULT_SCHEDULE_CRON = os.environ.get("AUTOMATION_SCHEDULE_CRON", "0 6 * * *")

# Pause between recipes during a run-all
INTER_RECIPE_DELAY_SECONDS = float(os.environ.get("AUTOMATION_INTER_RECIPE_DELAY", "2"))

# Human-like pause after each action (seconds, min/max)
STEP_DELAY_RANGE = (0.5, 1.5)

# Interactions buffered between the page and the recorder
RECORDER_QUEUE_SIZE = int(os.environ.get("AUTOMATION_RECORDER_QUEUE_SIZE", "256"))

# Capture an element screenshot and description for every recorded step
CAPTURE_VISUALS = _env_bool("AUTOMATION_CAPTURE_VISUALS", True)

# Port for api_server.py
API_PORT = int(os.environ.get("AUTOMATION_API_PORT", "8090"))

# The API accepts credentials, so only listen locally unless told otherwise
API_HOST = os.environ.get("AUTOMATION_API_HOST", "127.0.0.1")

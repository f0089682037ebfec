#!/usr/bin/env python3
"""
Automation CLI

Record, replay and schedule recipes from the terminal.

Usage:
    python automation_cli.py record <url> --name <name> [--institution <name>]
    python automation_cli.py play [<recipe_id>] [--file <recipe.yaml>] [--structured] [--visible]
    python automation_cli.py run-all
    python automation_cli.py schedule [--interval daily | --cron "0 6 * * *"]
    python automation_cli.py list
"""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from functools import partial
from typing import Optional

import automation_config
from automation_errors import AutomationError
from automation_service import AutomationService
from browser_session import open_browser_session
from persistence.recipe_store import YAMLRecipeStore
from persistence.schedule_state import JSONScheduleStateStore
from recipe_loader import load_recipe
from scheduler import INTERVAL_TO_CRON

logger = logging.getLogger(__name__)


def output_json(data):
    print(json.dumps(data, indent=2, default=str))


class TerminalCredentialPrompt:
    """Asks for secrets on the terminal without echoing them."""

    async def request(self, field_label: str, step_number: int, total_steps: int) -> Optional[str]:
        prompt = f"[Step {step_number}/{total_steps}] {field_label} (leave empty to cancel): "
        value = await asyncio.to_thread(getpass.getpass, prompt)
        return value or None


def playback_headless(args) -> bool:
    return automation_config.HEADLESS and not args.visible


def build_service(args) -> AutomationService:
    service = AutomationService(
        recipe_store=YAMLRecipeStore(automation_config.RECIPES_DIR),
        state_store=JSONScheduleStateStore(automation_config.SCHEDULE_STATE_DIR),
        playback_session_factory=partial(open_browser_session, headless=playback_headless(args)),
    )
    service.player.credential_prompt = TerminalCredentialPrompt()
    return service


async def cmd_record(service: AutomationService, args):
    recording = await service.start_recording_mode(args.url)
    print(f"Recording {recording.id} - perform the task in the browser window.")
    await asyncio.to_thread(input, "Press Enter to save the recording (Ctrl-C to discard)... ")
    recipe_id = await service.save_recording(args.name, args.institution)
    recipe = service.get_recipe(recipe_id)
    output_json({
        "recipe_id": recipe_id,
        "name": recipe.name,
        "steps": [step.describe() for step in recipe.steps],
    })


async def cmd_play(service: AutomationService, args):
    if args.file:
        recipe = load_recipe(args.file)
        result = await service.player.execute(recipe, capture_page=args.structured)
    elif args.structured:
        result = await service.execute_via_structured_capture(args.recipe_id)
    else:
        result = await service.trigger_execute(args.recipe_id)

    data = result.model_dump(mode="json")
    if data.get("captured_page") and not args.full_page:
        # The HTML is usually far too long for a terminal
        data["captured_page"].pop("html", None)
    output_json(data)
    if result.state.value != "succeeded":
        sys.exit(1)


async def cmd_run_all(service: AutomationService, args):
    service.scheduler.inter_recipe_delay = args.delay
    await service.scheduler.run_all_now()
    output_json([entry.model_dump(mode="json") for entry in service.scheduler.recent_runs(args.limit)])


async def cmd_schedule(service: AutomationService, args):
    service.scheduler.init_scheduler()
    state = service.start_schedule(cron_expr=args.cron, interval=args.interval)
    print(f"Scheduled: {state.cron_expr}" + (f" ({state.interval})" if state.interval else ""))
    print(f"Next run: {service.scheduler.next_run_at()}")
    print("Press Ctrl-C to stop.")
    try:
        await asyncio.Event().wait()
    finally:
        service.scheduler.stop()


async def cmd_list(service: AutomationService, args):
    output_json([
        {
            "id": recipe.id,
            "name": recipe.name,
            "institution": recipe.institution,
            "url": recipe.url,
            "enabled": recipe.enabled,
            "steps": len(recipe.steps),
            "updated_at": recipe.updated_at,
        }
        for recipe in service.list_recipes()
    ])


async def run(args):
    commands = {
        "record": cmd_record,
        "play": cmd_play,
        "run-all": cmd_run_all,
        "schedule": cmd_schedule,
        "list": cmd_list,
    }
    service = build_service(args)
    try:
        await commands[args.command](service, args)
    finally:
        await service.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recipe automation CLI")
    parser.add_argument("--visible", action="store_true", help="Run playback with a visible browser")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    # record
    p_rec = sub.add_parser("record", help="Record a new recipe")
    p_rec.add_argument("url")
    p_rec.add_argument("--name", required=True, help="Recipe name")
    p_rec.add_argument("--institution", help="Institution the recipe belongs to")

    # play
    p_play = sub.add_parser("play", help="Play a recipe (default: most recently updated)")
    p_play.add_argument("recipe_id", nargs="?")
    p_play.add_argument("--file", help="Play a recipe YAML file instead of a stored recipe")
    p_play.add_argument("--structured", action="store_true", help="Capture the final page after playback")
    p_play.add_argument("--full-page", action="store_true", help="Include captured HTML in the output")

    # run-all
    p_all = sub.add_parser("run-all", help="Play every enabled recipe once")
    p_all.add_argument("--delay", type=float, default=automation_config.INTER_RECIPE_DELAY_SECONDS,
                       help="Seconds between recipes")
    p_all.add_argument("--limit", type=int, default=20, help="Run log entries to print")

    # schedule
    p_sched = sub.add_parser("schedule", help="Run every enabled recipe on a schedule")
    group = p_sched.add_mutually_exclusive_group()
    group.add_argument("--interval", choices=list(INTERVAL_TO_CRON))
    group.add_argument("--cron", help="Cron expression (default: %s)" % automation_config.DEFAULT_SCHEDULE_CRON)

    # list
    sub.add_parser("list", help="List stored recipes")

    return parser


def main():
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)
    except (AutomationError, ValueError, FileNotFoundError) as e:
        output_json({"error": str(e), "command": args.command})
        sys.exit(1)


if __name__ == "__main__":
    main()

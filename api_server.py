"""
Automation API Server

FastAPI server exposing recording, playback, credential prompts and
scheduling over HTTP, for a desktop shell or any other HTTP client.

Usage:
    python api_server.py
    # or
    python -m uvicorn api_server:app --host 127.0.0.1 --port 8090
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import automation_config
from automation_errors import RecipeNotFound, SessionBusy
from automation_service import AutomationService
from persistence.recipe_store import YAMLRecipeStore
from persistence.schedule_state import JSONScheduleStateStore
from scheduler import INTERVAL_TO_CRON

logger = logging.getLogger(__name__)


def build_service() -> AutomationService:
    return AutomationService(
        recipe_store=YAMLRecipeStore(automation_config.RECIPES_DIR),
        state_store=JSONScheduleStateStore(automation_config.SCHEDULE_STATE_DIR),
    )


# --- Request/Response models ---


class RecordingStartRequest(BaseModel):
    url: str


class RecordingSaveRequest(BaseModel):
    name: str
    institution: Optional[str] = None


class RecipeUpdateRequest(BaseModel):
    name: Optional[str] = None
    institution: Optional[str] = None
    url: Optional[str] = None
    enabled: Optional[bool] = None


class StepEditRequest(BaseModel):
    type: Optional[str] = None
    text: Optional[str] = None
    aria_label: Optional[str] = None
    placeholder: Optional[str] = None
    title: Optional[str] = None
    role: Optional[str] = None
    value: Optional[str] = None
    field_label: Optional[str] = None


class StepMoveRequest(BaseModel):
    to_index: int


class PlaybackRequest(BaseModel):
    recipe_id: Optional[str] = None
    wait: bool = False


class CredentialRequest(BaseModel):
    value: str = Field(min_length=1)


class ScheduleStartRequest(BaseModel):
    cron_expr: Optional[str] = None
    interval: Optional[str] = None


# --- Routes ---

router = APIRouter()


def get_service(request: Request) -> AutomationService:
    return request.app.state.service


def _recipe_summary(recipe) -> dict:
    return {
        "id": recipe.id,
        "name": recipe.name,
        "institution": recipe.institution,
        "url": recipe.url,
        "enabled": recipe.enabled,
        "steps": len(recipe.steps),
        "created_at": recipe.created_at,
        "updated_at": recipe.updated_at,
    }


def _spawn(request: Request, coro) -> asyncio.Task:
    # Keep a reference so the task is not garbage collected mid-run
    tasks: set = request.app.state.background
    task = asyncio.create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/api/status")
async def status(service: AutomationService = Depends(get_service)):
    return service.status()


# Recording


@router.post("/api/recording/start")
async def recording_start(req: RecordingStartRequest, service: AutomationService = Depends(get_service)):
    if not req.url.startswith(("http://", "https://")):
        raise HTTPException(status_code=422, detail="URL must start with http:// or https://")
    recording = await service.start_recording_mode(req.url)
    return {"recording_id": recording.id, "url": recording.target_url, "started_at": recording.started_at}


@router.post("/api/recording/stop")
async def recording_stop(req: RecordingSaveRequest, service: AutomationService = Depends(get_service)):
    recipe_id = await service.save_recording(req.name, req.institution)
    return {"recipe_id": recipe_id}


@router.post("/api/recording/discard")
async def recording_discard(service: AutomationService = Depends(get_service)):
    if not await service.discard_recording():
        raise HTTPException(status_code=404, detail="No active recording")
    return {"status": "discarded"}


# Recipes


@router.get("/api/recipes")
async def list_recipes(service: AutomationService = Depends(get_service)):
    return [_recipe_summary(r) for r in service.list_recipes()]


@router.get("/api/recipes/{recipe_id}")
async def get_recipe(recipe_id: str, service: AutomationService = Depends(get_service)):
    return service.get_recipe(recipe_id).model_dump(mode="json")


@router.patch("/api/recipes/{recipe_id}")
async def update_recipe(recipe_id: str, req: RecipeUpdateRequest,
                        service: AutomationService = Depends(get_service)):
    recipe = service.edit_recipe(recipe_id, **req.model_dump(exclude_unset=True))
    return _recipe_summary(recipe)


@router.delete("/api/recipes/{recipe_id}")
async def delete_recipe(recipe_id: str, service: AutomationService = Depends(get_service)):
    service.delete_recipe(recipe_id)
    return {"status": "deleted", "recipe_id": recipe_id}


@router.patch("/api/recipes/{recipe_id}/steps/{index}")
async def edit_step(recipe_id: str, index: int, req: StepEditRequest,
                    service: AutomationService = Depends(get_service)):
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=422, detail="No changes given")
    recipe = service.edit_step(recipe_id, index, **changes)
    step = recipe.steps[index]
    return {**step.model_dump(mode="json", exclude={"visual"}), "has_visual": step.has_visual}


@router.delete("/api/recipes/{recipe_id}/steps/{index}")
async def delete_step(recipe_id: str, index: int, service: AutomationService = Depends(get_service)):
    recipe = service.delete_step(recipe_id, index)
    return _recipe_summary(recipe)


@router.post("/api/recipes/{recipe_id}/steps/{index}/move")
async def move_step(recipe_id: str, index: int, req: StepMoveRequest,
                    service: AutomationService = Depends(get_service)):
    recipe = service.move_step(recipe_id, index, req.to_index)
    return [step.describe() for step in recipe.steps]


# Playback


async def _playback(req: PlaybackRequest, service: AutomationService, capture_page: bool):
    if req.wait:
        if capture_page:
            result = await service.execute_via_structured_capture(req.recipe_id)
        else:
            result = await service.trigger_execute(req.recipe_id)
        return result.model_dump(mode="json")
    recipe = service.start_playback(req.recipe_id, capture_page=capture_page)
    return JSONResponse(status_code=202, content={"status": "started", "recipe_id": recipe.id,
                                                  "recipe_name": recipe.name})


@router.post("/api/playback/execute")
async def playback_execute(req: PlaybackRequest, service: AutomationService = Depends(get_service)):
    return await _playback(req, service, capture_page=False)


@router.post("/api/playback/structured")
async def playback_structured(req: PlaybackRequest, service: AutomationService = Depends(get_service)):
    return await _playback(req, service, capture_page=True)


@router.post("/api/playback/cancel")
async def playback_cancel(service: AutomationService = Depends(get_service)):
    if not service.cancel_playback():
        raise HTTPException(status_code=404, detail="Nothing is playing")
    return {"status": "cancelling"}


@router.get("/api/playback/status")
async def playback_status(service: AutomationService = Depends(get_service)):
    last = service.last_result
    return {
        **service.player.progress(),
        "last_result": last.model_dump(mode="json") if last else None,
    }


# Credential prompts


@router.get("/api/prompts")
async def list_prompts(service: AutomationService = Depends(get_service)):
    return [p.to_dict() for p in service.pending_prompts()]


@router.post("/api/prompts/{prompt_id}")
async def answer_prompt(prompt_id: str, req: CredentialRequest,
                        service: AutomationService = Depends(get_service)):
    if not service.supply_credential(prompt_id, req.value):
        raise HTTPException(status_code=404, detail="Prompt not found")
    return {"status": "supplied"}


@router.post("/api/prompts/{prompt_id}/decline")
async def decline_prompt(prompt_id: str, service: AutomationService = Depends(get_service)):
    if not service.decline_credential(prompt_id):
        raise HTTPException(status_code=404, detail="Prompt not found")
    return {"status": "declined"}


# Schedule


@router.get("/api/schedule")
async def schedule_status(service: AutomationService = Depends(get_service)):
    return service.status()["schedule"]


@router.get("/api/schedule/intervals")
async def schedule_intervals():
    return dict(INTERVAL_TO_CRON)


@router.post("/api/schedule/start")
async def schedule_start(req: ScheduleStartRequest, service: AutomationService = Depends(get_service)):
    state = service.start_schedule(cron_expr=req.cron_expr, interval=req.interval)
    return state.model_dump(mode="json")


@router.post("/api/schedule/stop")
async def schedule_stop(service: AutomationService = Depends(get_service)):
    return service.scheduler.stop().model_dump(mode="json")


@router.post("/api/schedule/run-now")
async def schedule_run_now(request: Request, service: AutomationService = Depends(get_service)):
    if service.scheduler.running:
        return {"started": False, "reason": "A run-all is already in progress"}
    _spawn(request, service.scheduler.run_all_now())
    return {"started": True}


@router.post("/api/schedule/cancel")
async def schedule_cancel(service: AutomationService = Depends(get_service)):
    if not service.scheduler.cancel_run():
        raise HTTPException(status_code=404, detail="No run-all in progress")
    return {"status": "cancelling"}


@router.get("/api/schedule/log")
async def schedule_log(limit: int = 50, service: AutomationService = Depends(get_service)):
    return [entry.model_dump(mode="json") for entry in service.scheduler.recent_runs(limit)]


# --- App ---


def create_app(service_factory: Callable[[], AutomationService] = build_service) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app):
        app.state.service = service_factory()
        app.state.background = set()
        app.state.service.scheduler.init_scheduler()
        yield
        await app.state.service.aclose()
        for task in list(app.state.background):
            task.cancel()

    app = FastAPI(
        title="Recipe Automation API",
        description="Record, replay and schedule browser recipes",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.exception_handler(RecipeNotFound)
    async def recipe_not_found(request: Request, exc: RecipeNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SessionBusy)
    async def session_busy(request: Request, exc: SessionBusy):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def invalid_value(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=automation_config.API_HOST, port=automation_config.API_PORT)

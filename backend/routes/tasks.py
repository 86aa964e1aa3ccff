"""Task control endpoints: start, stop, status and captured output."""

from fastapi import APIRouter, HTTPException

from artifacts_bot.client import sanitize_name
from backend.supervisor import get_supervisor
from backend.tasks import TaskConflict, TaskNotFound

from .models import StartTaskBody

router = APIRouter()


@router.get("/tasks")
async def list_tasks(character: str | None = None, limit: int = 10):
    """List recent tasks, newest first."""
    supervisor = get_supervisor()
    supervisor.poll()
    return supervisor.list_tasks(character, limit)


@router.post("/tasks/start", status_code=201)
async def start_task(body: StartTaskBody):
    """Spawn a worker for a character."""
    try:
        character = sanitize_name(body.character)
    except ValueError as e:
        raise HTTPException(400, str(e))
    supervisor = get_supervisor()
    try:
        return supervisor.start(character, body.task_type, body.script_name, body.args)
    except TaskConflict as e:
        raise HTTPException(409, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.get("/tasks/{character}")
async def get_task(character: str):
    """Latest task for a character."""
    supervisor = get_supervisor()
    supervisor.poll()
    task = supervisor.status(character)
    if not task:
        raise HTTPException(404, "No task for this character")
    return task


@router.get("/tasks/{character}/output")
async def get_output(character: str):
    """Captured worker output (last 1000 lines)."""
    return {"character": character, "lines": get_supervisor().output(character)}


@router.post("/tasks/{character}/stop")
async def stop_task(character: str):
    """Stop a character's active task."""
    try:
        return get_supervisor().stop(character)
    except TaskNotFound as e:
        raise HTTPException(404, str(e))

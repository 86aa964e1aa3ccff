"""FastAPI API endpoints under /api.

Endpoint groups: health + settings, the loop catalogue, and task control
(start, stop, status, captured output) keyed by character name.
"""

from fastapi import APIRouter

from .loops import router as loops_router
from .settings import router as settings_router
from .tasks import router as tasks_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(loops_router)
router.include_router(tasks_router)

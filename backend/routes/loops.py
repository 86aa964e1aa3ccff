"""Loop catalogue endpoint."""

from fastapi import APIRouter

from artifacts_bot.loops import CATALOG

router = APIRouter()


@router.get("/loops")
async def list_loops():
    """Every loop a worker can run, keyed by script name."""
    return {name: spec.model_dump() for name, spec in sorted(CATALOG.items())}

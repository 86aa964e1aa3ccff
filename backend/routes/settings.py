"""Health check and settings endpoints."""

from fastapi import APIRouter

from artifacts_bot import config

from .models import UpdateSettingsBody

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings():
    """Get config.json settings (default character, bank tile, flush threshold)."""
    return config.get_config()


@router.patch("/settings")
async def update_settings(body: UpdateSettingsBody):
    """Update settings (partial merge)."""
    return config.update_config(body.model_dump(exclude_none=True))

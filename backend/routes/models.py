"""Pydantic request models for API endpoints."""

from pydantic import BaseModel


class StartTaskBody(BaseModel):
    character: str
    script_name: str
    task_type: str = "loop"
    args: list[str] = []


class UpdateSettingsBody(BaseModel):
    default_character: str | None = None
    bank: dict[str, int] | None = None
    flush_threshold: int | None = None

"""Core domain models.

The engine, loops, telemetry queue and supervisor all operate on these types.
Pydantic is used for validation and serialisation at every data boundary:
server responses are parsed into CharacterSnapshot / ActionResult once, and
telemetry records round-trip through spill files as JSON.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Coordinates(BaseModel):
    """A tile on the global map."""

    model_config = ConfigDict(frozen=True)

    x: int
    y: int

    def __str__(self) -> str:
        return f"({self.x}, {self.y})"


class InventorySlot(BaseModel):
    """One occupied inventory slot. Empty slots are dropped while parsing."""

    model_config = ConfigDict(frozen=True)

    code: str
    quantity: int = Field(ge=1)


class CharacterSnapshot(BaseModel):
    """Authoritative view of a character at a point in time.

    Field names follow the server payload; unknown keys are ignored.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    name: str
    x: int = 0
    y: int = 0
    hp: int = 0
    max_hp: int = 0
    cooldown_seconds: float = Field(default=0.0, ge=0, alias="cooldown")
    cooldown_expiration: datetime | None = None
    inventory: list[InventorySlot] = Field(default_factory=list)
    inventory_max_items: int = 0
    skills: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> CharacterSnapshot:
        """Parse a raw server character object.

        Inventory slots with an empty code or zero quantity are skipped, and
        `<skill>_level` keys are collected into `skills`.
        """
        slots = [
            {"code": s["code"], "quantity": s.get("quantity", 1)}
            for s in data.get("inventory") or []
            if s and s.get("code") and s.get("quantity", 1) > 0
        ]
        skills = dict(data.get("skills") or {})
        for key, value in data.items():
            if key.endswith("_level") and isinstance(value, int):
                skills.setdefault(key[: -len("_level")], value)
        fields = {k: v for k, v in data.items() if k not in ("inventory", "skills")}
        return cls.model_validate({**fields, "inventory": slots, "skills": skills})

    @property
    def position(self) -> Coordinates:
        return Coordinates(x=self.x, y=self.y)

    @property
    def items_used(self) -> int:
        return sum(slot.quantity for slot in self.inventory)

    @property
    def capacity(self) -> int:
        return self.inventory_max_items

    def quantity_of(self, code: str) -> int:
        return sum(s.quantity for s in self.inventory if s.code == code)

    def at(self, tile: Coordinates) -> bool:
        return self.x == tile.x and self.y == tile.y


class ServerCooldown(BaseModel):
    """The `cooldown` object attached to every mutating response."""

    model_config = ConfigDict(extra="ignore")

    total_seconds: float = 0.0
    expiration: datetime | None = None


class ActionResult(BaseModel):
    """Result envelope of a mutating call."""

    character_after: CharacterSnapshot
    effect: dict[str, Any] = Field(default_factory=dict)
    server_cooldown: ServerCooldown = Field(default_factory=ServerCooldown)


class ActionRecord(BaseModel):
    """One row per attempted mutating action. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    character: str
    action_type: str
    coordinates: Coordinates | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class InventorySnapshot(BaseModel):
    """Opportunistic capture of a character's inventory vector."""

    model_config = ConfigDict(frozen=True)

    character: str
    items: list[InventorySlot]
    timestamp: datetime = Field(default_factory=utc_now)


class TaskState(str, Enum):
    idle = "idle"
    starting = "starting"
    running = "running"
    stopping = "stopping"
    stopped = "stopped"
    errored = "errored"
    recovered = "recovered"


class TaskRecord(BaseModel):
    """The supervisor's view of one automation task."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    character: str
    task_type: str
    script_name: str
    script_args: list[str] = Field(default_factory=list)
    state: TaskState = TaskState.idle
    process_id: int | None = None
    start_time: datetime | None = None
    last_updated: datetime | None = None
    task_data: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime | None = None

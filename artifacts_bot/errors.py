"""Error taxonomy for the remote game API.

The HTTP client maps every non-2xx response onto exactly one of these classes
(see `client.classify_error`). Downstream code branches on the class, never on
message text.

    Cooldown              server refused: character still in cooldown
    AlreadyAtDestination  idempotent move rejection
    InventoryFull         acting would exceed inventory capacity
    NoResource            nothing to gather / fight on the current tile
    CharacterDead         character must be healed before acting
    RateLimited           HTTP 429
    Transient             5xx and network-level failures
    Fatal                 everything else, including unreadable 2xx bodies

`Cancelled` is raised by the engine itself when the worker is shutting down.
"""

from __future__ import annotations


class GameError(RuntimeError):
    """Base class for every classified remote or engine failure."""

    def __init__(self, message: str = "", *, status: int | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.status = status


class Cooldown(GameError):
    def __init__(self, seconds_left: float, message: str = "", *, status: int | None = None) -> None:
        super().__init__(message or f"Character in cooldown: {seconds_left:.1f} seconds left", status=status)
        self.seconds_left = seconds_left


class AlreadyAtDestination(GameError):
    pass


class InventoryFull(GameError):
    pass


class NoResource(GameError):
    pass


class CharacterDead(GameError):
    pass


class RateLimited(GameError):
    pass


class Transient(GameError):
    """5xx response or a transport failure (`status` is None for the latter)."""


class Fatal(GameError):
    pass


class Cancelled(GameError):
    """The worker was asked to stop; no further actions will be dispatched."""

"""Cooldown clock: how long to wait before a character may act again."""

from __future__ import annotations

from datetime import datetime

from artifacts_bot.models import CharacterSnapshot, utc_now

# Covers clock skew between us and the server plus serialisation jitter.
COOLDOWN_BUFFER = 0.5


def remaining_cooldown(snapshot: CharacterSnapshot, now: datetime | None = None) -> float:
    """Seconds until `cooldown_expiration`, never negative."""
    if snapshot.cooldown_expiration is None:
        return 0.0
    now = now or utc_now()
    return max(0.0, (snapshot.cooldown_expiration - now).total_seconds())


def cooldown_wait(
    snapshot: CharacterSnapshot,
    now: datetime | None = None,
    buffer: float = COOLDOWN_BUFFER,
) -> float:
    """wait = max(0, cooldown_expiration - now) + buffer"""
    return remaining_cooldown(snapshot, now) + buffer

"""Fight whatever lives on a tile, healing between fights."""

from __future__ import annotations

import logging

from artifacts_bot.loops.base import TaskLoop
from artifacts_bot.models import ActionResult, Coordinates

logger = logging.getLogger(__name__)


class FightLoop(TaskLoop):
    name = "fight"

    def __init__(self, engine, spec, tile: Coordinates | None = None, target: int = 0, **kwargs) -> None:
        super().__init__(engine, target=target, **kwargs)
        self.spec = spec
        self.name = spec.name
        tile = tile or spec.tile
        if tile is None:
            raise ValueError(f"{spec.name} needs coordinates, e.g. '(2,0)'")
        self.work_tile = tile
        self.heal_ratio = spec.heal_ratio

    async def act(self) -> ActionResult:
        return await self.engine.fight()

    async def after_act(self, result: ActionResult) -> None:
        after = result.character_after
        if after.max_hp and after.hp < after.max_hp * self.heal_ratio:
            logger.info("[%s] hp low (%d/%d), resting", self.character, after.hp, after.max_hp)
            await self.engine.heal()

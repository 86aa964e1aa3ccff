"""Gather at one tile until the target quantity is banked.

Loops with a refine recipe can turn the haul into its refined form at a
workshop on the way to the bank. The target still counts raw gathers.
"""

from __future__ import annotations

import logging

from artifacts_bot.loops.base import TaskLoop
from artifacts_bot.models import ActionResult, Coordinates

logger = logging.getLogger(__name__)


class GatherLoop(TaskLoop):
    name = "gather"

    def __init__(
        self,
        engine,
        spec,
        tile: Coordinates | None = None,
        target: int = 0,
        refine: bool | None = None,
        **kwargs,
    ) -> None:
        super().__init__(engine, target=target, **kwargs)
        self.spec = spec
        self.name = spec.name
        tile = tile or spec.tile
        if tile is None:
            raise ValueError(f"{spec.name} needs coordinates, e.g. '(2,0)'")
        self.work_tile = tile
        self.produces = spec.item
        self.refine = None
        if spec.refine is not None and (spec.refine.default if refine is None else refine):
            self.refine = spec.refine

    async def act(self) -> ActionResult:
        return await self.engine.gather()

    async def dispose(self) -> None:
        if self.refine is not None:
            await self.refine_haul()
        await super().dispose()

    async def refine_haul(self) -> None:
        """Craft as many refined units as the held raw items allow."""
        snapshot = await self.engine.current()
        held = snapshot.quantity_of(self.produces)
        batch = held // self.refine.per_unit
        if not batch:
            logger.info("[%s] %d %s is not enough to refine, banking as is",
                        self.character, held, self.produces)
            return
        await self.engine.move(self.refine.tile.x, self.refine.tile.y)
        await self.engine.craft(self.refine.item, batch)

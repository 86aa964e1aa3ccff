"""Withdraw a recipe's inputs, craft a batch at a workshop, bank the output.

Cooking is the same cycle with raw fish as the only input.
"""

from __future__ import annotations

from artifacts_bot.loops.base import TaskLoop
from artifacts_bot.models import ActionResult


class CraftLoop(TaskLoop):
    name = "craft"
    acts_per_cycle = 1
    # Crafting consumes its inputs, so a full inventory at the workshop is expected.
    dispose_when_full = False

    def __init__(self, engine, spec, target: int = 0, recycle: bool | None = None, **kwargs) -> None:
        super().__init__(engine, target=target, **kwargs)
        self.spec = spec
        self.name = spec.name
        self.work_tile = spec.tile
        self.produces = spec.item
        self.recycle_output = spec.recycle if recycle is None else recycle

    def required(self) -> dict[str, int]:
        return {code: per_unit * self.spec.batch for code, per_unit in self.spec.recipe.items()}

    async def prepare(self) -> None:
        """Go to the bank, clear unrelated items, withdraw whatever is missing."""
        needed = self.required()
        snapshot = await self.engine.current()
        missing = {
            code: qty - snapshot.quantity_of(code)
            for code, qty in needed.items()
            if snapshot.quantity_of(code) < qty
        }
        if not missing:
            return
        await self.engine.move(self.bank.x, self.bank.y)
        if any(slot.code not in needed for slot in snapshot.inventory):
            await self.engine.deposit_all(keep=needed)
        for code, quantity in missing.items():
            await self.engine.withdraw(code, quantity)

    async def act(self) -> ActionResult:
        return await self.engine.craft(self.spec.item, self.spec.batch)

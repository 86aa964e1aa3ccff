"""Loop framework: the Prepare → Travel → Act* → Dispose cycle.

A concrete loop overrides a few hooks; the framework owns everything else:

  - cycle counter and per-cycle position logging,
  - a capacity check before every act (forced dispose at 100 %, advisory
    logs at 80 % and 95 %), each one enqueuing an inventory snapshot,
  - InventoryFull → dispose, NoResource → wait or advance, CharacterDead →
    heal then travel back,
  - target accounting across cycles and the termination predicate.

Every mutating step goes through the ActionEngine.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from artifacts_bot.db import prune_old_logs
from artifacts_bot.engine import ActionEngine
from artifacts_bot.errors import Cancelled, CharacterDead, InventoryFull, NoResource
from artifacts_bot.models import ActionResult, CharacterSnapshot, Coordinates

logger = logging.getLogger(__name__)

BANK = Coordinates(x=4, y=1)

FORCED_DISPOSE = 1.0
ADVISORY_DISPOSE = 0.95
CAPACITY_WARNING = 0.8


class LoopSummary(BaseModel):
    cycles: int = 0
    acts: int = 0
    produced: int = 0
    reason: str = ""


class TaskLoop:
    """Base class for every automation loop.

    Subclasses set `name`, `work_tile` and `produces`, and implement `act()`.
    `produces=None` counts one unit per successful act (fights).
    """

    name = "loop"
    work_tile: Coordinates = BANK
    produces: str | None = None
    acts_per_cycle: int | None = None
    keep: tuple[str, ...] = ()
    recycle_output = False
    dispose_when_full = True
    no_resource_policy: Literal["wait", "advance"] = "wait"
    no_resource_wait = 30.0

    def __init__(
        self,
        engine: ActionEngine,
        target: int = 0,
        bank: Coordinates = BANK,
        store: Engine | None = None,
    ) -> None:
        self.engine = engine
        self.target = target
        self.bank = bank
        self.store = store
        self.summary = LoopSummary()

    @property
    def character(self) -> str:
        return self.engine.character

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def prepare(self) -> None:
        """Make sure the inputs for one cycle are in the inventory."""

    async def travel(self) -> None:
        await self.engine.move(self.work_tile.x, self.work_tile.y)

    async def act(self) -> ActionResult:
        raise NotImplementedError

    async def after_act(self, result: ActionResult) -> None:
        """Per-act post-check (e.g. heal between fights)."""

    async def dispose(self) -> None:
        """Optionally recycle the output, then bank everything except `keep`."""
        if self.recycle_output and self.produces:
            snapshot = await self.engine.current()
            quantity = snapshot.quantity_of(self.produces)
            if quantity:
                await self.engine.recycle(self.produces, quantity)
        await self.engine.move(self.bank.x, self.bank.y)
        await self.engine.deposit_all(keep=self.keep)

    # ------------------------------------------------------------------
    # Framework
    # ------------------------------------------------------------------

    async def initialize(self) -> CharacterSnapshot:
        if self.store is not None:
            try:
                prune_old_logs(self.store)
            except SQLAlchemyError as e:
                logger.warning("Log pruning skipped: %s", e)
        snapshot = await self.engine.refresh()
        self.engine.record(
            "loop_start",
            coordinates=snapshot.position,
            result={"loop": self.name, "target": self.target},
        )
        logger.info("[%s] starting %s at %s (target: %s)", self.character, self.name,
                    snapshot.position, self.target or "unbounded")
        return snapshot

    def target_met(self) -> bool:
        return self.target > 0 and self.summary.produced >= self.target

    def check_capacity(self) -> bool:
        """True when the inventory is full and the cycle must dispose."""
        snapshot = self.engine.snapshot
        if snapshot is None:
            return False
        self.engine.capture_inventory()
        if not self.dispose_when_full or not snapshot.capacity:
            return False
        used = snapshot.items_used / snapshot.capacity
        if used >= FORCED_DISPOSE:
            logger.info("[%s] inventory full (%d/%d), disposing", self.character,
                        snapshot.items_used, snapshot.capacity)
            return True
        if used >= ADVISORY_DISPOSE:
            logger.info("[%s] inventory nearly full (%d/%d)", self.character,
                        snapshot.items_used, snapshot.capacity)
        elif used >= CAPACITY_WARNING:
            logger.debug("[%s] inventory at %d%%", self.character, int(used * 100))
        return False

    def _count_yield(self, before: CharacterSnapshot, after: CharacterSnapshot) -> int:
        if self.produces is None:
            return 1
        return max(0, after.quantity_of(self.produces) - before.quantity_of(self.produces))

    async def act_phase(self) -> str:
        """Run acts until the cycle ends. Returns why it ended."""
        acts = 0
        while True:
            if self.target_met():
                return "done"
            if self.acts_per_cycle is not None and acts >= self.acts_per_cycle:
                return "done"
            if self.check_capacity():
                return "full"

            before = await self.engine.current()
            try:
                result = await self.act()
            except InventoryFull:
                logger.info("[%s] server reports inventory full", self.character)
                return "full"
            except NoResource:
                if self.no_resource_policy == "advance":
                    logger.info("[%s] nothing here at %s, advancing", self.character, self.work_tile)
                    return "no_resource"
                logger.info("[%s] nothing here at %s, waiting %.0fs", self.character,
                            self.work_tile, self.no_resource_wait)
                await self.engine.pause(self.no_resource_wait)
                continue
            except CharacterDead:
                logger.warning("[%s] died, healing and returning to %s", self.character, self.work_tile)
                await self.engine.heal()
                await self.travel()
                continue

            acts += 1
            self.summary.acts += 1
            self.summary.produced += self._count_yield(before, result.character_after)
            await self.after_act(result)

    async def run_cycle(self) -> int:
        """One full cycle. Returns the quantity produced by it."""
        start = self.summary.produced
        self.summary.cycles += 1
        snapshot = await self.engine.current()
        logger.info("[%s] cycle %d at %s (produced %d)", self.character,
                    self.summary.cycles, snapshot.position, start)
        await self.prepare()
        await self.travel()
        await self.act_phase()
        await self.dispose()
        return self.summary.produced - start

    async def run(self) -> LoopSummary:
        """Cycle until the target is met. Cancellation ends the loop cleanly."""
        try:
            await self.initialize()
            while True:
                produced = await self.run_cycle()
                if self.target_met():
                    self.summary.reason = "target"
                    break
                remaining = self.target - self.summary.produced
                if self.target > 0 and produced > 0 and remaining < produced:
                    # A partial trailing cycle is not started.
                    self.summary.reason = "insufficient_for_cycle"
                    break
        except Cancelled:
            self.summary.reason = "cancelled"
            logger.info("[%s] %s cancelled after %d cycles", self.character, self.name,
                        self.summary.cycles)
        else:
            logger.info("[%s] %s finished: %d produced in %d cycles", self.character, self.name,
                        self.summary.produced, self.summary.cycles)
        return self.summary

    async def bank_and_exit(self) -> None:
        """One bounded trip to the bank, used on interactive shutdown."""
        await self.engine.move(self.bank.x, self.bank.y)
        await self.engine.deposit_all(keep=self.keep)

"""Action cadence engine — serialises one character's mutating actions.

Every mutating call goes through `ActionEngine.dispatch()`, which:

  1. waits out the cooldown of the latest known snapshot (fetching one if
     none is cached),
  2. holds a per-character lock so at most one call is in flight,
  3. retries according to the server's contract:

       Cooldown(s)           sleep s + buffer, retry (free)
       RateLimited           sleep 30s doubling to 60s, retry (free)
       Transient             sleep 1s doubling to 5s, retry (budgeted)
       AlreadyAtDestination  success, for move only
       InventoryFull, NoResource, CharacterDead, Fatal  raised to the caller

  4. appends one ActionRecord per attempt to the telemetry sink,
  5. raises Cancelled from any sleep once `cancel()` has been called.

Time is injected (`clock`, `sleep`) so tests can drive the engine without
real waiting.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Protocol

from pydantic import BaseModel

from artifacts_bot.client import GameClient
from artifacts_bot.cooldown import COOLDOWN_BUFFER, cooldown_wait
from artifacts_bot.errors import (
    AlreadyAtDestination,
    Cancelled,
    Cooldown,
    GameError,
    RateLimited,
    Transient,
)
from artifacts_bot.models import (
    ActionRecord,
    ActionResult,
    CharacterSnapshot,
    Coordinates,
    InventorySnapshot,
    utc_now,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]


class TelemetrySink(Protocol):
    def add_action_log(self, record: ActionRecord) -> None: ...
    def add_inventory_snapshot(self, snapshot: InventorySnapshot) -> None: ...


class RetryPolicy(BaseModel):
    max_retries: int = 5
    transient_initial: float = 1.0
    transient_cap: float = 5.0
    rate_limit_initial: float = 30.0
    rate_limit_cap: float = 60.0
    cooldown_buffer: float = COOLDOWN_BUFFER
    heal_max_rests: int = 20


class ActionEngine:
    """Drives one character. Share a single instance between callers."""

    def __init__(
        self,
        client: GameClient,
        character: str,
        telemetry: TelemetrySink | None = None,
        policy: RetryPolicy | None = None,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.client = client
        self.character = character
        self.telemetry = telemetry
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._cancelled = asyncio.Event()
        self._snapshot: CharacterSnapshot | None = None

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> CharacterSnapshot | None:
        return self._snapshot

    async def refresh(self) -> CharacterSnapshot:
        """Fetch a fresh snapshot. Not a mutating action; no cooldown, no record."""
        self._snapshot = await self.client.get_character(self.character)
        return self._snapshot

    async def current(self) -> CharacterSnapshot:
        return self._snapshot or await self.refresh()

    def _adopt(self, result: ActionResult) -> None:
        after = result.character_after
        if after.cooldown_expiration is None and result.server_cooldown.expiration is not None:
            after = after.model_copy(update={"cooldown_expiration": result.server_cooldown.expiration})
        self._snapshot = after

    # ------------------------------------------------------------------
    # Cancellation and sleeping
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop dispatching. The in-flight call (if any) runs to completion."""
        self._cancelled.set()

    def reset_cancel(self) -> None:
        self._cancelled.clear()

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise Cancelled(f"{self.character}: cancelled")

    async def pause(self, seconds: float) -> None:
        """Sleep for `seconds`, returning early with Cancelled on cancel()."""
        self._check_cancelled()
        if seconds <= 0:
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        self._check_cancelled()

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def record(
        self,
        action_type: str,
        *,
        coordinates: Coordinates | None = None,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if self.telemetry is None:
            return
        self.telemetry.add_action_log(ActionRecord(
            character=self.character,
            action_type=action_type,
            coordinates=coordinates,
            result=result,
            error=error,
            timestamp=self._clock(),
        ))

    def capture_inventory(self) -> None:
        if self.telemetry is None or self._snapshot is None:
            return
        self.telemetry.add_inventory_snapshot(InventorySnapshot(
            character=self.character,
            items=list(self._snapshot.inventory),
            timestamp=self._clock(),
        ))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        action_type: str,
        op: Callable[[], Awaitable[ActionResult]],
        *,
        is_move: bool = False,
    ) -> ActionResult:
        async with self._lock:
            return await self._dispatch_locked(action_type, op, is_move)

    async def _dispatch_locked(
        self,
        action_type: str,
        op: Callable[[], Awaitable[ActionResult]],
        is_move: bool,
    ) -> ActionResult:
        failures = 0
        transient_delay = self.policy.transient_initial
        rate_delay = self.policy.rate_limit_initial
        skip_prewait = False

        while True:
            self._check_cancelled()
            snapshot = await self.current()
            if not skip_prewait:
                await self.pause(cooldown_wait(snapshot, self._clock(), self.policy.cooldown_buffer))
            skip_prewait = False
            coords = snapshot.position

            try:
                result = await op()
            except AlreadyAtDestination as e:
                if not is_move:
                    self.record(action_type, coordinates=coords, error=str(e))
                    raise
                self.record(action_type, coordinates=coords, result={"already_at_destination": True})
                logger.info("[%s] already at destination %s", self.character, coords)
                return ActionResult(character_after=snapshot, effect={"already_at_destination": True})
            except Cooldown as e:
                self.record(action_type, coordinates=coords, error=str(e))
                wait = e.seconds_left + self.policy.cooldown_buffer
                logger.info("[%s] %s refused: cooldown, waiting %.1fs", self.character, action_type, wait)
                await self.pause(wait)
                skip_prewait = True
                continue
            except RateLimited as e:
                self.record(action_type, coordinates=coords, error=str(e))
                logger.warning("[%s] rate limited, backing off %.0fs", self.character, rate_delay)
                await self.pause(rate_delay)
                rate_delay = min(rate_delay * 2, self.policy.rate_limit_cap)
                continue
            except Transient as e:
                self.record(action_type, coordinates=coords, error=str(e))
                failures += 1
                if failures > self.policy.max_retries:
                    logger.error("[%s] %s failed after %d retries: %s",
                                 self.character, action_type, self.policy.max_retries, e)
                    raise
                logger.warning("[%s] %s transient failure (%d/%d), retrying in %.0fs: %s",
                               self.character, action_type, failures, self.policy.max_retries,
                               transient_delay, e)
                await self.pause(transient_delay)
                transient_delay = min(transient_delay * 2, self.policy.transient_cap)
                continue
            except GameError as e:
                self.record(action_type, coordinates=coords, error=str(e))
                raise

            self._adopt(result)
            self.record(action_type, coordinates=coords, result=result.effect)
            logger.debug("[%s] %s ok, cooldown %.1fs", self.character, action_type,
                         result.server_cooldown.total_seconds)
            return result

    # ------------------------------------------------------------------
    # Domain operations
    # ------------------------------------------------------------------

    async def move(self, x: int, y: int) -> ActionResult:
        snapshot = await self.current()
        if snapshot.at(Coordinates(x=x, y=y)):
            return ActionResult(character_after=snapshot, effect={"already_at_destination": True})
        logger.info("[%s] moving %s -> (%d, %d)", self.character, snapshot.position, x, y)
        return await self.dispatch(
            "move", lambda: self.client.move(self.character, x, y), is_move=True,
        )

    async def gather(self) -> ActionResult:
        return await self.dispatch("harvest", lambda: self.client.gather(self.character))

    async def craft(self, code: str, quantity: int) -> ActionResult:
        logger.info("[%s] crafting %d x %s", self.character, quantity, code)
        return await self.dispatch("craft", lambda: self.client.craft(self.character, code, quantity))

    async def recycle(self, code: str, quantity: int) -> ActionResult:
        logger.info("[%s] recycling %d x %s", self.character, quantity, code)
        return await self.dispatch("recycle", lambda: self.client.recycle(self.character, code, quantity))

    async def fight(self) -> ActionResult:
        return await self.dispatch("fight", lambda: self.client.fight(self.character))

    async def rest(self) -> ActionResult:
        return await self.dispatch("rest", lambda: self.client.rest(self.character))

    async def deposit(self, code: str, quantity: int) -> ActionResult:
        return await self.dispatch(
            "bank_deposit", lambda: self.client.bank_deposit(self.character, code, quantity),
        )

    async def withdraw(self, code: str, quantity: int) -> ActionResult:
        logger.info("[%s] withdrawing %d x %s", self.character, quantity, code)
        return await self.dispatch(
            "bank_withdraw", lambda: self.client.bank_withdraw(self.character, code, quantity),
        )

    async def heal(self) -> CharacterSnapshot:
        """Rest until hp is full. Reads a fresh snapshot first."""
        snapshot = await self.refresh()
        rests = 0
        while snapshot.hp < snapshot.max_hp and rests < self.policy.heal_max_rests:
            logger.info("[%s] healing: %d/%d hp", self.character, snapshot.hp, snapshot.max_hp)
            result = await self.dispatch("heal", lambda: self.client.heal(self.character))
            snapshot = result.character_after
            rests += 1
        return snapshot

    async def deposit_all(self, keep: Iterable[str] = ()) -> list[tuple[str, int]]:
        """Deposit every stack except codes in `keep`.

        Starts from a fresh snapshot so an interrupted deposit resumes from
        whatever is still in the inventory.
        """
        keep = set(keep)
        snapshot = await self.refresh()
        deposited: list[tuple[str, int]] = []
        tried: set[str] = set()
        while True:
            slot = next(
                (s for s in snapshot.inventory if s.code not in keep and s.code not in tried),
                None,
            )
            if slot is None:
                break
            tried.add(slot.code)
            # One code may span several slots; deposit the whole amount at once.
            quantity = snapshot.quantity_of(slot.code)
            result = await self.deposit(slot.code, quantity)
            deposited.append((slot.code, quantity))
            snapshot = result.character_after
        if deposited:
            logger.info("[%s] deposited %s", self.character,
                        ", ".join(f"{q} x {c}" for c, q in deposited))
        return deposited

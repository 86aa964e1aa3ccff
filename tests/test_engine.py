"""Tests for artifacts_bot.engine — cadence, retry policy, telemetry, cancellation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from artifacts_bot.cooldown import COOLDOWN_BUFFER
from artifacts_bot.engine import ActionEngine, RetryPolicy
from artifacts_bot.errors import (
    Cancelled,
    CharacterDead,
    Fatal,
    InventoryFull,
    NoResource,
    RateLimited,
    Transient,
)
from artifacts_bot.models import InventorySlot

from tests.fakes import FakeClock, FakeGame, RecordingSink


def _engine(game: FakeGame, clock: FakeClock, sink: RecordingSink | None = None, **policy) -> ActionEngine:
    return ActionEngine(
        game, game.name, telemetry=sink, policy=RetryPolicy(**policy),
        clock=clock, sleep=clock.sleep,
    )


def _starts(game: FakeGame, op: str | None = None) -> list:
    return [t for o, t, _ in game.calls if op is None or o == op]


# ---------------------------------------------------------------------------
# Cadence
# ---------------------------------------------------------------------------

class TestCadence:
    async def test_respects_server_cooldown(self, clock: FakeClock) -> None:
        game = FakeGame(clock, cooldown=2.0, resources={(0, 0): "dead_tree"})
        engine = _engine(game, clock)
        for _ in range(4):
            await engine.gather()
        starts = _starts(game)
        gaps = [(b - a).total_seconds() for a, b in zip(starts, starts[1:])]
        assert gaps and all(g >= 2.0 + COOLDOWN_BUFFER for g in gaps)

    async def test_never_dispatches_before_expiration(self, clock: FakeClock) -> None:
        game = FakeGame(clock, cooldown=5.0, enforce_cooldown=True, resources={(0, 0): "dead_tree"})
        engine = _engine(game, clock)
        await engine.gather()
        await engine.gather()
        # The fake would have refused with Cooldown; one call each means none were early.
        assert game.ops() == ["gather", "gather"]

    async def test_single_flight_per_character(self, clock: FakeClock) -> None:
        game = FakeGame(clock, resources={(0, 0): "dead_tree"})
        engine = _engine(game, clock)
        await asyncio.gather(engine.gather(), engine.gather(), engine.rest())
        assert len(game.calls) == 3
        assert game.max_in_flight == 1

    async def test_snapshot_fetched_once_then_reused(self, clock: FakeClock) -> None:
        game = FakeGame(clock, resources={(0, 0): "dead_tree"})
        engine = _engine(game, clock)
        await engine.gather()
        await engine.gather()
        assert game.fetches == 1
        assert engine.snapshot.quantity_of("dead_tree") == 2


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

class TestRetryPolicy:
    async def test_cooldown_waits_seconds_plus_buffer(self, clock: FakeClock) -> None:
        from artifacts_bot.errors import Cooldown

        game = FakeGame(clock, resources={(0, 0): "dead_tree"})
        game.fail("gather", Cooldown(3.0))
        engine = _engine(game, clock)
        await engine.gather()
        first, second = _starts(game)
        assert abs((second - first).total_seconds() - (3.0 + COOLDOWN_BUFFER)) <= 0.1

    async def test_cooldown_does_not_use_retry_budget(self, clock: FakeClock) -> None:
        from artifacts_bot.errors import Cooldown

        game = FakeGame(clock, resources={(0, 0): "dead_tree"})
        for _ in range(8):
            game.fail("gather", Cooldown(1.0))
        engine = _engine(game, clock, max_retries=2)
        await engine.gather()
        assert len(game.calls) == 9

    async def test_transient_backoff_doubles_and_caps(self, clock: FakeClock) -> None:
        game = FakeGame(clock)
        for _ in range(4):
            game.fail("rest", Transient("502", status=502))
        engine = _engine(game, clock)
        await engine.rest()
        backoffs = [s for s in clock.sleeps if s != COOLDOWN_BUFFER]
        assert backoffs == [1.0, 2.0, 4.0, 5.0]

    async def test_transient_budget_exhausted(self, clock: FakeClock, sink: RecordingSink) -> None:
        game = FakeGame(clock)
        for _ in range(10):
            game.fail("rest", Transient("503", status=503))
        engine = _engine(game, clock, sink, max_retries=3)
        with pytest.raises(Transient):
            await engine.rest()
        assert len(game.calls) == 4
        assert all(r.error for r in sink.actions)

    async def test_rate_limit_backoff_not_budgeted(self, clock: FakeClock) -> None:
        game = FakeGame(clock)
        for _ in range(3):
            game.fail("rest", RateLimited("429", status=429))
        engine = _engine(game, clock, max_retries=0)
        await engine.rest()
        backoffs = [s for s in clock.sleeps if s != COOLDOWN_BUFFER]
        assert backoffs == [30.0, 60.0, 60.0]

    @pytest.mark.parametrize("exc", [
        InventoryFull("full"),
        NoResource("none"),
        CharacterDead("dead"),
        Fatal("bad request"),
    ])
    async def test_loop_signals_surface_without_retry(self, clock: FakeClock, exc) -> None:
        game = FakeGame(clock)
        game.fail("gather", exc)
        engine = _engine(game, clock)
        with pytest.raises(type(exc)):
            await engine.gather()
        assert len(game.calls) == 1


# ---------------------------------------------------------------------------
# Move
# ---------------------------------------------------------------------------

class TestMove:
    async def test_move_to_current_tile_is_not_dispatched(self, clock: FakeClock) -> None:
        game = FakeGame(clock, x=4, y=1)
        engine = _engine(game, clock)
        result = await engine.move(4, 1)
        assert result.effect == {"already_at_destination": True}
        assert result.character_after.position == game.position
        assert game.calls == []

    async def test_already_at_destination_from_server_is_success(self, clock: FakeClock, sink) -> None:
        game = FakeGame(clock, x=0, y=0)
        engine = _engine(game, clock, sink)
        await engine.refresh()
        game.x, game.y = 9, 8  # moved behind the engine's back
        result = await engine.move(9, 8)
        assert result.effect == {"already_at_destination": True}
        assert sink.actions[-1].error is None

    async def test_move_updates_snapshot(self, clock: FakeClock) -> None:
        game = FakeGame(clock)
        engine = _engine(game, clock)
        await engine.move(9, 8)
        assert (engine.snapshot.x, engine.snapshot.y) == (9, 8)


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

class TestTelemetry:
    async def test_one_record_per_attempt(self, clock: FakeClock, sink: RecordingSink) -> None:
        game = FakeGame(clock, resources={(0, 0): "dead_tree"})
        game.fail("gather", Transient("500", status=500))
        engine = _engine(game, clock, sink)
        await engine.gather()
        assert sink.types() == ["harvest", "harvest"]
        assert sink.actions[0].error and sink.actions[1].error is None

    async def test_records_carry_pre_action_coordinates(self, clock: FakeClock, sink) -> None:
        game = FakeGame(clock, x=0, y=0)
        engine = _engine(game, clock, sink)
        await engine.move(9, 8)
        record = sink.actions[0]
        assert record.action_type == "move"
        assert (record.coordinates.x, record.coordinates.y) == (0, 0)

    async def test_error_record_for_surfaced_signal(self, clock: FakeClock, sink) -> None:
        game = FakeGame(clock, x=3, y=3)
        engine = _engine(game, clock, sink)
        with pytest.raises(NoResource):
            await engine.gather()
        assert sink.actions[0].error
        assert (sink.actions[0].coordinates.x, sink.actions[0].coordinates.y) == (3, 3)

    async def test_capture_inventory(self, clock: FakeClock, sink) -> None:
        game = FakeGame(clock, inventory={"copper_ore": 4})
        engine = _engine(game, clock, sink)
        await engine.refresh()
        engine.capture_inventory()
        assert sink.snapshots[0].items[0].code == "copper_ore"


# ---------------------------------------------------------------------------
# Composite helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    async def test_heal_until_full(self, clock: FakeClock, sink) -> None:
        game = FakeGame(clock, hp=10, max_hp=100)
        engine = _engine(game, clock, sink)
        snap = await engine.heal()
        assert snap.hp == 100
        assert sink.types() == ["heal"]

    async def test_heal_at_full_hp_does_nothing(self, clock: FakeClock) -> None:
        game = FakeGame(clock)
        engine = _engine(game, clock)
        await engine.heal()
        assert game.calls == []

    async def test_deposit_all_keeps_listed_codes(self, clock: FakeClock) -> None:
        game = FakeGame(clock, x=4, y=1, inventory={"dead_tree": 5, "ash_wood": 2, "copper_ore": 1})
        engine = _engine(game, clock)
        deposited = await engine.deposit_all(keep=["copper_ore"])
        assert sorted(deposited) == [("ash_wood", 2), ("dead_tree", 5)]
        assert game.inventory == {"copper_ore": 1}
        assert game.bank == {"dead_tree": 5, "ash_wood": 2}

    async def test_deposit_all_resumes_from_current_inventory(self, clock: FakeClock) -> None:
        game = FakeGame(clock, x=4, y=1, inventory={"dead_tree": 5, "ash_wood": 2})
        game.fail("bank_deposit", Fatal("boom"))
        engine = _engine(game, clock)
        with pytest.raises(Fatal):
            await engine.deposit_all()
        await engine.deposit_all()
        assert game.inventory == {}

    async def test_deposit_all_merges_split_stacks(self, clock: FakeClock) -> None:
        game = FakeGame(clock, x=4, y=1, inventory={"dead_tree": 5})
        split = game.snapshot().model_copy(update={"inventory": [
            InventorySlot(code="dead_tree", quantity=3),
            InventorySlot(code="dead_tree", quantity=2),
        ]})
        game.get_character = AsyncMock(return_value=split)
        engine = _engine(game, clock)

        assert await engine.deposit_all() == [("dead_tree", 5)]
        assert game.bank == {"dead_tree": 5}
        assert game.inventory == {}


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    async def test_cancel_before_dispatch(self, clock: FakeClock) -> None:
        game = FakeGame(clock)
        engine = _engine(game, clock)
        engine.cancel()
        with pytest.raises(Cancelled):
            await engine.rest()
        assert game.calls == []

    async def test_cancel_interrupts_sleep(self, clock: FakeClock) -> None:
        async def forever(seconds: float) -> None:
            await asyncio.Event().wait()

        game = FakeGame(clock)
        engine = ActionEngine(game, game.name, clock=clock, sleep=forever)
        task = asyncio.create_task(engine.rest())
        for _ in range(5):
            await asyncio.sleep(0)
        engine.cancel()
        with pytest.raises(Cancelled):
            await asyncio.wait_for(task, timeout=1.0)
        assert game.calls == []

    async def test_reset_cancel_allows_dispatch(self, clock: FakeClock) -> None:
        game = FakeGame(clock)
        engine = _engine(game, clock)
        engine.cancel()
        engine.reset_cancel()
        await engine.rest()
        assert game.ops() == ["rest"]

"""Tests for artifacts_bot.worker — argument parsing and a full worker run."""

from unittest.mock import patch

import pytest
from sqlalchemy import select

from artifacts_bot.config import Settings
from artifacts_bot.db import action_logs, create_engine_from_url
from artifacts_bot.errors import Fatal
from artifacts_bot.models import Coordinates
from artifacts_bot.worker import parse_args, run_worker

from tests.fakes import FakeGame


class TestParseArgs:
    def test_basic(self) -> None:
        args = parse_args(["deadwood", "Alice", "--target", "50"])
        assert args.script_name == "deadwood"
        assert args.character == "Alice"
        assert args.target == 50
        assert args.tile is None
        assert args.no_recycle is False

    def test_character_optional(self) -> None:
        assert parse_args(["copper"]).character is None

    def test_coordinates(self) -> None:
        args = parse_args(["fight", "Alice", "(2,0)"])
        assert args.tile == Coordinates(x=2, y=0)

    def test_coordinates_without_character(self) -> None:
        args = parse_args(["fight", "(2,0)"])
        assert args.character is None
        assert args.tile == Coordinates(x=2, y=0)

    def test_flags(self) -> None:
        args = parse_args(["adventurer-boots", "Alice", "--no-recycle", "--bank-on-exit"])
        assert args.no_recycle is True
        assert args.bank_on_exit is True

    @pytest.mark.parametrize("flag, expected", [([], None), (["--refine"], True), (["--no-refine"], False)])
    def test_refine_flags(self, flag: list[str], expected: bool | None) -> None:
        assert parse_args(["copper", "Alice", *flag]).refine is expected

    @pytest.mark.parametrize("argv", [
        ["no-such-loop", "Alice"],
        ["deadwood", "Alice", "--target", "-1"],
        ["fight", "Alice", "nowhere"],
        ["copper", "Alice", "--refine", "--no-refine"],
    ])
    def test_rejected(self, argv: list[str]) -> None:
        with pytest.raises(SystemExit):
            parse_args(argv)


class TestRunWorker:
    @pytest.fixture
    def settings(self, tmp_path, data_dir) -> Settings:
        return Settings(
            api_token="t",
            database_url=f"sqlite:///{tmp_path / 'worker.db'}",
            data_dir=data_dir,
        )

    async def _run(self, game: FakeGame, argv: list[str], settings: Settings) -> int:
        with patch("artifacts_bot.worker.HttpGameClient", return_value=game):
            return await run_worker(parse_args(argv), settings)

    async def test_runs_loop_and_flushes_telemetry(self, clock, settings) -> None:
        game = FakeGame(clock, resources={(9, 8): "dead_tree"})
        code = await self._run(game, ["deadwood", "Alice", "--target", "2"], settings)

        assert code == 0
        assert game.bank == {"dead_tree": 2}
        engine = create_engine_from_url(settings.database_url)
        with engine.connect() as conn:
            types = conn.execute(select(action_logs.c.action_type)).scalars().all()
        engine.dispose()
        assert types[0] == "loop_start"
        assert types.count("harvest") == 2

    async def test_fatal_error_exits_nonzero(self, clock, settings) -> None:
        game = FakeGame(clock, resources={(9, 8): "dead_tree"})
        game.fail("gather", Fatal("Character not found", status=498))
        code = await self._run(game, ["deadwood", "Alice"], settings)
        assert code == 1

    async def test_character_from_environment(self, clock, settings) -> None:
        game = FakeGame(clock, name="Bob", resources={(9, 8): "dead_tree"})
        settings.control_character = "Bob"
        assert await self._run(game, ["deadwood", "--target", "1"], settings) == 0
        assert game.bank == {"dead_tree": 1}

    async def test_refine_flag_reaches_loop(self, clock, settings) -> None:
        game = FakeGame(clock, resources={(2, 0): "copper_ore"}, recipes={"copper": {"copper_ore": 10}})
        assert await self._run(game, ["copper", "Alice", "--target", "10", "--refine"], settings) == 0
        assert game.bank == {"copper": 1}

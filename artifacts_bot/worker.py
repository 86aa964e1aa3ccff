"""Worker entry point: one process drives one loop for one character.

    python -m artifacts_bot.worker deadwood Alice --target=50
    python -m artifacts_bot.worker adventurer-boots Alice --no-recycle
    python -m artifacts_bot.worker copper Alice --refine
    python -m artifacts_bot.worker fight Alice "(2,0)"

The character falls back to `control_character`, then config.json. Logs go
to stdout; the supervisor treats the first line as the worker's heartbeat.

Exit codes: 0 on normal completion or cancellation, 1 on a fatal error
(including exhausted retries).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys

from sqlalchemy.exc import SQLAlchemyError

from artifacts_bot.client import HttpGameClient
from artifacts_bot.config import Settings, get_config, init_data_dir, load_settings, resolve_character
from artifacts_bot.db import create_engine_from_url, init_db
from artifacts_bot.engine import ActionEngine
from artifacts_bot.errors import GameError
from artifacts_bot.loops import CATALOG, build_loop, parse_coordinates
from artifacts_bot.models import Coordinates
from artifacts_bot.telemetry import TelemetryQueue

logger = logging.getLogger("artifacts_bot.worker")

BANK_ON_EXIT_BUDGET = 120.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="artifacts-worker", description="Run one automation loop")
    parser.add_argument("script_name", choices=sorted(CATALOG), help="Loop to run")
    parser.add_argument("character", nargs="?", default=None,
                        help="Character name (default: control_character)")
    parser.add_argument("coordinates", nargs="?", default=None,
                        help="Work tile as '(x,y)' for loops parameterised by tile")
    parser.add_argument("--target", type=int, default=0,
                        help="Stop after producing N items (0 = unbounded)")
    parser.add_argument("--no-recycle", action="store_true",
                        help="Skip the recycle step of crafting loops")
    refine = parser.add_mutually_exclusive_group()
    refine.add_argument("--refine", dest="refine", action="store_const", const=True, default=None,
                        help="Refine the haul at a workshop before banking it")
    refine.add_argument("--no-refine", dest="refine", action="store_const", const=False,
                        help="Bank the raw haul even where the loop refines by default")
    parser.add_argument("--env", default=None, help="Alternate environment file")
    parser.add_argument("--bank-on-exit", action="store_true",
                        help="On shutdown, walk back to the bank and deposit before exiting")
    parser.add_argument("--bank-timeout", type=float, default=BANK_ON_EXIT_BUDGET,
                        help="Time budget for --bank-on-exit, in seconds")
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    # "fight (2,0)" with no character: the tile lands in the character slot.
    if args.coordinates is None and args.character and args.character.lstrip().startswith("("):
        args.coordinates, args.character = args.character, None
    if args.target < 0:
        parser.error("--target must be >= 0")
    args.tile = None
    if args.coordinates:
        try:
            args.tile = parse_coordinates(args.coordinates)
        except ValueError as e:
            parser.error(str(e))
    return args


async def run_worker(args: argparse.Namespace, settings: Settings) -> int:
    init_data_dir(settings.data_dir)
    config = get_config()
    character = resolve_character(args.character, settings)

    store = create_engine_from_url(settings.database_url)
    try:
        init_db(store)
    except SQLAlchemyError as e:
        logger.warning("Database unavailable, telemetry will spill to disk: %s", e)

    telemetry = TelemetryQueue(store, settings.data_dir, flush_threshold=config["flush_threshold"])
    telemetry.initialize()
    telemetry.start()

    client = HttpGameClient(settings.server, settings.api_token)
    engine = ActionEngine(client, character, telemetry)
    bank = Coordinates(**config["bank"])
    recycle = False if args.no_recycle else None
    loop = build_loop(args.script_name, engine, target=args.target, recycle=recycle,
                      refine=args.refine, tile=args.tile, bank=bank, store=store)

    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        event_loop.add_signal_handler(sig, engine.cancel)

    logger.info("Worker started: %s for %s (pid %d)", args.script_name, character, os.getpid())
    try:
        summary = await loop.run()
        if summary.reason == "cancelled" and args.bank_on_exit:
            engine.reset_cancel()
            logger.info("[%s] returning to the bank before exit", character)
            try:
                await asyncio.wait_for(loop.bank_and_exit(), args.bank_timeout)
            except asyncio.TimeoutError:
                logger.warning("[%s] bank-on-exit exceeded %.0fs", character, args.bank_timeout)
            except GameError as e:
                logger.warning("[%s] bank-on-exit failed: %s", character, e)
        return 0
    except GameError as e:
        logger.error("[%s] %s stopped: %s", character, args.script_name, e)
        return 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            event_loop.remove_signal_handler(sig)
        await telemetry.shutdown()
        store.dispose()


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = parse_args(argv)
    settings = load_settings(args.env)
    try:
        code = asyncio.run(run_worker(args, settings))
    except ValueError as e:
        logger.error("%s", e)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()

"""Data-driven loop library.

Each script name maps to a spec; `build_loop()` turns a spec plus CLI
arguments into a ready-to-run TaskLoop. Adding a loop means adding a row.
"""

from __future__ import annotations

import re
from typing import Literal, Union

from pydantic import BaseModel, Field

from artifacts_bot.engine import ActionEngine
from artifacts_bot.loops.base import TaskLoop
from artifacts_bot.loops.crafting import CraftLoop
from artifacts_bot.loops.fighting import FightLoop
from artifacts_bot.loops.gathering import GatherLoop
from artifacts_bot.models import Coordinates


class RefineSpec(BaseModel):
    """Turn the raw haul into `item` at a workshop before banking it."""

    item: str
    tile: Coordinates
    per_unit: int = Field(ge=1)
    default: bool = False


class GatherSpec(BaseModel):
    kind: Literal["gather"] = "gather"
    name: str
    item: str
    tile: Coordinates | None = None
    refine: RefineSpec | None = None
    description: str = ""


class CraftSpec(BaseModel):
    kind: Literal["craft"] = "craft"
    name: str
    item: str
    tile: Coordinates
    recipe: dict[str, int]
    batch: int = Field(ge=1)
    recycle: bool = False
    description: str = ""


class FightSpec(BaseModel):
    kind: Literal["fight"] = "fight"
    name: str
    tile: Coordinates | None = None
    heal_ratio: float = 0.5
    description: str = ""


LoopSpec = Union[GatherSpec, CraftSpec, FightSpec]


def _at(x: int, y: int) -> Coordinates:
    return Coordinates(x=x, y=y)


FORGE = _at(1, 5)
JEWELCRAFTER = _at(1, 3)
WEAPONSMITH = _at(2, 1)
ARMORSMITH = _at(3, 1)
MILL = _at(-2, -3)
ALCHEMIST = _at(2, 3)
KITCHEN = _at(1, 1)

_SPECS: list[LoopSpec] = [
    # Woodcutting
    GatherSpec(name="deadwood", item="dead_tree", tile=_at(9, 8)),
    GatherSpec(name="ash", item="ash_wood", tile=_at(-1, 0),
               refine=RefineSpec(item="ash_plank", tile=MILL, per_unit=10)),
    GatherSpec(name="spruce", item="spruce_wood", tile=_at(2, 6)),
    GatherSpec(name="birch", item="birch_wood", tile=_at(3, 5)),
    GatherSpec(name="maple", item="maple_wood", tile=_at(1, 12),
               refine=RefineSpec(item="maple_plank", tile=MILL, per_unit=10, default=True)),
    GatherSpec(name="strange-wood", item="strange_wood",
               description="Needs coordinates, e.g. '(x,y)'"),
    # Mining
    GatherSpec(name="copper", item="copper_ore", tile=_at(2, 0),
               refine=RefineSpec(item="copper", tile=FORGE, per_unit=10)),
    GatherSpec(name="iron", item="iron_ore", tile=_at(1, 7)),
    GatherSpec(name="coal", item="coal", tile=_at(1, 6)),
    GatherSpec(name="gold", item="gold_ore", tile=_at(10, -4)),
    GatherSpec(name="mithril", item="mithril_ore", tile=_at(-2, 13),
               refine=RefineSpec(item="mithril_bar", tile=MILL, per_unit=5, default=True)),
    GatherSpec(name="strange-ore", item="strange_ore",
               description="Needs coordinates, e.g. '(x,y)'"),
    # Fishing
    GatherSpec(name="gudgeon", item="gudgeon", tile=_at(4, 2)),
    GatherSpec(name="shrimp", item="shrimp", tile=_at(5, 2)),
    GatherSpec(name="trout", item="trout", tile=_at(7, 12)),
    GatherSpec(name="bass", item="bass", tile=_at(6, 12)),
    GatherSpec(name="salmon", item="salmon", tile=_at(-2, -4)),
    # Alchemy
    GatherSpec(name="sunflower", item="sunflower", tile=_at(2, 2)),
    GatherSpec(name="nettle", item="nettle_leaf", tile=_at(7, 14)),
    GatherSpec(name="glowstem", item="glowstem_leaf", tile=_at(1, 10)),
    # Crafting
    CraftSpec(name="adventurer-boots", item="adventurer_boots", tile=ARMORSMITH,
              recipe={"cowhide": 6, "wolf_hair": 4, "mushroom": 3, "spruce_plank": 2},
              batch=6, recycle=True),
    CraftSpec(name="copper-bar", item="copper", tile=FORGE, recipe={"copper_ore": 10}, batch=10),
    CraftSpec(name="iron-bar", item="iron", tile=FORGE, recipe={"iron_ore": 10}, batch=10),
    CraftSpec(name="steel-bar", item="steel", tile=FORGE, recipe={"iron_ore": 3, "coal": 7}, batch=10),
    CraftSpec(name="copper-ring", item="copper_ring", tile=JEWELCRAFTER,
              recipe={"copper": 6}, batch=10, recycle=True),
    CraftSpec(name="iron-ring", item="iron_ring", tile=JEWELCRAFTER,
              recipe={"iron": 6, "feather": 2}, batch=10, recycle=True),
    CraftSpec(name="iron-dagger", item="iron_dagger", tile=WEAPONSMITH,
              recipe={"iron": 6, "feather": 2}, batch=10, recycle=True),
    CraftSpec(name="iron-sword", item="iron_sword", tile=WEAPONSMITH,
              recipe={"iron": 6, "feather": 2}, batch=10, recycle=True),
    CraftSpec(name="hardwood-plank", item="hardwood_plank", tile=MILL,
              recipe={"ash_wood": 4, "birch_wood": 6}, batch=10),
    CraftSpec(name="minor-health-potion", item="minor_health_potion", tile=ALCHEMIST,
              recipe={"nettle_leaf": 2, "algae": 1}, batch=10),
    CraftSpec(name="air-boost-potion", item="air_boost_potion", tile=ALCHEMIST,
              recipe={"sunflower": 1, "green_slimeball": 1, "algae": 1}, batch=33),
    # Cooking
    CraftSpec(name="cook-trout", item="cooked_trout", tile=KITCHEN, recipe={"trout": 1}, batch=100),
    CraftSpec(name="cook-bass", item="cooked_bass", tile=KITCHEN, recipe={"bass": 1}, batch=100),
    CraftSpec(name="cook-salmon", item="cooked_salmon", tile=KITCHEN, recipe={"salmon": 1}, batch=100),
    # Fighting
    FightSpec(name="fight"),
]

CATALOG: dict[str, LoopSpec] = {spec.name: spec for spec in _SPECS}

_COORDS_RE = re.compile(r"^\(?\s*(-?\d+)\s*,\s*(-?\d+)\s*\)?$")


def parse_coordinates(text: str) -> Coordinates:
    """Parse "(x,y)" or "x,y" into Coordinates."""
    match = _COORDS_RE.match(text.strip())
    if not match:
        raise ValueError(f"Invalid coordinates {text!r}, expected '(x,y)'")
    return Coordinates(x=int(match.group(1)), y=int(match.group(2)))


def build_loop(
    script_name: str,
    engine: ActionEngine,
    *,
    target: int = 0,
    recycle: bool | None = None,
    refine: bool | None = None,
    tile: Coordinates | None = None,
    **kwargs,
) -> TaskLoop:
    """Instantiate the loop registered under `script_name`.

    `recycle` and `refine` override the spec's default when not None.
    Raises KeyError for unknown names, ValueError when a loop without a
    fixed tile gets no coordinates.
    """
    spec = CATALOG[script_name]
    if isinstance(spec, GatherSpec):
        return GatherLoop(engine, spec, tile=tile, target=target, refine=refine, **kwargs)
    if isinstance(spec, CraftSpec):
        return CraftLoop(engine, spec, target=target, recycle=recycle, **kwargs)
    return FightLoop(engine, spec, tile=tile, target=target, **kwargs)

"""Automation loops.

TaskLoop drives the Prepare → Travel → Act* → Dispose cycle; GatherLoop,
CraftLoop and FightLoop are its concrete shapes. CATALOG holds the data for
every shipped loop, keyed by the script name the worker CLI accepts.
"""

# Re-export public symbols so `from artifacts_bot import loops` is enough.

from .base import BANK, LoopSummary, TaskLoop  # noqa: F401
from .catalog import (  # noqa: F401
    CATALOG,
    CraftSpec,
    FightSpec,
    GatherSpec,
    RefineSpec,
    build_loop,
    parse_coordinates,
)
from .crafting import CraftLoop  # noqa: F401
from .fighting import FightLoop  # noqa: F401
from .gathering import GatherLoop  # noqa: F401

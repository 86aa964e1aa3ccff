"""Relational store: table definitions, engine factory and log pruning.

Tables:
  action_logs          one row per attempted action (indexed on timestamp DESC)
  inventory_snapshots  inventory vectors (indexed on timestamp DESC)
  character_tasks      supervisor task rows (indexed on character, state)

On PostgreSQL, create_all() also installs a pruning_counters table and an
insert trigger that trims each log table back to the newest 10 000 rows once
every 1 000 (action_logs) or 500 (inventory_snapshots) inserts. Other
dialects rely on prune_old_logs(), which loops call at startup.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import (
    DDL,
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    select,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.types import UserDefinedType

from artifacts_bot.models import Coordinates, utc_now

logger = logging.getLogger(__name__)

KEEP_ROWS = 10_000

_POINT_RE = re.compile(r"\(\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*\)")


class Point(UserDefinedType):
    """POINT column bound as the text literal '(x,y)'."""

    cache_ok = True

    def get_col_spec(self, **kw):
        return "POINT"

    def bind_processor(self, dialect):
        def process(value):
            if value is None:
                return None
            if isinstance(value, Coordinates):
                return f"({value.x},{value.y})"
            if isinstance(value, dict):
                return f"({value['x']},{value['y']})"
            return str(value)
        return process

    def result_processor(self, dialect, coltype):
        def process(value):
            if value is None:
                return None
            match = _POINT_RE.search(str(value))
            if not match:
                return None
            return Coordinates(x=int(float(match.group(1))), y=int(float(match.group(2))))
        return process


_JSON = JSON().with_variant(JSONB(), "postgresql")

metadata = MetaData()

action_logs = Table(
    "action_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("character", String(255), nullable=False),
    Column("action_type", String(255), nullable=False),
    Column("coordinates", Point(), nullable=True),
    Column("result", _JSON, nullable=True),
    Column("error", Text, nullable=True),
    Column("timestamp", DateTime(timezone=True), nullable=False, default=utc_now),
    Index("action_logs_timestamp_idx", "timestamp"),
)

inventory_snapshots = Table(
    "inventory_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("character", String(255), nullable=False),
    Column("items", _JSON, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False, default=utc_now),
    Index("inventory_snapshots_timestamp_idx", "timestamp"),
)

character_tasks = Table(
    "character_tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("character", String(255), nullable=False),
    Column("task_type", String(255), nullable=False),
    Column("script_name", String(255), nullable=False),
    Column("script_args", _JSON, nullable=False, default=list),
    Column("state", String(32), nullable=False, default="idle"),
    Column("process_id", Integer, nullable=True),
    Column("start_time", DateTime(timezone=True), nullable=True),
    Column("last_updated", DateTime(timezone=True), nullable=False, default=utc_now),
    Column("task_data", _JSON, nullable=False, default=dict),
    Column("error_message", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utc_now),
    Index("idx_character_tasks_character", "character"),
    Index("idx_character_tasks_state", "state"),
)


# ---------------------------------------------------------------------------
# PostgreSQL pruning triggers
# ---------------------------------------------------------------------------

_PG_PRUNING = [
    """
    CREATE TABLE IF NOT EXISTS pruning_counters (
        table_name TEXT PRIMARY KEY,
        counter INT DEFAULT 0
    )
    """,
    """
    INSERT INTO pruning_counters (table_name, counter)
    VALUES ('action_logs', 0), ('inventory_snapshots', 0)
    ON CONFLICT (table_name) DO NOTHING
    """,
    f"""
    CREATE OR REPLACE FUNCTION increment_and_check_counter()
    RETURNS TRIGGER AS $$
    DECLARE
        current_count INT;
        threshold INT;
    BEGIN
        threshold := CASE TG_TABLE_NAME WHEN 'action_logs' THEN 1000 ELSE 500 END;

        UPDATE pruning_counters SET counter = counter + 1
        WHERE table_name = TG_TABLE_NAME
        RETURNING counter INTO current_count;

        IF current_count >= threshold THEN
            UPDATE pruning_counters SET counter = 0 WHERE table_name = TG_TABLE_NAME;
            IF TG_TABLE_NAME = 'action_logs' THEN
                DELETE FROM action_logs WHERE id NOT IN (
                    SELECT id FROM action_logs ORDER BY timestamp DESC LIMIT {KEEP_ROWS});
            ELSE
                DELETE FROM inventory_snapshots WHERE id NOT IN (
                    SELECT id FROM inventory_snapshots ORDER BY timestamp DESC LIMIT {KEEP_ROWS});
            END IF;
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS action_logs_counter_trigger ON action_logs",
    "DROP TRIGGER IF EXISTS inventory_snapshots_counter_trigger ON inventory_snapshots",
    """
    CREATE TRIGGER action_logs_counter_trigger
    AFTER INSERT ON action_logs
    FOR EACH ROW EXECUTE FUNCTION increment_and_check_counter()
    """,
    """
    CREATE TRIGGER inventory_snapshots_counter_trigger
    AFTER INSERT ON inventory_snapshots
    FOR EACH ROW EXECUTE FUNCTION increment_and_check_counter()
    """,
]

for _statement in _PG_PRUNING:
    event.listen(metadata, "after_create", DDL(_statement).execute_if(dialect="postgresql"))


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------

def create_engine_from_url(url: str) -> Engine:
    return create_engine(url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create tables (and PostgreSQL triggers) if they don't exist."""
    metadata.create_all(engine)


def prune_old_logs(engine: Engine, keep: int = KEEP_ROWS) -> dict[str, int]:
    """Delete all but the newest `keep` rows of each log table.

    Returns the number of rows removed per table.
    """
    removed: dict[str, int] = {}
    with engine.begin() as conn:
        for table in (action_logs, inventory_snapshots):
            cutoff = conn.execute(
                select(table.c.id).order_by(table.c.id.desc()).offset(keep).limit(1)
            ).scalar()
            if cutoff is None:
                removed[table.name] = 0
                continue
            result = conn.execute(delete(table).where(table.c.id <= cutoff))
            removed[table.name] = result.rowcount
    if any(removed.values()):
        logger.info("Pruned old logs: %s", removed)
    return removed

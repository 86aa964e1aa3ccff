"""Environment settings and the per-install config.json.

Environment (read after `load_dotenv`, `.env` at the repo root unless
`--env=FILE` or CUSTOM_ENV_FILE points elsewhere):

  ARTIFACTS_API_TOKEN   bearer token for the game API
  ARTIFACTS_SERVER      base URL (default https://api.artifactsmmo.com)
  control_character     default character when none is given on the CLI
  DATABASE_URL          SQLAlchemy URL (default sqlite:///./artifacts.db)
  DATA_DIR              spill files + config.json (default ./data)
  GUI_PORT              control server port (default 13013)

config.json holds operator preferences: default_character, bank location
and the telemetry flush threshold. get_config() returns defaults merged with
stored values; update_config() merges and persists.
"""

import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel

from artifacts_bot.client import DEFAULT_SERVER

ROOT = Path(__file__).parent.parent

_data_dir: Path | None = None

_CONFIG_DEFAULTS: dict[str, Any] = {
    "default_character": "",
    "bank": {"x": 4, "y": 1},
    "flush_threshold": 100,
}


class Settings(BaseModel):
    api_token: str = ""
    server: str = DEFAULT_SERVER
    control_character: str = ""
    database_url: str = "sqlite:///./artifacts.db"
    data_dir: Path = Path("data")
    gui_port: int = 13013

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            api_token=os.getenv("ARTIFACTS_API_TOKEN", ""),
            server=os.getenv("ARTIFACTS_SERVER", DEFAULT_SERVER),
            control_character=os.getenv("control_character", ""),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./artifacts.db"),
            data_dir=Path(os.getenv("DATA_DIR", "data")),
            gui_port=int(os.getenv("GUI_PORT", "13013")),
        )


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Load .env (or `env_file`) into the process environment and read Settings.

    An explicit env file overrides variables already set; the default .env
    does not.
    """
    env_file = env_file or os.getenv("CUSTOM_ENV_FILE")
    if env_file:
        path = Path(env_file)
        if not path.is_file():
            raise FileNotFoundError(f"Env file not found: {path}")
        load_dotenv(path, override=True)
    else:
        load_dotenv(ROOT / ".env")
    return Settings.from_env()


# ---------------------------------------------------------------------------
# Data dir + config.json
# ---------------------------------------------------------------------------

def init_data_dir(path: Path) -> Path:
    global _data_dir
    _data_dir = path
    _data_dir.mkdir(parents=True, exist_ok=True)
    return _data_dir


def data_dir() -> Path:
    assert _data_dir is not None, "Call init_data_dir() before using the data dir"
    return _data_dir


def _config_path() -> Path:
    return data_dir() / "config.json"


def get_config() -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config: dict[str, Any] = {
        "default_character": _CONFIG_DEFAULTS["default_character"],
        "bank": dict(_CONFIG_DEFAULTS["bank"]),
        "flush_threshold": _CONFIG_DEFAULTS["flush_threshold"],
    }
    path = _config_path()
    if path.is_file():
        stored = json.loads(path.read_text())
        if "default_character" in stored:
            config["default_character"] = stored["default_character"]
        if isinstance(stored.get("bank"), dict):
            config["bank"].update(stored["bank"])
        if "flush_threshold" in stored:
            config["flush_threshold"] = int(stored["flush_threshold"])
    return config


def update_config(fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config."""
    config = get_config()
    if "default_character" in fields:
        config["default_character"] = fields["default_character"]
    if isinstance(fields.get("bank"), dict):
        config["bank"].update(fields["bank"])
    if "flush_threshold" in fields:
        config["flush_threshold"] = int(fields["flush_threshold"])
    _config_path().write_text(json.dumps(config, indent=2))
    return config


def resolve_character(explicit: str | None, settings: Settings) -> str:
    """CLI argument, then control_character, then config.json's default."""
    if explicit:
        return explicit
    if settings.control_character:
        return settings.control_character
    if _data_dir is not None:
        stored = get_config()["default_character"]
        if stored:
            return stored
    raise ValueError("No character given: pass one on the command line or set control_character")

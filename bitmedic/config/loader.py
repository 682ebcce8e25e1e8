"""Load and save the JSON configuration file."""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from bitmedic.config.schema import Config


def get_config_path() -> Path:
    """Return the default configuration file path."""
    return Path.home() / ".bitmedic" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from *config_path* (or the default location).

    A missing file yields defaults. A malformed file is logged and also
    yields defaults, so a bad edit never keeps the node from starting.
    """
    path = config_path or get_config_path()
    if not path.exists():
        return Config()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Config.model_validate(data)
    except (json.JSONDecodeError, OSError, ValidationError) as exc:
        logger.warning("[Config] failed to load {}: {}", path, exc)
        logger.warning("[Config] using default configuration")
        return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Write *config* as camelCase JSON."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(by_alias=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

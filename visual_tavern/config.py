"""Engine configuration: defaults, environment, and an optional JSON file.

Precedence, lowest first: built-in defaults, environment (a ``.env`` file is
loaded with python-dotenv, existing variables win), then ``config.json``
in the data directory. The nested ``llm`` section is merged key by key.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "DATA_DIR": ("data_dir",),
    "PROMPTS_DIR": ("prompts_dir",),
    "LOG_LEVEL": ("log_level",),
    "LLM_PROVIDER_URL": ("llm", "provider_url"),
    "LLM_API_KEY": ("llm", "api_key"),
    "LLM_FORMAT": ("llm", "provider_format"),
    "LLM_MODEL": ("llm", "model"),
    "LLM_TIMEOUT": ("llm", "timeout"),
    "LLM_MAX_TOKENS": ("llm", "max_tokens"),
}


class LLMConfig(BaseModel):
    """Connection to the chat backend. An empty provider_url selects the offline EchoLLM."""

    provider_url: str = ""
    api_key: str = ""
    provider_format: str = "openai"
    model: str = ""
    timeout: float = 120.0
    max_tokens: int = 4096


class EngineConfig(BaseModel):
    data_dir: Path = Path("data")
    prompts_dir: Path | None = None
    log_level: str = "INFO"
    llm: LLMConfig = Field(default_factory=LLMConfig)

    # visual game
    history_window: int = Field(default=10, ge=0)
    start_action: str = "start game"
    opening_request: str = (
        "Begin the story: introduce the setting, the current scene and the "
        "first characters the player meets, then offer the first choice."
    )
    default_action_options: list[str] = Field(
        default_factory=lambda: ["Look around", "Talk to someone nearby", "Move on"]
    )

    # world interaction
    rule_events_per_key_event: int = Field(default=3, ge=1)


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _from_env() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for var, path in _ENV_KEYS.items():
        raw = os.getenv(var)
        if not raw:
            continue
        target = values
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = raw
    return values


def load_config(config_path: Path | None = None, env_file: Path | None = None) -> EngineConfig:
    """Build the engine configuration.

    config_path defaults to ``<data_dir>/config.json``; a missing file is not an error.
    """
    load_dotenv(env_file)
    values = _from_env()

    path = config_path or Path(values.get("data_dir", EngineConfig().data_dir)) / "config.json"
    if path.is_file():
        try:
            stored = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Invalid config file {path}: {e}") from e
        values = _merge(values, stored)
        logger.debug("Merged config from %s", path)

    try:
        return EngineConfig.model_validate(values)
    except ValidationError as e:
        raise InvalidInputError(f"Invalid configuration: {e}") from e

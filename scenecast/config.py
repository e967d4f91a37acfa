"""App configuration: LLM connection, retry policy, limits, style, templates.

Config lives in {data_dir}/config.json. get_config() returns the defaults
merged with stored values; update_config() applies a partial update
(section dicts merged key-by-key, api_keys replaced wholesale) and persists.

Environment variables (loaded from .env by the app and launcher) override
the stored LLM connection so credentials never need to live in config.json:

    SCENECAST_PROVIDER_URL, SCENECAST_PROVIDER_FORMAT, SCENECAST_MODEL,
    SCENECAST_API_KEY, SCENECAST_API_KEY_1 .. SCENECAST_API_KEY_10
"""

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_ENV_KEYS = 10

_CONFIG_DEFAULTS: dict[str, Any] = {
    "llm": {
        "provider_url": "",
        "provider_format": "openai_chat",
        "model": "",
        "api_keys": [],
        "timeout": 120.0,
    },
    "retry": {
        "attempts": 3,
        "base_delay": 0.5,
        "max_delay": 8.0,
    },
    "limits": {
        "max_story_chars": 120_000,
        "min_words": 8,
        "max_words": 25,
        "target_min": 12,
        "target_max": 20,
        "flush_words": 12,
        "min_viable_lines": 5,
        "max_side_characters": 3,
    },
    "style": "",  # empty → built-in style lock
    "prompts": {
        "segmenter": "",
        "theme": "",
        "characters": "",
    },
}

_SECTIONS = ("llm", "retry", "limits", "prompts")


class Limits(BaseModel):
    """Word-count window, input size cap and cast size for one run.

    Unknown keys are ignored; wrong types or an inconsistent window raise
    pydantic.ValidationError.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    max_story_chars: int = Field(default=120_000, ge=1)
    min_words: int = Field(default=8, ge=1)
    max_words: int = Field(default=25, ge=1)
    target_min: int = Field(default=12, ge=1)
    target_max: int = Field(default=20, ge=1)
    flush_words: int = Field(default=12, ge=1)  # short-paragraph buffer is emitted at this size
    min_viable_lines: int = Field(default=5, ge=1)
    max_side_characters: int = Field(default=3, ge=0)

    @model_validator(mode="after")
    def _window_ordered(self) -> "Limits":
        if not self.min_words <= self.target_min <= self.target_max <= self.max_words:
            raise ValueError(
                "limits must satisfy min_words <= target_min <= target_max <= max_words"
            )
        return self

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "Limits":
        return cls.model_validate(config.get("limits", {}))


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _defaults() -> dict[str, Any]:
    return json.loads(json.dumps(_CONFIG_DEFAULTS))


def _merge(config: dict[str, Any], fields_: dict[str, Any]) -> None:
    for section in _SECTIONS:
        if isinstance(fields_.get(section), dict):
            config[section].update(fields_[section])
    if "style" in fields_ and isinstance(fields_["style"], str):
        config["style"] = fields_["style"]


def get_config(data_dir: Path) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values and env."""
    config = _defaults()
    path = _config_path(data_dir)
    if path.is_file():
        _merge(config, json.loads(path.read_text()))
    apply_env(config)
    return config


def update_config(data_dir: Path, fields_: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into the stored config and persist. Returns full config.

    Raises pydantic.ValidationError, without writing, if the merged limits
    are invalid.
    """
    config = _defaults()
    path = _config_path(data_dir)
    if path.is_file():
        _merge(config, json.loads(path.read_text()))
    _merge(config, fields_)
    Limits.from_config(config)
    data_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2))
    apply_env(config)
    return config


def apply_env(config: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Overlay SCENECAST_* environment variables onto the llm section."""
    env = os.environ if environ is None else environ
    llm = config["llm"]
    for key in ("provider_url", "provider_format", "model"):
        value = env.get(f"SCENECAST_{key.upper()}", "")
        if value:
            llm[key] = value

    env_keys = [env.get("SCENECAST_API_KEY", "")]
    env_keys.extend(env.get(f"SCENECAST_API_KEY_{i}", "") for i in range(1, MAX_ENV_KEYS + 1))
    env_keys = [k for k in env_keys if k]
    if env_keys:
        llm["api_keys"] = list(dict.fromkeys(env_keys))
    return config


def public_config(config: dict[str, Any]) -> dict[str, Any]:
    """Copy of the config safe to return over HTTP (credentials masked)."""
    masked = json.loads(json.dumps(config))
    masked["llm"]["api_keys"] = ["***" for _ in config["llm"]["api_keys"]]
    return masked

"""
hkscribe.config - YAML config loading, validation and run settings.

Handles loading hkscribe.yaml, applying environment fallbacks for the API
key, and building the read-only settings used by a transcription run.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hkscribe.exceptions import ConfigError

CONFIG_FILENAME = "hkscribe.yaml"
API_KEY_ENV = "GEMINI_API_KEY"

MODEL_FLASH = "gemini-2.5-flash"
MODEL_FLASH_LITE = "gemini-2.5-flash-lite"
MODEL_PRO = "gemini-3-pro-preview"
SUPPORTED_MODELS = (MODEL_FLASH, MODEL_FLASH_LITE, MODEL_PRO)

DEFAULT_STATE_PATH = Path.home() / ".hkscribe" / "state.json"
DEFAULT_LICENSE_STORE_PATH = Path.home() / ".hkscribe" / "licenses.json"


class TranscriptionSettings(BaseModel):
    """Per-run transcription options. Read-only once a run starts."""

    model_config = ConfigDict(frozen=True)

    model_id: str = MODEL_PRO
    identify_speakers: bool = True
    speaker_names: tuple[str, ...] = ()
    timestamps_enabled: bool = True
    language: str = "Cantonese"


class QuotaPolicy(BaseModel):
    """Usage allowance for a run. Consulted by the orchestrator, never mutated."""

    model_config = ConfigDict(frozen=True)

    is_licensed: bool = False
    free_limit_minutes: float = Field(default=3, gt=0)


class ScribeConfig(BaseModel):
    """Resolved hkscribe configuration."""

    api_key: str | None = None
    model: str = MODEL_PRO
    language: str = "Cantonese"

    identify_speakers: bool = True
    speaker_names: list[str] = Field(default_factory=list)
    timestamps: bool = True

    free_limit_minutes: float = Field(default=3, gt=0)

    state_path: Path = DEFAULT_STATE_PATH
    license_store_path: Path = DEFAULT_LICENSE_STORE_PATH

    config_path: Path | None = None

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        if v not in SUPPORTED_MODELS:
            raise ValueError(f"model must be one of: {set(SUPPORTED_MODELS)}")
        return v

    @field_validator("speaker_names")
    @classmethod
    def strip_speaker_names(cls, v: list[str]) -> list[str]:
        return [name.strip() for name in v]

    def resolve_api_key(self) -> str | None:
        """API key from the config file, else from the environment."""
        return self.api_key or os.environ.get(API_KEY_ENV) or None

    def to_settings(self, **overrides: Any) -> TranscriptionSettings:
        """Build run settings, letting explicit overrides win over the file."""
        values: dict[str, Any] = {
            "model_id": self.model,
            "identify_speakers": self.identify_speakers,
            "speaker_names": tuple(self.speaker_names),
            "timestamps_enabled": self.timestamps,
            "language": self.language,
        }
        for key, value in overrides.items():
            if value is not None:
                values[key] = tuple(value) if key == "speaker_names" else value
        if values["model_id"] not in SUPPORTED_MODELS:
            raise ConfigError(f"Unsupported model: {values['model_id']}")
        return TranscriptionSettings(**values)


def find_config_file(start: Path | None = None) -> Path | None:
    """Look for hkscribe.yaml in the given directory and its parents."""
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
        if current == current.parent:
            return None
        current = current.parent


def load_config(path: Path | None = None) -> ScribeConfig:
    """Load and validate configuration.

    Args:
        path: Explicit config file. When omitted the current directory and its
            parents are searched; with no file found the defaults are used.

    Returns:
        Validated ScribeConfig

    Raises:
        FileNotFoundError: If an explicit path does not exist
        ConfigError: If the file contains invalid values
    """
    config_file = path if path is not None else find_config_file()
    if config_file is None:
        return ScribeConfig()
    if not config_file.exists():
        raise FileNotFoundError(f"No config file found at {config_file}")

    with open(config_file, encoding="utf-8") as f:
        raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ConfigError(f"{config_file} must contain a mapping")

    raw_config["config_path"] = config_file
    try:
        return ScribeConfig(**raw_config)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration in {config_file}: {e}") from e


def create_default_config() -> dict[str, Any]:
    """Create the default config written by ``hkscribe init``."""
    return {
        "model": MODEL_PRO,
        "language": "Cantonese",
        "identify_speakers": True,
        "speaker_names": [],
        "timestamps": True,
        "free_limit_minutes": 3,
    }


def write_config(config: dict[str, Any], path: Path) -> None:
    """Write configuration to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

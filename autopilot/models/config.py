import json
import os
from typing import Any, Dict
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from .errors import ConfigurationError

# Stored in ~/.autopilot/config.json unless AUTOPILOT_CONFIG points elsewhere
DEFAULT_CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".autopilot")


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class AutopilotConfig(BaseModel):
    model_config = ConfigDict(alias_generator=_kebab, populate_by_name=True, extra="forbid")

    cadence_seconds: float = Field(default=300, gt=0)
    batch_size: int = Field(default=10, gt=0)
    max_retries: int = Field(default=3, gt=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)
    db_path: str = Field(default_factory=lambda: os.environ.get(
        "AUTOPILOT_DB", os.path.join(DEFAULT_CONFIG_DIR, "jobs.db")))
    graph_api_url: str = "https://graph.facebook.com/v18.0"
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    page_tokens: Dict[str, str] = Field(default_factory=dict)

    def get(self, key: str) -> Any:
        name = key.replace("-", "_")
        if name not in type(self).model_fields:
            raise ConfigurationError(f"Unknown configuration key '{key}'")
        return getattr(self, name)

    def with_value(self, key: str, value: Any) -> "AutopilotConfig":
        """Return a copy with `key` set, validated like a fresh load"""
        self.get(key)
        data = self.model_dump()
        data[key.replace("-", "_")] = value
        try:
            return AutopilotConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid value for '{key}': {e.errors()[0]['msg']}") from e


def config_path() -> str:
    return os.environ.get("AUTOPILOT_CONFIG", os.path.join(DEFAULT_CONFIG_DIR, "config.json"))


def load_config(path: str = None) -> AutopilotConfig:
    path = path or config_path()
    if not os.path.exists(path):
        config = AutopilotConfig()
        save_config(config, path)
        return config
    with open(path, 'r') as f:
        raw = json.load(f)
    try:
        return AutopilotConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


def save_config(config: AutopilotConfig, path: str = None):
    path = path or config_path()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config.model_dump(by_alias=True), f, indent=2)

import logging
import os
import sys
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

# Load .env from current directory so AF_* settings are picked up automatically.
load_dotenv()

LOGGER_NAME = "agentfile"
DEFAULT_MAX_SIZE_BYTES = 50 * 1024 * 1024
TOOL_CODE_STRATEGIES = ("skip", "stub", "schema-only")


class ConfigError(RuntimeError):
    """Raised when settings from the environment or config file are invalid."""


class Settings(BaseModel):
    """Runtime configuration loaded from an optional YAML file and the environment."""

    max_size_bytes: int = Field(default=DEFAULT_MAX_SIZE_BYTES, gt=0)
    auto_fix: bool = True
    strict: bool = False
    tool_code_strategy: str = "schema-only"
    max_export_messages: int = Field(default=1000, ge=0)
    log_level: str = "INFO"
    cors_origins: str = "*"
    config_file: Optional[str] = None

    service_name: str = "agentfile-toolbox"


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Defaults only.

    NOTE: environment values are *not* cached here; `get_settings` re-reads
    the environment on each call because tests mutate os.environ at runtime.
    """
    return Settings()


_ENV_FIELDS = {
    "AF_MAX_SIZE_BYTES": "max_size_bytes",
    "AF_AUTO_FIX": "auto_fix",
    "AF_STRICT": "strict",
    "AF_TOOL_CODE_STRATEGY": "tool_code_strategy",
    "AF_MAX_EXPORT_MESSAGES": "max_export_messages",
    "AF_LOG_LEVEL": "log_level",
    "AF_CORS_ORIGINS": "cors_origins",
}


def parse_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"true", "1", "yes", "on"}:
        return True
    if lowered in {"false", "0", "no", "off"}:
        return False
    return None


def _read_config_file(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in config file {config_path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Config file must deserialize to a mapping")
    return data


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Precedence: environment > AF_CONFIG_FILE (YAML) > defaults.
    """
    base = _base_settings()
    values: Dict[str, Any] = base.model_dump()

    config_file = os.getenv("AF_CONFIG_FILE") or None
    if config_file:
        file_values = _read_config_file(config_file)
        unknown = sorted(set(file_values) - set(values))
        if unknown:
            raise ConfigError(f"Unknown settings in {config_file}: {', '.join(unknown)}")
        values.update(file_values)
        values["config_file"] = config_file

    for env_name, field in _ENV_FIELDS.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        if field in ("auto_fix", "strict"):
            flag = parse_bool(raw)
            if flag is None:
                raise ConfigError(f"{env_name} must be a boolean, got {raw!r}")
            values[field] = flag
        else:
            values[field] = raw

    try:
        settings = Settings(**values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc

    if settings.tool_code_strategy not in TOOL_CODE_STRATEGIES:
        raise ConfigError(
            f"tool_code_strategy must be one of {', '.join(TOOL_CODE_STRATEGIES)}, "
            f"got {settings.tool_code_strategy!r}"
        )
    return settings


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Install a single stderr handler on the package logger and return it."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)-8s] %(name)s: %(message)s", datefmt="%H:%M:%S")
    )
    logger.addHandler(handler)
    return logger

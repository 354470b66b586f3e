"""Process configuration for the firewall autoscale handlers."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class StorageSettings(BaseModel):
    backend: Literal["sqlite", "dynamodb"] = Field(default="sqlite")
    sqlite_path: str = Field(default="./data/fw_autoscale.sqlite")
    sqlite_wal: bool = Field(default=True)
    settings_seed_path: str | None = Field(
        default=None,
        description="Optional YAML file with fleet setting items applied at startup.",
    )


class AWSSettings(BaseModel):
    default_region: str | None = Field(default=None)
    default_profile: str | None = Field(default=None)
    sdk_timeout_seconds: int = Field(default=30, ge=1, le=300)
    max_retries: int = Field(default=2, ge=0, le=10)
    resource_tag_prefix: str = Field(default="fwautoscale")
    notification_topic_arn: str | None = Field(default=None)

    @field_validator("resource_tag_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("resource_tag_prefix must not be empty")
        return value


class InvocationSettings(BaseModel):
    timeout_seconds: float = Field(default=300.0, gt=0)
    safety_margin_seconds: float = Field(default=5.0, ge=0)
    election_strategy: Literal["preferred-group", "weighted-score"] = Field(
        default="preferred-group"
    )


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)
    invocation: InvocationSettings = Field(default_factory=InvocationSettings)


ENV_KEYS = {
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "store_backend": "RECORD_STORE_BACKEND",
    "sqlite_path": "SQLITE_PATH",
    "settings_seed_path": "FLEET_SETTINGS_PATH",
    "aws_region": "AWS_DEFAULT_REGION",
    "aws_profile": "AWS_PROFILE",
    "max_retries": "FW_AUTOSCALE_MAX_RETRIES",
    "resource_tag_prefix": "RESOURCE_TAG_PREFIX",
    "notification_topic_arn": "NOTIFICATION_TOPIC_ARN",
    "invocation_timeout": "INVOCATION_TIMEOUT_SECONDS",
    "election_strategy": "PRIMARY_ELECTION_STRATEGY",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    seed_path_env = os.getenv(ENV_KEYS["settings_seed_path"])

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "storage": {
            "backend": os.getenv(ENV_KEYS["store_backend"], StorageSettings().backend)
            .strip()
            .lower(),
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool("SQLITE_WAL", StorageSettings().sqlite_wal),
            "settings_seed_path": _resolve_path(seed_path_env) if seed_path_env else None,
        },
        "aws": {
            "default_region": os.getenv("AWS_REGION") or os.getenv(ENV_KEYS["aws_region"]),
            "default_profile": os.getenv(ENV_KEYS["aws_profile"]),
            "sdk_timeout_seconds": _env_int(
                "SDK_TIMEOUT_SECONDS",
                AWSSettings().sdk_timeout_seconds,
            ),
            "max_retries": _env_int(ENV_KEYS["max_retries"], AWSSettings().max_retries),
            "resource_tag_prefix": os.getenv(
                ENV_KEYS["resource_tag_prefix"], AWSSettings().resource_tag_prefix
            ),
            "notification_topic_arn": (
                os.getenv(ENV_KEYS["notification_topic_arn"], "").strip() or None
            ),
        },
        "invocation": {
            "timeout_seconds": _env_float(
                ENV_KEYS["invocation_timeout"],
                InvocationSettings().timeout_seconds,
            ),
            "safety_margin_seconds": _env_float(
                "INVOCATION_SAFETY_MARGIN_SECONDS",
                InvocationSettings().safety_margin_seconds,
            ),
            "election_strategy": os.getenv(
                ENV_KEYS["election_strategy"], InvocationSettings().election_strategy
            )
            .strip()
            .lower(),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    if settings.storage.backend == "sqlite":
        Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings

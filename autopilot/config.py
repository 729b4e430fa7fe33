"""Configuration models for args/autopilot.yaml.

Every section is a pydantic model with defaults, so a missing file or a
partial file yields a complete configuration.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from autopilot import CONFIG_PATH

logger = logging.getLogger(__name__)


# =============================================================================
# Daemon
# =============================================================================


class DaemonConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    poll_interval_seconds: int = Field(default=300, ge=1)
    min_sleep_seconds: int = Field(default=10, ge=0)
    countdown_seconds: int = Field(default=60, ge=0)
    intent_confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    poll_max_retries: int = Field(default=2, ge=0)
    pid_file: str = Field(default=".tmp/autopilot.pid")
    status_file: str = Field(default=".tmp/autopilot_status.json")
    log_file: Optional[str] = Field(default=".tmp/autopilot.log")


# =============================================================================
# Collaborators
# =============================================================================


class InboxConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    provider: Literal["none", "imap", "directory"] = "none"
    imap_host: str = ""
    imap_port: int = Field(default=993, ge=1)
    username: str = ""
    password_env: str = Field(default="AUTOPILOT_IMAP_PASSWORD")
    mailbox: str = "INBOX"
    directory: str = ".tmp/inbox"
    lookback_minutes: int = Field(default=10, ge=1)
    max_items: int = Field(default=20, ge=1)


class ClassifierConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    provider: Literal["keyword", "llm"] = "keyword"
    endpoint: str = "https://openrouter.ai/api/v1/chat/completions"
    model: str = "google/gemini-2.0-flash-001"
    api_key_env: str = "OPENROUTER_API_KEY"
    max_batch_size: int = Field(default=10, ge=1)
    timeout_seconds: float = Field(default=60.0, gt=0)


class ExecutorConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    provider: Literal["dry_run", "http"] = "dry_run"
    endpoint: str = "https://openrouter.ai/api/v1/chat/completions"
    model: str = "anthropic/claude-sonnet-4"
    api_key_env: str = "OPENROUTER_API_KEY"
    timeout_seconds: float = Field(default=300.0, gt=0)


class NotifierConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    provider: Literal["log", "desktop"] = "log"
    app_name: str = "Autopilot"


class RuntimeConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    autonomy_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    file_tools_root: Optional[str] = None


class BriefingConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = True
    morning_hour: int = Field(default=8, ge=0, le=23)
    evening_hour: int = Field(default=17, ge=0, le=23)
    window_minutes: int = Field(default=35, ge=0, le=59)


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    inbox: InboxConfig = Field(default_factory=InboxConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    briefing: BriefingConfig = Field(default_factory=BriefingConfig)


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from YAML file, falling back to defaults."""
    config_path = path or CONFIG_PATH

    if not config_path.exists():
        return AppConfig()

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not read {config_path}: {e}; using defaults")
        return AppConfig()

    if not raw:
        return AppConfig()

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Invalid configuration in {config_path}: {e}; using defaults")
        return AppConfig()


def get_secret(env_var: str) -> str | None:
    """Read a secret named by configuration from the environment."""
    value = os.environ.get(env_var, "").strip()
    return value or None

"""
Configuration loading and validation.

Loads notifier configuration from YAML file with environment variable
resolution for secrets (API keys and access tokens are never stored in config
files).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from .models import Role


class BackendConfig(BaseModel):
    url: str = "http://localhost:54321"
    api_key_env: str = "SUPABASE_ANON_KEY"
    access_token_env: str = "SUPABASE_ACCESS_TOKEN"
    schema_name: str = "public"
    verify_tls: bool = True
    request_timeout_seconds: int = 30
    heartbeat_interval_seconds: int = 30
    students_table: str = "users"
    lessons_table: str = "lessons"
    subjects_table: str = "subjects"

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)

    @property
    def access_token(self) -> str | None:
        return os.environ.get(self.access_token_env)


def _default_role_tables() -> dict[Role, list[str]]:
    watched = ["scores", "attendance", "announcements"]
    return {
        Role.PARENT: list(watched),
        Role.STUDENT: list(watched),
        Role.TEACHER: ["announcements"],
        Role.ADMIN: ["announcements"],
    }


class SubscriptionConfig(BaseModel):
    role_tables: dict[Role, list[str]] = Field(default_factory=_default_role_tables)
    max_retries: int = 5
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 60.0
    ready_timeout_seconds: float = 10.0

    @field_validator("role_tables", mode="before")
    @classmethod
    def _normalise_roles(cls, value):
        if isinstance(value, dict):
            return {Role.parse(str(k)) if not isinstance(k, Role) else k: v for k, v in value.items()}
        return value


class StoreConfig(BaseModel):
    storage_key: str = "unified_notifications"
    max_records: int | None = None
    dedup_window_seconds: float | None = None
    # Existing rows merged in per watched table at sign-in; 0 turns it off.
    history_limit: int = Field(default=50, ge=0)


class DeliveryConfig(BaseModel):
    kind: Literal["log", "expo", "none"] = "log"
    expo_url: str = "https://exp.host/--/api/v2/push/send"
    expo_tokens: list[str] = Field(default_factory=list)


class StateConfig(BaseModel):
    db_path: str = "./data/notifications.db"


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090


class NotifyConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    subscriptions: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> NotifyConfig:
    """Load and validate notifier configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return NotifyConfig.model_validate(raw)

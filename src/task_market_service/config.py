"""
Configuration management for the task market service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str
    recovery_path: str


class PaymentGatewayConfig(BaseModel):
    """Payment gateway connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    api_key_env: str
    timeout_seconds: int = Field(gt=0)


class SettlementConfig(BaseModel):
    """Fee split and amount verification configuration."""

    model_config = ConfigDict(extra="forbid")
    platform_fee_bps: int = Field(ge=0, le=10_000)
    currency_decimals: int = Field(ge=0, le=18)
    verify_confirmed_amount: bool


class TasksConfig(BaseModel):
    """Task posting limits."""

    model_config = ConfigDict(extra="forbid")
    min_reward: int = Field(gt=0)
    max_slots: int = Field(gt=0)
    default_deadline_seconds: int = Field(gt=0)


class SubmissionsConfig(BaseModel):
    """Submission review configuration."""

    model_config = ConfigDict(extra="forbid")
    revision_window_seconds: int = Field(gt=0)


class DisputesConfig(BaseModel):
    """Dispute filing configuration."""

    model_config = ConfigDict(extra="forbid")
    min_reason_length: int = Field(ge=0)


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    payment_gateway: PaymentGatewayConfig
    settlement: SettlementConfig
    tasks: TasksConfig
    submissions: SubmissionsConfig
    disputes: DisputesConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and validate settings from the configured YAML file."""
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Configuration file must contain a mapping: {config_path}"
        raise ValueError(msg)
    return Settings.model_validate(raw)


def clear_settings_cache() -> None:
    """Drop cached settings so the next call re-reads the file."""
    get_settings.cache_clear()

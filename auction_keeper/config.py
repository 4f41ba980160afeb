#!/usr/bin/env python3
"""
Configuration management for the auction keeper.

Process settings come from the environment (and .env) via pydantic-settings.
Per-chain settings live in a YAML file whose ${VARS} are expanded from the
environment before parsing.
"""

import os
import re
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CHAINS_CONFIG = Path(__file__).parent / "chains.yaml"

_UNEXPANDED_VAR = re.compile(r"\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?")


class StoreBackend(str, Enum):
    """Where auctions and bids are persisted"""
    MEMORY = "memory"
    POSTGRES = "postgres"


class Settings(BaseSettings):
    """Keeper settings with environment-based configuration"""

    # Signing key for finalize/release/refund transactions
    keeper_private_key: Optional[str] = None

    # Chain registry
    chains_config: str = str(DEFAULT_CHAINS_CONFIG)
    networks_enabled: str = ""  # Comma-separated; empty means every configured network

    # Store
    store_backend: StoreBackend = StoreBackend.POSTGRES
    database_url: str = "postgresql://postgres@localhost:5432/auction_keeper"

    # Settlement loop
    processing_interval_ms: int = 10000
    receipt_timeout: float = 180.0

    # Event listeners
    listener_poll_interval: float = 5.0
    log_block_range: int = 2000

    # Optional keeper event stream
    redis_url: Optional[str] = None
    redis_stream_key: str = "keeper:events"
    redis_stream_maxlen: int = 10000

    # Read-only API
    api_enabled: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = 3001

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("processing_interval_ms")
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("processing_interval_ms must be positive")
        return v

    @field_validator("redis_url", "keeper_private_key", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def processing_interval(self) -> float:
        """Settlement tick interval in seconds"""
        return self.processing_interval_ms / 1000

    def get_enabled_networks(self) -> Optional[List[str]]:
        names = [n.strip() for n in self.networks_enabled.split(",") if n.strip()]
        return names or None


def load_settings(**overrides) -> Settings:
    """Build settings from the environment; invalid values are fatal"""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid keeper settings: {e}") from e


def validate_settings(settings: Settings) -> None:
    """Check values that are required to run the keeper loop"""
    if not settings.keeper_private_key:
        raise ConfigurationError("KEEPER_PRIVATE_KEY is not set in the environment variables.")
    if settings.store_backend == StoreBackend.POSTGRES and not settings.database_url:
        raise ConfigurationError("DATABASE_URL is required for the postgres store backend")


def load_chains_config(config_path: str) -> Dict[str, Any]:
    """Load the chains file and expand environment variables in it"""
    load_dotenv()

    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Chains config not found: {config_path}")

    with open(path, "r") as f:
        config_content = f.read()

    config_content = os.path.expandvars(config_content)

    try:
        config = yaml.safe_load(config_content) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(config.get("networks"), dict) or not config["networks"]:
        raise ConfigurationError(f"No networks defined in {config_path}")

    logger.info(f"Loaded chain configuration for {len(config['networks'])} networks")
    return config


def find_unexpanded_var(value: Any) -> Optional[str]:
    """Name of an environment variable left unexpanded in a config value"""
    if not isinstance(value, str):
        return None
    match = _UNEXPANDED_VAR.search(value)
    return match.group(1) if match else None

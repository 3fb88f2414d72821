# src/socks5d/config.py
"""
Configuration module for socks5d.

Handles loading and validation of configuration from files and environment.
The validated result is an immutable ``ServerConfig`` shared read-only by
every session.
"""

import logging
import os
from typing import Any, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .robustness import ErrorType, Socks5Error

logger = logging.getLogger(__name__)

DEFAULT_PORT = 1080


class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = "0.0.0.0"
    port: int = Field(DEFAULT_PORT, ge=0, le=65535)
    local_address: Optional[str] = None
    dns: Tuple[str, ...] = ()
    users: dict[str, str] = Field(default_factory=dict, repr=False)
    idle_timeout: float = Field(300.0, gt=0)
    connect_timeout: float = Field(10.0, gt=0)
    udp_timeout: float = Field(30.0, gt=0)

    @field_validator("dns", mode="before")
    @classmethod
    def _split_dns(cls, value):
        # a single server, a comma separated string or a list
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return tuple(value)

    @field_validator("local_address", mode="before")
    @classmethod
    def _empty_is_none(cls, value):
        return value or None


class Config:
    """Configuration manager for socks5d."""

    env_mappings = {
        "SOCKS5D_HOST": "host",
        "SOCKS5D_PORT": "port",
        "SOCKS5D_LOCAL_ADDRESS": "local_address",
        "SOCKS5D_DNS": "dns",
        "SOCKS5D_IDLE_TIMEOUT": "idle_timeout",
        "SOCKS5D_CONNECT_TIMEOUT": "connect_timeout",
        "SOCKS5D_UDP_TIMEOUT": "udp_timeout",
    }

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file or self._find_config_file()
        self.data: dict[str, Any] = {}
        self.load()

    def _find_config_file(self) -> str:
        """Find configuration file in standard locations."""
        candidates = [
            "socks5d.yaml",
            "socks5d.yml",
            os.path.expanduser("~/.socks5d/config.yaml"),
            "/etc/socks5d/config.yaml",
        ]
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        return "socks5d.yaml"  # Default

    def load(self):
        """Load configuration from file and environment."""
        if os.path.isfile(self.config_file):
            try:
                with open(self.config_file) as f:
                    file_config = yaml.safe_load(f) or {}
                if not isinstance(file_config, dict):
                    raise ValueError("top level must be a mapping")
                self.data.update(file_config)
                logger.info(f"Loaded config from {self.config_file}")
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {self.config_file}: {e}")

        self._load_from_env()

    def _load_from_env(self):
        """Load configuration from environment variables."""
        for env_var, key in self.env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                self.data[key] = value
                logger.debug(f"Set {key} = {value} from {env_var}")

    def server_config(self, **overrides) -> ServerConfig:
        """
        Validate and freeze the configuration.

        ``overrides`` (typically CLI flags) win over file and environment
        values; ``None`` means "not given".
        """
        merged = dict(self.data)
        merged.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return ServerConfig(**merged)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise Socks5Error(
                "Invalid configuration", ErrorType.CONFIG, {"errors": e.errors(include_input=False)}
            ) from e

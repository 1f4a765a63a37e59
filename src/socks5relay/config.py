# src/socks5relay/config.py
"""
Configuration module for socks5relay.

Handles loading and validation of configuration from a YAML file and the
environment. The surface is deliberately small: where to listen, how many
connections to serve at once, and how to log.
"""

import logging
import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_BIND = "0.0.0.0:1080"


class ConfigError(Exception):
    pass


def parse_bind(value: str) -> tuple[str, int]:
    """
    Split a ``host:port`` bind string.

    IPv6 hosts use brackets, e.g. ``[::]:1080``.
    """
    value = str(value).strip()
    host, sep, port_str = value.rpartition(":")
    if not sep or not host or not port_str:
        raise ConfigError(f"Bind address must look like host:port, got {value!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ConfigError(f"IPv6 bind hosts must be bracketed, got {value!r}")
    try:
        port = int(port_str)
    except ValueError:
        raise ConfigError(f"Invalid port in bind address {value!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"Port out of range in bind address {value!r}")
    return host, port


class ServerSettings(BaseModel):
    bind: str = Field(DEFAULT_BIND, description="host:port to listen on")
    max_connections: int = Field(0, ge=0, description="Concurrent connection cap, 0 = unbounded")

    @field_validator("bind")
    @classmethod
    def _check_bind(cls, value: str) -> str:
        try:
            parse_bind(value)
        except ConfigError as e:
            raise ValueError(str(e)) from e
        return value

    @property
    def address(self) -> tuple[str, int]:
        return parse_bind(self.bind)


class LoggingSettings(BaseModel):
    level: str = Field("INFO")
    file: Optional[str] = Field(None)

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level {value!r}")
        return value.upper()


class ConfigModel(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class Config:
    """Configuration manager for socks5relay."""

    ENV_MAPPINGS = {
        "SOCKS5RELAY_BIND": ("server", "bind"),
        "SOCKS5RELAY_MAX_CONNECTIONS": ("server", "max_connections"),
        "SOCKS5RELAY_LOG_LEVEL": ("logging", "level"),
        "SOCKS5RELAY_LOG_FILE": ("logging", "file"),
    }

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file or self._find_config_file()
        self.data: dict[str, Any] = {}
        self.model = ConfigModel()
        self.load()

    def _find_config_file(self) -> Optional[str]:
        """Find configuration file in standard locations."""
        candidates = [
            "socks5relay.yaml",
            "socks5relay.yml",
            os.path.expanduser("~/.config/socks5relay/config.yaml"),
            "/etc/socks5relay/config.yaml",
        ]
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        return None

    def load(self) -> None:
        """Load configuration from file and environment."""
        if self.config_file:
            if not os.path.isfile(self.config_file):
                raise ConfigError(f"Config file not found: {self.config_file}")
            try:
                with open(self.config_file) as f:
                    file_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {self.config_file}: {e}") from e
            if not isinstance(file_config, dict):
                raise ConfigError(f"Top level of {self.config_file} must be a mapping")
            self.data.update(file_config)
            logger.info(f"Loaded config from {self.config_file}")

        self._load_from_env()
        self.validate()

    def _load_from_env(self) -> None:
        for env_var, config_path in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is not None:
                self.set_nested(*config_path, value=value)
                logger.debug(f"Set {'.'.join(config_path)} = {value} from {env_var}")

    def set_nested(self, *keys, value) -> None:
        """Set a nested configuration value."""
        d = self.data
        for key in keys[:-1]:
            if not isinstance(d.get(key), dict):
                d[key] = {}
            d = d[key]
        d[keys[-1]] = value

    def get(self, *keys, default=None):
        """Get a nested configuration value."""
        d = self.data
        for key in keys:
            if isinstance(d, dict) and key in d:
                d = d[key]
            else:
                return default
        return d

    def validate(self) -> ConfigModel:
        """Validate configuration against the schema."""
        try:
            self.model = ConfigModel(**self.data)
        except ValidationError as e:
            raise ConfigError(f"Configuration validation failed: {e}") from e
        return self.model

    @property
    def server(self) -> ServerSettings:
        return self.model.server

    @property
    def logging(self) -> LoggingSettings:
        return self.model.logging

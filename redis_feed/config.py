"""
Redis Feed Configuration

All environment variables are read here. No os.getenv() calls elsewhere.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any

ENV_PREFIX = "REDIS_FEED_"


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


def _optional_env(name: str, default: str | None = None) -> str | None:
    """Get an optional environment variable with a default."""
    value = os.environ.get(name)
    return value if value else default


def _optional_env_int(name: str, default: int) -> int:
    """Get an optional integer environment variable with a default."""
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid integer value for {name}: {value}")


def _optional_env_float(name: str, default: float) -> float:
    """Get an optional float environment variable with a default."""
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"Invalid number value for {name}: {value}")


def _optional_env_bool(name: str, default: bool) -> bool:
    """Get an optional boolean environment variable with a default."""
    value = os.environ.get(name)
    if not value:
        return default
    return value.lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class RedisConfig:
    """Broker connection and pub/sub settings."""

    host: str = "localhost"
    port: int = 6379
    password: str | None = None
    database: int = 0
    timeout: float = 2.0  # seconds, socket connect/read
    ssl: bool = False
    max_connections: int = 20
    health_check_interval: int = 30  # seconds, 0 = disabled

    key_prefix: str = "feed:"
    pubsub_prefix: str = "feed:pubsub:"
    default_ttl: int = 3600  # seconds, RedisCache.put() without an explicit ttl

    listener_poll_interval: float = 0.1  # how often listeners check for cancellation
    cancel_timeout: float = 1.0  # grace period before a listener is force-cancelled

    @property
    def url(self) -> str:
        """Connection URL without credentials (password is passed separately)."""
        scheme = "rediss" if self.ssl else "redis"
        return f"{scheme}://{self.host}:{self.port}/{self.database}"

    def channel(self, name: str) -> str:
        """Namespace a channel name with pubsub_prefix."""
        return f"{self.pubsub_prefix}{name}"

    def validate(self) -> None:
        if not self.host or not self.host.strip():
            raise ConfigurationError("Redis host must not be empty")
        if self.port <= 0 or self.port > 65535:
            raise ConfigurationError("Redis port must be between 1 and 65535")
        if self.database < 0:
            raise ConfigurationError("Redis database must not be negative")
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if self.max_connections <= 0:
            raise ConfigurationError("max_connections must be positive")
        if self.health_check_interval < 0:
            raise ConfigurationError("health_check_interval must not be negative")
        if self.default_ttl <= 0:
            raise ConfigurationError("default_ttl must be positive")
        if self.listener_poll_interval <= 0:
            raise ConfigurationError("listener_poll_interval must be positive")
        if self.cancel_timeout < 0:
            raise ConfigurationError("cancel_timeout must not be negative")

    def with_overrides(self, **overrides: Any) -> RedisConfig:
        config = replace(self, **overrides)
        config.validate()
        return config

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides: Any) -> RedisConfig:
        """Load settings from <prefix>HOST, <prefix>PORT, ... then apply overrides."""
        defaults = cls()
        values: dict[str, Any] = {
            "host": _optional_env(f"{prefix}HOST", defaults.host),
            "port": _optional_env_int(f"{prefix}PORT", defaults.port),
            "password": _optional_env(f"{prefix}PASSWORD", defaults.password),
            "database": _optional_env_int(f"{prefix}DB", defaults.database),
            "timeout": _optional_env_float(f"{prefix}TIMEOUT", defaults.timeout),
            "ssl": _optional_env_bool(f"{prefix}SSL", defaults.ssl),
            "max_connections": _optional_env_int(
                f"{prefix}MAX_CONNECTIONS", defaults.max_connections
            ),
            "health_check_interval": _optional_env_int(
                f"{prefix}HEALTH_CHECK_INTERVAL", defaults.health_check_interval
            ),
            "key_prefix": _optional_env(f"{prefix}KEY_PREFIX", defaults.key_prefix),
            "pubsub_prefix": _optional_env(f"{prefix}PUBSUB_PREFIX", defaults.pubsub_prefix),
            "default_ttl": _optional_env_int(f"{prefix}DEFAULT_TTL", defaults.default_ttl),
            "listener_poll_interval": _optional_env_float(
                f"{prefix}POLL_INTERVAL", defaults.listener_poll_interval
            ),
            "cancel_timeout": _optional_env_float(
                f"{prefix}CANCEL_TIMEOUT", defaults.cancel_timeout
            ),
        }
        values.update(overrides)
        config = cls(**values)
        config.validate()
        return config

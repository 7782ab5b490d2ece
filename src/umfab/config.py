"""Configuration loading and merging for umfab."""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigurationError
from .registry import ServiceDescriptor


@dataclass
class RedisConfig:
    """Connection settings for the shared Redis store."""
    url: str = "127.0.0.1"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


@dataclass
class FabricConfig:
    # Service descriptor; an empty service_name means "not a service", which
    # still allows discovery and sending.
    service_name: str = ""
    service_description: str = ""
    service_type: str = ""
    service_ip: str = ""
    service_port: int = 0
    service_version: str = "0.0.0"

    # Prefix for every store key and channel
    namespace: str = "umfab"

    # Presence refresh period and the lifetime of a presence key (seconds)
    heartbeat_interval: float = 1.0
    presence_ttl: float = 3.0

    # Consecutive failed refreshes before the instance reports itself degraded
    failure_threshold: int = 3

    redis: RedisConfig = field(default_factory=RedisConfig)

    def descriptor(self) -> Optional[ServiceDescriptor]:
        """The ServiceDescriptor this config describes, or None without a service_name."""
        if not self.service_name:
            return None
        return ServiceDescriptor(
            service_name=self.service_name,
            service_type=self.service_type,
            host=self.service_ip,
            port=self.service_port,
            description=self.service_description,
            version=self.service_version,
        )


# Flat CLI argument name -> RedisConfig field
_REDIS_ARGS = {"redis_host": "url", "redis_port": "port", "redis_db": "db", "redis_password": "password"}

_NUMERIC = {
    "service_port": int,
    "heartbeat_interval": float,
    "presence_ttl": float,
    "failure_threshold": int,
}


def _coerce(name: str, value, kind):
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be {kind.__name__}, got {value!r}") from exc


def validate_config(config: FabricConfig) -> FabricConfig:
    """Check timing settings; raises ConfigurationError."""
    if config.heartbeat_interval <= 0:
        raise ConfigurationError("heartbeat_interval must be positive")
    if config.presence_ttl <= config.heartbeat_interval:
        raise ConfigurationError(
            f"presence_ttl ({config.presence_ttl}) must exceed "
            f"heartbeat_interval ({config.heartbeat_interval})"
        )
    if config.failure_threshold < 1:
        raise ConfigurationError("failure_threshold must be at least 1")
    if not config.namespace:
        raise ConfigurationError("namespace must not be empty")
    return config


def config_from_dict(data: dict) -> FabricConfig:
    """Build a FabricConfig from a mapping, ignoring unknown keys."""
    if not isinstance(data, dict):
        raise ConfigurationError("configuration must be a mapping")

    raw_redis = data.get("redis") or {}
    if not isinstance(raw_redis, dict):
        raise ConfigurationError("redis must be a mapping")
    redis_fields = {f.name for f in fields(RedisConfig)}
    redis_cfg = RedisConfig(**{k: v for k, v in raw_redis.items() if k in redis_fields})
    redis_cfg.port = _coerce("redis.port", redis_cfg.port, int)
    redis_cfg.db = _coerce("redis.db", redis_cfg.db, int)

    valid_fields = {f.name for f in fields(FabricConfig)} - {"redis"}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    for name, kind in _NUMERIC.items():
        if name in filtered:
            filtered[name] = _coerce(name, filtered[name], kind)

    return validate_config(FabricConfig(**filtered, redis=redis_cfg))


def load_config(path: str | Path) -> FabricConfig:
    """Load a FabricConfig from a YAML file."""
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"cannot read config {path}: {exc}") from exc
    return config_from_dict(data)


def merge_cli_args(config: FabricConfig, args) -> FabricConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(FabricConfig):
        if f.name == "redis":
            continue
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    for arg_name, redis_field in _REDIS_ARGS.items():
        cli_val = getattr(args, arg_name, None)
        if cli_val is not None:
            setattr(config.redis, redis_field, cli_val)
    return validate_config(config)


def config_to_yaml(config: FabricConfig) -> str:
    """Serialize a FabricConfig to YAML."""
    data: dict = {}

    if config.service_name:
        data["service_name"] = config.service_name
        data["service_description"] = config.service_description
        data["service_type"] = config.service_type
        data["service_ip"] = config.service_ip
        data["service_port"] = config.service_port
        data["service_version"] = config.service_version

    data["namespace"] = config.namespace
    data["heartbeat_interval"] = config.heartbeat_interval
    data["presence_ttl"] = config.presence_ttl
    data["failure_threshold"] = config.failure_threshold

    redis_entry: dict = {"url": config.redis.url, "port": config.redis.port, "db": config.redis.db}
    if config.redis.password:
        redis_entry["password"] = config.redis.password
    data["redis"] = redis_entry

    return yaml.dump(data, default_flow_style=False, sort_keys=False)

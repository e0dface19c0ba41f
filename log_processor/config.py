"""Configuration loading — frozen dataclass built from defaults, YAML, and env vars."""

import os
import logging
from dataclasses import dataclass

import yaml

from log_processor.errors import ConfigError

logger = logging.getLogger(__name__)

API_KEY_METHODS = ("header", "getParam", "basicAuthUsername")


def _split_list(value: str) -> tuple:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class WorkerConfig:
    beanstalk_host: str = "127.0.0.1"
    beanstalk_port: int = 11300
    beanstalk_tube: str = "logs"
    redis_host: str = "127.0.0.1"
    redis_port: int = 6379
    redis_db: int = 0
    opensearch_hosts: tuple = ("http://127.0.0.1:9200",)
    opensearch_timeout: int = 30
    index_prefix: str = "api-logs"
    document_type: str = ""
    batch_size: int = 250
    flush_interval: float = 5.0
    high_water_mark: int = 1000
    backpressure_poll: float = 0.5
    reserve_timeout: int = 1
    finish_delay: int = 600
    retry_base_delay: int = 4
    max_attempts: int = 10
    incomplete_accept_attempts: int = 3
    stats_fallback_attempts: int = 8
    api_key_methods: tuple = API_KEY_METHODS
    metrics_interval: float = 60.0
    log_level: str = "INFO"

    def __post_init__(self):
        unknown = [m for m in self.api_key_methods if m not in API_KEY_METHODS]
        if unknown:
            raise ConfigError(f"Unknown api key methods: {', '.join(unknown)}")
        if self.batch_size <= 0:
            raise ConfigError("batch_size must be positive")
        if self.flush_interval <= 0:
            raise ConfigError("flush_interval must be positive")
        if self.high_water_mark < self.batch_size:
            raise ConfigError("high_water_mark must be at least batch_size")

    @classmethod
    def from_dict(cls, d: dict) -> "WorkerConfig":
        """Build a config from the sectioned YAML layout."""
        return cls(**yaml_settings(d))


def yaml_settings(d: dict) -> dict:
    """Flatten the sectioned YAML layout into WorkerConfig keyword arguments."""
    beanstalk = d.get("beanstalk") or {}
    redis = d.get("redis") or {}
    opensearch = d.get("opensearch") or {}
    processor = d.get("processor") or {}
    logging_section = d.get("logging") or {}

    kwargs: dict = {}
    for key in ("host", "port", "tube"):
        if key in beanstalk:
            kwargs[f"beanstalk_{key}"] = beanstalk[key]
    for key in ("host", "port", "db"):
        if key in redis:
            kwargs[f"redis_{key}"] = redis[key]
    if "hosts" in opensearch:
        kwargs["opensearch_hosts"] = tuple(opensearch["hosts"])
    if "timeout" in opensearch:
        kwargs["opensearch_timeout"] = opensearch["timeout"]
    if "index_prefix" in opensearch:
        kwargs["index_prefix"] = opensearch["index_prefix"]
    if "document_type" in opensearch:
        kwargs["document_type"] = opensearch["document_type"] or ""
    for key, value in processor.items():
        if key not in WorkerConfig.__dataclass_fields__:
            logger.warning("Ignoring unknown processor setting %r", key)
            continue
        kwargs[key] = tuple(value) if key == "api_key_methods" else value
    if "level" in logging_section:
        kwargs["log_level"] = logging_section["level"]
    return kwargs


def load_yaml_config(path: str | None) -> dict:
    """Read the YAML config file. Returns an empty dict when there is none."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.info("Loaded YAML config from %s", path)
    return data


def _env_number(name: str, convert):
    value = os.environ[name]
    try:
        return convert(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


def _env_overrides() -> dict:
    env = os.environ
    overrides: dict = {}
    if "BEANSTALK_HOST" in env:
        overrides["beanstalk_host"] = env["BEANSTALK_HOST"]
    if "BEANSTALK_PORT" in env:
        overrides["beanstalk_port"] = _env_number("BEANSTALK_PORT", int)
    if "BEANSTALK_TUBE" in env:
        overrides["beanstalk_tube"] = env["BEANSTALK_TUBE"]
    if "REDIS_HOST" in env:
        overrides["redis_host"] = env["REDIS_HOST"]
    if "REDIS_PORT" in env:
        overrides["redis_port"] = _env_number("REDIS_PORT", int)
    if "REDIS_DB" in env:
        overrides["redis_db"] = _env_number("REDIS_DB", int)
    if "OPENSEARCH_HOSTS" in env:
        overrides["opensearch_hosts"] = _split_list(env["OPENSEARCH_HOSTS"])
    if "INDEX_PREFIX" in env:
        overrides["index_prefix"] = env["INDEX_PREFIX"]
    if "BATCH_SIZE" in env:
        overrides["batch_size"] = _env_number("BATCH_SIZE", int)
    if "FLUSH_INTERVAL" in env:
        overrides["flush_interval"] = _env_number("FLUSH_INTERVAL", float)
    if "HIGH_WATER_MARK" in env:
        overrides["high_water_mark"] = _env_number("HIGH_WATER_MARK", int)
    if "API_KEY_METHODS" in env:
        overrides["api_key_methods"] = _split_list(env["API_KEY_METHODS"])
    if "LOG_LEVEL" in env:
        overrides["log_level"] = env["LOG_LEVEL"]
    return overrides


def load_config(path: str | None = None) -> WorkerConfig:
    """Build WorkerConfig from defaults <- YAML file <- env vars (highest priority).

    When *path* is None the ``CONFIG_PATH`` environment variable is used.
    Only the merged result is validated.
    """
    if path is None:
        path = os.environ.get("CONFIG_PATH")

    kwargs = yaml_settings(load_yaml_config(path))
    kwargs.update(_env_overrides())
    return WorkerConfig(**kwargs)

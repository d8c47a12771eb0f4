"""
Configuration loader for the inbound router.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./inbound_router.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class StreamConfig:
    incoming: str = "stream:incoming_messages"
    workflow: str = "stream:workflow_triggers"
    outgoing_whatsapp: str = "stream:outgoing:whatsapp"
    outgoing_email: str = "stream:outgoing:email"
    dead_letter: str = "stream:dead_letter"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    streams: StreamConfig = field(default_factory=StreamConfig)
    block_ms: int = 5000                # XREADGROUP block per poll
    read_count: int = 5                 # entries per read
    claim_idle_ms: int = 60000          # unacked entries older than this are reclaimed
    max_deliveries: int = 5             # deliveries before an entry is dead-lettered
    processed_ttl_seconds: int = 86400  # how long a processed message id is remembered


@dataclass
class WorkerConfig:
    ai_workers: int = 2
    workflow_workers: int = 1
    outbound_workers: int = 1
    shutdown_timeout: float = 30.0      # seconds to let in-flight entries finish


@dataclass
class CollaboratorConfig:
    workflow_base_url: str = ""         # workflow service (trigger lookup + dispatch)
    campaign_base_url: str = ""         # campaign service
    ai_engine_url: str = ""             # AI response service
    channel_gateway_url: str = ""       # outbound delivery gateway
    api_key: str = ""
    timeout_seconds: float = 10.0
    trigger_cache_ttl: float = 30.0


@dataclass
class RoutingConfig:
    default_timezone: str = "UTC"


@dataclass
class Settings:
    app_name: str = "InboundRouter"
    debug: bool = False
    log_json: bool = True
    log_level: str = "INFO"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    collaborators: CollaboratorConfig = field(default_factory=CollaboratorConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} / ${VAR_NAME:-default} patterns with environment values."""
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        return os.environ.get(var_name, default if default is not None else match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _merge(target: Any, raw: dict[str, Any]) -> Any:
    """Copy known keys from a raw dict onto a config dataclass."""
    for key, value in (raw or {}).items():
        if not hasattr(target, key):
            continue
        current = getattr(target, key)
        if hasattr(current, "__dataclass_fields__") and isinstance(value, dict):
            _merge(current, value)
        else:
            setattr(target, key, value)
    return target


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ROUTER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_json = raw.get("log_json", settings.log_json)
        settings.log_level = raw.get("log_level", settings.log_level)

        if "database" in raw:
            _merge(settings.database, raw["database"])
        if "queue" in raw:
            _merge(settings.queue, raw["queue"])
        if "workers" in raw:
            _merge(settings.workers, raw["workers"])
        if "collaborators" in raw:
            _merge(settings.collaborators, raw["collaborators"])
        if "routing" in raw:
            _merge(settings.routing, raw["routing"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings

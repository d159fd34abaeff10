"""
Configuration loader for the support router.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./support_router.db"        # postgresql:// | mysql:// | sqlite://
    echo: bool = False


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "sql" for production
    poll_interval_ms: int = 100
    lease_duration_s: float = 30.0
    max_concurrent_keys: int = 10       # distinct conversation keys executing at once
    max_retries: int = 3
    jitter_min_ms: int = 500            # delay between sends on the same key
    jitter_max_ms: int = 2000
    maintenance_interval_s: float = 6 * 60 * 60
    retention_days: int = 7
    stuck_after_s: float = 60 * 60
    worker_id: str = ""                 # stable lease owner across restarts; empty picks a per-process id


@dataclass
class BotConfig:
    watchdog_interval_s: float = 60.0
    satisfaction_timeout_ms: int = 30 * 60 * 1000
    customer_linking_timeout_ms: int = 5 * 60 * 1000
    choose_sector_timeout_ms: int = 0   # 0 disables the inactivity timeout
    choose_operator_timeout_ms: int = 0
    session_file: str = ""              # empty keeps sessions in memory only
    flush_debounce_ms: int = 250
    customer_linking_enabled: bool = False
    satisfaction_questions: list[str] = field(default_factory=lambda: [
        "De 1 a 10, como você avalia a cordialidade do atendente?",
        "De 1 a 10, o atendente resolveu a sua solicitação? (99 se não se aplica)",
        "De 1 a 10, como você avalia o tempo de resposta?",
        "De 1 a 10, qual a chance de você nos recomendar a um amigo?",
    ])


@dataclass
class RoutingConfig:
    sector_choice: str = "ask_first"    # "ask_first" | "route_first"
    flow_source: str = "settings"      # "settings" | "database" (routing_flows table)
    flows: dict[str, list[dict[str, Any]]] = field(default_factory=dict)   # "tenant:sector" -> steps
    entry_dialogs: list[str] = field(default_factory=list)
    max_iterations: int = 50


@dataclass
class NotificationConfig:
    backend: str = "memory"             # "memory" | "redis"
    redis_url: str = "redis://localhost:6379"
    channel_prefix: str = "rooms"


@dataclass
class ChannelConfig:
    provider: str = "loopback"          # "cloud_api" | "loopback"
    enabled: bool = True
    api_url: str = ""
    token: str = ""
    rate_limit: float = 20.0
    rate_burst: int = 40
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    timeout: float = 15.0


@dataclass
class TenantOverrides:
    """Per-tenant tunables. ``None`` means inherit the global value."""
    poll_interval_ms: Optional[int] = None
    lease_duration_s: Optional[float] = None
    max_concurrent_keys: Optional[int] = None
    max_retries: Optional[int] = None
    dedicated_pool: bool = False
    satisfaction_timeout_ms: Optional[int] = None
    customer_linking_timeout_ms: Optional[int] = None
    customer_linking_enabled: Optional[bool] = None
    sector_choice: Optional[str] = None
    entry_dialogs: Optional[list[str]] = None


@dataclass
class Settings:
    app_name: str = "SupportRouter"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    bots: BotConfig = field(default_factory=BotConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)
    tenants: dict[str, TenantOverrides] = field(default_factory=dict)

    def queue_for(self, tenant: Optional[str]) -> QueueConfig:
        """Effective queue tunables for a tenant."""
        overrides = self.tenants.get(tenant) if tenant else None
        if overrides is None:
            return self.queue
        return replace(self.queue, **_present(overrides, QueueConfig))

    def bots_for(self, tenant: Optional[str]) -> BotConfig:
        """Effective bot tunables for a tenant."""
        overrides = self.tenants.get(tenant) if tenant else None
        if overrides is None:
            return self.bots
        return replace(self.bots, **_present(overrides, BotConfig))

    def sector_choice_for(self, tenant: Optional[str]) -> str:
        overrides = self.tenants.get(tenant) if tenant else None
        if overrides and overrides.sector_choice:
            return overrides.sector_choice
        return self.routing.sector_choice

    def entry_dialogs_for(self, tenant: Optional[str]) -> list[str]:
        """Dialog names offered to new conversations before routing, in order."""
        overrides = self.tenants.get(tenant) if tenant else None
        if overrides and overrides.entry_dialogs is not None:
            return list(overrides.entry_dialogs)
        return list(self.routing.entry_dialogs)


_settings: Optional[Settings] = None


def _present(overrides: TenantOverrides, target: type) -> dict[str, Any]:
    names = {f.name for f in fields(target)}
    return {
        f.name: getattr(overrides, f.name)
        for f in fields(overrides)
        if f.name in names and getattr(overrides, f.name) is not None
    }


def _section(cls: type, data: Optional[dict[str, Any]]):
    """Build a config dataclass from a raw mapping, ignoring unknown keys."""
    data = data or {}
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SUPPORT_ROUTER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"])
        if "bots" in raw:
            settings.bots = _section(BotConfig, raw["bots"])
        if "routing" in raw:
            settings.routing = _section(RoutingConfig, raw["routing"])
        if "notifications" in raw:
            settings.notifications = _section(NotificationConfig, raw["notifications"])

        for ch_name, ch_data in (raw.get("channels") or {}).items():
            settings.channels[ch_name] = _section(ChannelConfig, ch_data)

        for tenant, t_data in (raw.get("tenants") or {}).items():
            settings.tenants[tenant] = _section(TenantOverrides, t_data)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (testing)."""
    global _settings
    _settings = None

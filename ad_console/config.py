"""Configuration loading utilities for the directory administration console."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "AD_CONSOLE_CONFIG"
ENV_PREFIX = "AD_CONSOLE_"
DEFAULT_DATABASE_URL = "sqlite:///data/ad_console.sqlite"


@dataclass
class LDAPConfig:
    """Settings required to connect to Active Directory via LDAP."""

    server_uri: str
    user_dn: str
    password: str
    base_dn: str
    user_ou: str
    use_ssl: bool = True
    mock_data_file: Optional[Path] = None
    group_search_base: Optional[str] = None
    disabled_ou: Optional[str] = None


@dataclass
class DatabaseConfig:
    """Relational store holding vacations, scheduled tasks and the audit trail."""

    url: str = DEFAULT_DATABASE_URL
    echo: bool = False


@dataclass
class SchedulerConfig:
    """Cadence and safety switches for the scheduled task worker."""

    interval_seconds: int = 86400  # once a day
    claim_tasks: bool = False
    run_on_start: bool = True
    run_in_web: bool = False


@dataclass
class AuditConfig:
    list_limit: int = 500


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    ldap: LDAPConfig
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)


class ConfigurationError(RuntimeError):
    """Raised when the settings file or an ``AD_CONSOLE_*`` override is invalid."""


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Settings file '{path}' not found. Copy 'config/settings.example.yaml' "
            f"or point {ENV_CONFIG_PATH} at an existing file."
        )
    with path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Settings file '{path}' must contain a mapping at the top level.")
    return loaded


def _environment_overrides() -> Dict[str, Any]:
    """Collect ``AD_CONSOLE_<SECTION>__<KEY>`` variables into a nested mapping."""

    overrides: Dict[str, Any] = {}
    for name, raw in os.environ.items():
        if not name.startswith(ENV_PREFIX) or name == ENV_CONFIG_PATH:
            continue
        *sections, leaf = name[len(ENV_PREFIX) :].lower().split("__")
        target = overrides
        for section in sections:
            target = target.setdefault(section, {})
        target[leaf] = raw
    return overrides


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            value = _merge(current, value)
        merged[key] = value
    return merged


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    return Path(os.environ.get(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH)


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Create the settings file from the example template on first run."""

    target = _resolve_config_path(path)
    if target.exists():
        return target

    template = Path(template_path or DEFAULT_TEMPLATE_PATH)
    if not template.exists():
        raise ConfigurationError(
            f"Cannot create '{target}': template '{template}' is missing."
        )

    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target)
    return target


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved = _resolve_config_path(path)
    if resolved == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved)
    return _merge(_read_yaml(resolved), _environment_overrides())


def _section(config_dict: Dict[str, Any], name: str, required: bool = False) -> Dict[str, Any]:
    value = config_dict.get(name)
    if value is None:
        if required:
            raise ConfigurationError(f"Missing required configuration section: '{name}'.")
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{name}' must be a mapping.")
    return value


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_path(value: Any) -> Optional[Path]:
    text = _optional_str(value)
    return Path(text) if text else None


def _positive_int(value: Any, label: str) -> int:
    try:
        numeric = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid integer for {label}: {value!r}.") from exc
    if numeric <= 0:
        raise ConfigurationError(f"{label} must be positive (got {numeric}).")
    return numeric


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)
    return config_from_dict(config_dict)


def config_from_dict(config_dict: Dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from an already merged mapping."""

    ldap_section = _section(config_dict, "ldap", required=True)

    try:
        ldap_config = LDAPConfig(
            server_uri=ldap_section["server_uri"],
            user_dn=ldap_section["user_dn"],
            password=str(ldap_section["password"]),
            base_dn=ldap_section["base_dn"],
            user_ou=ldap_section["user_ou"],
            use_ssl=_to_bool(ldap_section.get("use_ssl", True)),
            mock_data_file=_optional_path(ldap_section.get("mock_data_file")),
            group_search_base=_optional_str(ldap_section.get("group_search_base")),
            disabled_ou=_optional_str(ldap_section.get("disabled_ou")),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Missing LDAP configuration key: {exc}.") from exc

    database_section = _section(config_dict, "database")
    database_config = DatabaseConfig(
        url=_optional_str(database_section.get("url")) or DEFAULT_DATABASE_URL,
        echo=_to_bool(database_section.get("echo", False)),
    )

    scheduler_section = _section(config_dict, "scheduler")
    default_scheduler = SchedulerConfig()
    scheduler_config = SchedulerConfig(
        interval_seconds=_positive_int(
            scheduler_section.get("interval_seconds", default_scheduler.interval_seconds),
            "scheduler.interval_seconds",
        ),
        claim_tasks=_to_bool(scheduler_section.get("claim_tasks", default_scheduler.claim_tasks)),
        run_on_start=_to_bool(scheduler_section.get("run_on_start", default_scheduler.run_on_start)),
        run_in_web=_to_bool(scheduler_section.get("run_in_web", default_scheduler.run_in_web)),
    )

    audit_section = _section(config_dict, "audit")
    audit_config = AuditConfig(
        list_limit=_positive_int(
            audit_section.get("list_limit", AuditConfig().list_limit),
            "audit.list_limit",
        ),
    )

    return AppConfig(
        ldap=ldap_config,
        database=database_config,
        scheduler=scheduler_config,
        audit=audit_config,
    )


def config_to_dict(config: AppConfig) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types for persistence."""

    return {
        "ldap": {
            "server_uri": config.ldap.server_uri,
            "user_dn": config.ldap.user_dn,
            "password": config.ldap.password,
            "base_dn": config.ldap.base_dn,
            "user_ou": config.ldap.user_ou,
            "use_ssl": config.ldap.use_ssl,
            **(
                {"mock_data_file": str(config.ldap.mock_data_file)}
                if config.ldap.mock_data_file
                else {}
            ),
            **(
                {"group_search_base": config.ldap.group_search_base}
                if config.ldap.group_search_base
                else {}
            ),
            **({"disabled_ou": config.ldap.disabled_ou} if config.ldap.disabled_ou else {}),
        },
        "database": {
            "url": config.database.url,
            "echo": config.database.echo,
        },
        "scheduler": {
            "interval_seconds": config.scheduler.interval_seconds,
            "claim_tasks": config.scheduler.claim_tasks,
            "run_on_start": config.scheduler.run_on_start,
            "run_in_web": config.scheduler.run_in_web,
        },
        "audit": {
            "list_limit": config.audit.list_limit,
        },
    }


def save_config(config: AppConfig, path: Optional[Path] = None) -> Path:
    """Persist the configuration to disk, returning the path that was written."""

    target = _resolve_config_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = config_to_dict(config)
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False, indent=2)
    return target


__all__ = [
    "AppConfig",
    "AuditConfig",
    "ConfigurationError",
    "DatabaseConfig",
    "LDAPConfig",
    "SchedulerConfig",
    "config_from_dict",
    "config_to_dict",
    "ensure_default_config",
    "load_config",
    "save_config",
]

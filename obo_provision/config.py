"""Configuration loading utilities for the provisioning toolkit."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import shutil

import yaml

from .models import ApplicationDescriptor, GrantEdge, build_grant_edges, order_descriptors


DEFAULT_CONFIG_PATH = Path("config/provision.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/provision.example.yaml")
ENV_CONFIG_PATH = "OBO_CONFIG"
ENV_PREFIX = "OBO_"

AUTH_MODES = ("cli", "client_secret", "mock")
DEFAULT_PREMIUM_PLANS = ("AAD_PREMIUM", "AAD_PREMIUM_P2")
DEFAULT_ADMIN_ROLES = (
    "Global Administrator",
    "Privileged Role Administrator",
    "Cloud Application Administrator",
    "Application Administrator",
)


@dataclass(frozen=True)
class DirectoryConfig:
    """How to reach the identity directory."""

    auth_mode: str = "cli"
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    request_timeout: int = 30
    mock_data_file: Optional[Path] = None

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass(frozen=True)
class PropagationConfig:
    """Bounded polling used while waiting for directory writes to become visible."""

    max_attempts: int = 30
    interval_seconds: float = 2.0


@dataclass(frozen=True)
class ConsentConfig:
    """Admin consent policy."""

    skip_on_free_tier: bool = True
    premium_service_plans: Tuple[str, ...] = DEFAULT_PREMIUM_PLANS
    admin_roles: Tuple[str, ...] = DEFAULT_ADMIN_ROLES


@dataclass(frozen=True)
class OutputConfig:
    descriptor_file: Path = Path("output/provisioned.yaml")
    secret_display_name: str = "obo-provision"


@dataclass(frozen=True)
class AppConfig:
    """Aggregate configuration for a provisioning run."""

    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    propagation: PropagationConfig = field(default_factory=PropagationConfig)
    consent: ConsentConfig = field(default_factory=ConsentConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    applications: Tuple[ApplicationDescriptor, ...] = ()

    @property
    def grant_edges(self) -> List[GrantEdge]:
        return build_grant_edges(self.applications)

    def ordered_applications(self) -> List[ApplicationDescriptor]:
        return order_descriptors(self.applications, self.grant_edges)

    def application(self, key: str) -> ApplicationDescriptor:
        for descriptor in self.applications:
            if descriptor.key == key:
                return descriptor
        raise KeyError(key)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/provision.example.yaml'."
        )
    with path.open("r", encoding="utf-8") as file:
        try:
            return yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc


def _apply_environment_overrides(
    config_dict: Dict[str, Any], environ: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """Override configuration values with ``OBO_SECTION__KEY`` environment variables."""

    overrides: Dict[str, Any] = {}
    source = os.environ if environ is None else environ
    for key, value in source.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/provision.example.yaml' is present or pass --config."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return [part for part in value.split(",")]
    return [value]


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _to_float(value: Any) -> float:
    if isinstance(value, str):
        return float(value.strip())
    return float(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _string_tuple(value: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    cleaned = tuple(
        filter(None, [str(entry).strip() for entry in _normalize_sequence(value)])
    )
    return cleaned or default


def _parse_directory(section: Dict[str, Any]) -> DirectoryConfig:
    defaults = DirectoryConfig()
    auth_mode = str(section.get("auth_mode") or defaults.auth_mode).strip().lower()
    if auth_mode not in AUTH_MODES:
        raise ConfigurationError(
            f"Unknown directory auth_mode '{auth_mode}'. Use one of: {', '.join(AUTH_MODES)}."
        )
    try:
        timeout = _to_int(section.get("request_timeout", defaults.request_timeout))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid directory request_timeout: {exc}.") from exc

    directory = DirectoryConfig(
        auth_mode=auth_mode,
        tenant_id=_optional_str(section.get("tenant_id")),
        client_id=_optional_str(section.get("client_id")),
        client_secret=_optional_str(section.get("client_secret")),
        graph_base_url=(_optional_str(section.get("graph_base_url")) or defaults.graph_base_url).rstrip("/"),
        request_timeout=timeout,
        mock_data_file=_optional_path(section.get("mock_data_file")),
    )
    if auth_mode == "client_secret" and not directory.has_client_credentials:
        raise ConfigurationError(
            "auth_mode 'client_secret' requires directory tenant_id, client_id and client_secret."
        )
    return directory


def _parse_propagation(section: Dict[str, Any]) -> PropagationConfig:
    defaults = PropagationConfig()
    try:
        propagation = PropagationConfig(
            max_attempts=_to_int(section.get("max_attempts", defaults.max_attempts)),
            interval_seconds=_to_float(section.get("interval_seconds", defaults.interval_seconds)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid propagation settings: {exc}.") from exc
    if propagation.max_attempts < 1 or propagation.interval_seconds < 0:
        raise ConfigurationError("Propagation needs max_attempts >= 1 and interval_seconds >= 0.")
    return propagation


def _parse_consent(section: Dict[str, Any]) -> ConsentConfig:
    return ConsentConfig(
        skip_on_free_tier=_to_bool(section.get("skip_on_free_tier", True)),
        premium_service_plans=_string_tuple(section.get("premium_service_plans"), DEFAULT_PREMIUM_PLANS),
        admin_roles=_string_tuple(section.get("admin_roles"), DEFAULT_ADMIN_ROLES),
    )


def _parse_output(section: Dict[str, Any]) -> OutputConfig:
    defaults = OutputConfig()
    return OutputConfig(
        descriptor_file=_optional_path(section.get("descriptor_file")) or defaults.descriptor_file,
        secret_display_name=_optional_str(section.get("secret_display_name")) or defaults.secret_display_name,
    )


def _resolve_scope_names(
    descriptors: List[ApplicationDescriptor],
) -> List[ApplicationDescriptor]:
    """Fill in permission ids for ``@key`` references that only name the scope."""

    by_key = {descriptor.key: descriptor for descriptor in descriptors}
    resolved: List[ApplicationDescriptor] = []
    for descriptor in descriptors:
        grants = []
        for grant in descriptor.required_permissions:
            if not grant.permission_id:
                producer = by_key.get(grant.producer_key or "")
                match = None
                if producer is not None:
                    match = next((s for s in producer.scopes if s.value == grant.name), None)
                if match is None:
                    raise ConfigurationError(
                        f"Application '{descriptor.key}' requests permission '{grant.label}' "
                        f"on '{grant.resource}' without an id."
                    )
                grant = replace(grant, permission_id=match.id)
            grants.append(grant)
        resolved.append(replace(descriptor, required_permissions=tuple(grants)))
    return resolved


def _parse_applications(raw: Any) -> Tuple[ApplicationDescriptor, ...]:
    if not raw:
        raise ConfigurationError("Configuration must list at least one application under 'applications'.")
    descriptors: List[ApplicationDescriptor] = []
    for entry in raw:
        try:
            descriptors.append(ApplicationDescriptor.from_dict(entry or {}))
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(f"Invalid application entry: {exc}") from exc

    keys = [descriptor.key for descriptor in descriptors]
    duplicates = sorted({key for key in keys if keys.count(key) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate application keys: {', '.join(duplicates)}.")

    for descriptor in descriptors:
        unknown = [client for client in descriptor.known_clients if client not in keys]
        if unknown:
            raise ConfigurationError(
                f"Application '{descriptor.key}' lists unknown known_clients: {', '.join(unknown)}."
            )

    descriptors = _resolve_scope_names(descriptors)
    try:
        order_descriptors(descriptors, build_grant_edges(descriptors))
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    return tuple(descriptors)


def config_from_dict(config_dict: Dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from already-loaded primitive values."""

    return AppConfig(
        directory=_parse_directory(config_dict.get("directory") or {}),
        propagation=_parse_propagation(config_dict.get("propagation") or {}),
        consent=_parse_consent(config_dict.get("consent") or {}),
        output=_parse_output(config_dict.get("output") or {}),
        applications=_parse_applications(config_dict.get("applications")),
    )


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load configuration from disk and environment variables."""

    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _apply_environment_overrides(_load_from_file(resolved_path))
    return config_from_dict(config_dict)


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "ConsentConfig",
    "DirectoryConfig",
    "OutputConfig",
    "PropagationConfig",
    "config_from_dict",
    "ensure_default_config",
    "load_config",
]

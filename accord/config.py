"""
Accord — Config Loader

Three-tier configuration loading:
  1. Base file `.accord/config.yaml` (`config.yaml` at the root of a hub)
  2. Per-environment overlay (`{config_dir}/{ACCORD_ENV}.yaml` merged over base)
  3. Environment variable overrides (ACCORD_ prefixed)

Usage:
    from accord.config import load_accord_config

    cfg = load_accord_config("/path/to/repo")
    cfg.dispatcher.poll_interval      # 30
    cfg.owned_names()                 # {"payments", "payments-ledger"}

config.yaml:
    project: shop
    repo_model: multi-repo            # or monorepo
    hub: git@example.com:shop/hub.git
    services:
      - name: payments
        modules: [ledger]
    dispatcher:
      agent_cmd: claude --dangerously-skip-permissions -p
      poll_interval: 30
      request_timeout: 600
      max_attempts: 3

Environment variables:
    ACCORD_ENV          active profile (dev, staging, prod)
    ACCORD_CONFIG_DIR   directory for overlay files (default: .accord/config/)
    ACCORD_*            overrides; `__` separates levels, e.g.
                        ACCORD_DISPATCHER__POLL_INTERVAL=10
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from accord.errors import ConfigError
from accord.worker import DEFAULT_AGENT_CMD

logger = logging.getLogger("accord.config")

ENV_PREFIX = "ACCORD_"
_META_VARS = {
    "ACCORD_ENV", "ACCORD_CONFIG_DIR", "ACCORD_VERSION",
    "ACCORD_GIT_AUTHOR_NAME", "ACCORD_GIT_AUTHOR_EMAIL",
}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: str):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    try:
        d[keys[-1]] = yaml.safe_load(value)
    except yaml.YAMLError:
        d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Overlay Files & Environment Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(base_path: Path, env: str = "", config_dir: str = "") -> dict[str, Any]:
    env = env or os.environ.get("ACCORD_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("ACCORD_CONFIG_DIR", "")
    candidates = []
    if config_dir:
        candidates += [Path(config_dir) / f"{env}.yaml", Path(config_dir) / f"{env}.yml"]
    candidates.append(base_path.parent / "config" / f"{env}.yaml")

    for path in candidates:
        if path.exists():
            try:
                with open(path, encoding="utf-8") as f:
                    overlay = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"invalid overlay {path}: {e}") from e
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    ACCORD_SECTION__KEY=value → {"section": {"key": value}}

    Values are parsed as YAML scalars (numbers, booleans, lists).
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue
        path = [part for part in key[len(prefix):].lower().split("__") if part]
        if path:
            _set_nested(overrides, path, value)
    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


def load_config(
    base_path: str | Path,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (ACCORD_*)
      2. Per-environment overlay file
      3. Base config file

    Raises ConfigError when the base file is missing or not a mapping.
    """
    base_path = Path(base_path)
    if not base_path.is_file():
        raise ConfigError(f"config not found: {base_path}")
    try:
        with open(base_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {base_path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"{base_path} is not a mapping")

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("ACCORD_ENV", "default")
    config["_config_source"] = str(base_path)
    return config


def get_config_value(path: str, config: dict[str, Any], default: Any = None) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("dispatcher.poll_interval", cfg, 30)
    """
    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed View
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ServiceConfig:
    name: str
    modules: list[str] = field(default_factory=list)
    directory: str = ""


@dataclass
class DispatcherConfig:
    agent_cmd: str = DEFAULT_AGENT_CMD
    poll_interval: float = 30
    request_timeout: float = 600
    max_attempts: int = 3
    push_retries: int = 3
    orchestrator: str = "orchestrator"
    debug: bool = False


@dataclass
class AccordConfig:
    project_dir: Path
    project: str = ""
    repo_model: str = "monorepo"
    role: str = ""
    hub: str | None = None
    services: list[ServiceConfig] = field(default_factory=list)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    service_override: str | None = None
    hub_layout: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def service(self) -> str:
        """The service this replica acts for."""
        if self.service_override:
            return self.service_override
        if self.services:
            return self.services[0].name
        raise ConfigError("cannot determine service name from config; pass --service")

    @property
    def accord_dir(self) -> Path:
        # A hub repository keeps its records at the top level
        if self.hub_layout:
            return self.project_dir
        return self.project_dir / ".accord"

    def owned_names(self, service: str | None = None) -> set[str]:
        """
        Names this replica may write for: the service plus its modules.

        In a monorepo without an explicit service every configured
        service is local.
        """
        service = service or self.service_override
        if service is None and self.repo_model == "monorepo" and self.services:
            selected = self.services
        else:
            name = service or self.service
            selected = [s for s in self.services if s.name == name] or [ServiceConfig(name)]
        owned: set[str] = set()
        for svc in selected:
            owned.add(svc.name)
            owned.update(svc.modules)
        return owned


def _parse_services(raw: Any) -> list[ServiceConfig]:
    services = []
    for item in raw or []:
        if isinstance(item, str):
            services.append(ServiceConfig(name=item))
            continue
        if not isinstance(item, dict) or not item.get("name"):
            raise ConfigError(f"invalid services entry: {item!r}")
        modules = item.get("modules") or []
        services.append(ServiceConfig(
            name=str(item["name"]),
            modules=[m["name"] if isinstance(m, dict) else str(m) for m in modules],
            directory=str(item.get("directory") or ""),
        ))
    return services


def _parse_dispatcher(raw: dict[str, Any]) -> DispatcherConfig:
    section = raw.get("dispatcher") or {}
    defaults = DispatcherConfig()
    # Older configs kept the agent command under settings
    agent_cmd = section.get("agent_cmd") or get_config_value("settings.agent_cmd", raw)
    try:
        return DispatcherConfig(
            agent_cmd=str(agent_cmd or defaults.agent_cmd),
            poll_interval=float(section.get("poll_interval", defaults.poll_interval)),
            request_timeout=float(section.get("request_timeout", defaults.request_timeout)),
            max_attempts=int(section.get("max_attempts", defaults.max_attempts)),
            push_retries=int(section.get("push_retries", defaults.push_retries)),
            orchestrator=str(section.get("orchestrator", defaults.orchestrator)),
            debug=bool(section.get("debug", defaults.debug)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid dispatcher settings: {e}") from e


def load_accord_config(
    project_dir: str | Path = ".",
    service: str | None = None,
    env: str = "",
    config_dir: str = "",
) -> AccordConfig:
    project_dir = Path(project_dir).resolve()
    base_path = project_dir / ".accord" / "config.yaml"
    hub_layout = not base_path.is_file() and (project_dir / "config.yaml").is_file()
    if hub_layout:
        base_path = project_dir / "config.yaml"
    raw = load_config(base_path, env=env, config_dir=config_dir)

    repo_model = str(raw.get("repo_model") or "monorepo")
    if repo_model not in ("monorepo", "multi-repo"):
        raise ConfigError(f"repo_model must be 'monorepo' or 'multi-repo', got {repo_model!r}")

    cfg = AccordConfig(
        project_dir=project_dir,
        project=str(raw.get("project") or project_dir.name),
        repo_model=repo_model,
        role=str(raw.get("role") or ""),
        hub=raw.get("hub"),
        services=_parse_services(raw.get("services")),
        dispatcher=_parse_dispatcher(raw),
        service_override=service,
        hub_layout=hub_layout,
        raw=raw,
    )
    if cfg.repo_model == "multi-repo" and not cfg.hub:
        logger.warning("multi-repo config without a 'hub' URL: sync init will fail")
    return cfg

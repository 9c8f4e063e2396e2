#!/usr/bin/env python3
"""
Controller configuration.

Loading follows the same chain for every deployment:
1. Render scratchpad.defaults.toml.j2 with Jinja2 (context: environment)
2. Expand $VAR / ${VAR} fail-fast, parse with tomllib
3. Deep merge scratchpad.toml.j2 overrides on top (key-level merge)
4. Fall back to a plain scratchpad.toml when no template exists

The merged dict is turned into typed Settings; service fragments are
loaded from [services.*] and <templates>/services.d/*.toml.
"""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .config_constants import (
    CONFIG_DEFAULTS,
    CONFIG_OVERRIDES,
    CONFIG_PLAIN,
    TEMPLATE_SERVICES_DIR,
)
from .errors import ConfigError
from .fragments import ServiceFragment, load_fragments

logger = logging.getLogger(__name__)

ROUTING_MODES = ("subdomain", "path")

ENV_VAR_PATTERN = re.compile(r"\$(\w+)|\$\{([^}]+)\}")


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure logging module with specified level.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR
    }

    level = level_map.get(str(log_level).upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='[%(levelname)s] %(message)s',
        force=True  # Reconfigure if already configured
    )

    logging.getLogger("scratchpad").setLevel(level)
    logger.debug(f"Logging configured: {str(log_level).upper()}")


def render_jinja2(template_path: Path, context: dict) -> str:
    """
    Render a Jinja2 template file with the given context.
    """
    from jinja2 import Template, TemplateError

    if not template_path.exists():
        raise FileNotFoundError(f"Template file not found: {template_path}")

    template_content = template_path.read_text(encoding='utf-8')
    logger.debug(f"Rendering Jinja2 template: {template_path} ({len(template_content)} bytes)")

    try:
        return Template(template_content).render(**context)
    except TemplateError as e:
        raise ConfigError(f"Failed to render template {template_path}: {e}") from e


def expand_env_vars_or_fail(raw_text: str, source: str, environ: Optional[dict] = None) -> str:
    """
    Expand $VAR / ${VAR}; fail-fast on missing values.
    """
    environ = os.environ if environ is None else environ
    missing = set()

    def _replace(match: re.Match) -> str:
        var_name = match.group(1) or match.group(2)
        value = environ.get(var_name)
        if value is None or value == "":
            missing.add(var_name)
            return match.group(0)
        return value

    expanded = ENV_VAR_PATTERN.sub(_replace, raw_text)

    if missing:
        raise ConfigError(
            f"Missing required environment values in {source}: {', '.join(sorted(missing))}"
        )

    return expanded


def parse_toml_string(toml_text: str, source: str) -> dict:
    """
    Parse TOML from a string with fail-fast error context.
    """
    try:
        return tomllib.loads(toml_text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse TOML from {source}: {e}") from e


def render_toml_template(template_path: Path, environ: Optional[dict] = None) -> dict:
    """
    Render a TOML Jinja2 template, expand env vars, and parse.
    """
    environ = dict(os.environ if environ is None else environ)
    rendered = render_jinja2(template_path, {"env": environ})
    expanded = expand_env_vars_or_fail(rendered, str(template_path), environ)
    return parse_toml_string(expanded, str(template_path))


def deep_merge_configs(base: dict, override: dict) -> dict:
    """
    Deep merge two configs (key-level merge, override wins).
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def load_raw_config(base_dir: Path, environ: Optional[dict] = None) -> dict:
    """
    Load the merged configuration dict for a controller base directory.
    """
    defaults_path = base_dir / CONFIG_DEFAULTS
    overrides_path = base_dir / CONFIG_OVERRIDES
    plain_path = base_dir / CONFIG_PLAIN

    if overrides_path.exists() and not defaults_path.exists():
        raise ConfigError(f"Found {CONFIG_OVERRIDES} without {CONFIG_DEFAULTS} in {base_dir}")

    if defaults_path.exists():
        merged = render_toml_template(defaults_path, environ)
        if overrides_path.exists():
            merged = deep_merge_configs(merged, render_toml_template(overrides_path, environ))
        return merged

    if plain_path.exists():
        with open(plain_path, 'rb') as f:
            try:
                return tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Failed to parse {plain_path}: {e}") from e

    raise ConfigError(
        f"No configuration found in {base_dir}. Expected {CONFIG_DEFAULTS} or {CONFIG_PLAIN}."
    )


@dataclass
class ServerSettings:
    releases_dir: Path
    host_releases_dir: Path
    templates_dir: Path
    shared_dir: Path
    logs_dir: Path
    workers: int = 4
    db_prefix: str = "scratch_"
    uid: int = 1000
    gid: int = 1000
    health_timeout: float = 60.0
    health_interval: float = 3.0
    log_level: str = "INFO"


@dataclass
class DockerSettings:
    network: str = "scratchpad-network"
    label_prefix: str = "scratchpad"
    compose_command: list[str] = field(default_factory=lambda: ["docker", "compose"])
    sockets_image: str = "alpine/socat:latest"
    logs_image: str = "mthenw/frontail:latest"
    logs_port: int = 9001


@dataclass
class IngressSettings:
    sockets_root: Path
    config_path: Path
    fallback_page: Path
    mode: str = "subdomain"
    domain: str = "scratches.localhost"
    control_label: str = "controller"
    control_prefix: str = "/_controller"
    control_upstream: str = "http://controller:3456"
    default_service: str = "api"
    route_prefixes: dict[str, str] = field(default_factory=lambda: {"/logs": "logs"})
    listen: int = 80


@dataclass
class Profile:
    name: str
    services: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    base_dir: Path
    server: ServerSettings
    docker: DockerSettings
    ingress: IngressSettings
    fragments: list[ServiceFragment]
    scratch_services: list[str] = field(default_factory=list)
    scratch_env: dict[str, str] = field(default_factory=dict)
    profiles: dict[str, Profile] = field(default_factory=dict)

    def get_profile(self, name: Optional[str]) -> Optional[Profile]:
        if not name:
            return None
        profile = self.profiles.get(name)
        if profile is None:
            raise ConfigError(f"Unknown profile: {name}")
        return profile

    def get_fragment(self, name: str) -> Optional[ServiceFragment]:
        for fragment in self.fragments:
            if fragment.name == name:
                return fragment
        return None


def _resolve_path(base_dir: Path, value: Any, default: str) -> Path:
    path = Path(value) if value else Path(default)
    if not path.is_absolute():
        path = base_dir / path
    return path


def _section(raw: dict, name: str) -> dict:
    section = raw.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def build_settings(raw: dict, base_dir: Path) -> Settings:
    """
    Turn a merged configuration dict into typed Settings.
    """
    base_dir = base_dir.resolve()
    server_raw = _section(raw, "server")
    docker_raw = _section(raw, "docker")
    ingress_raw = _section(raw, "ingress")
    scratch_raw = _section(raw, "scratch")

    releases_dir = _resolve_path(base_dir, server_raw.get("releases_dir"), "releases")
    templates_dir = _resolve_path(base_dir, server_raw.get("templates_dir"), "templates")
    server = ServerSettings(
        releases_dir=releases_dir,
        host_releases_dir=Path(server_raw.get("host_releases_dir") or releases_dir),
        templates_dir=templates_dir,
        shared_dir=_resolve_path(base_dir, server_raw.get("shared_dir"), "shared"),
        logs_dir=_resolve_path(base_dir, server_raw.get("logs_dir"), "logs"),
        workers=int(server_raw.get("workers", 4)),
        db_prefix=str(server_raw.get("db_prefix", "scratch_")),
        uid=int(server_raw.get("uid", os.getenv("CUID", 1000))),
        gid=int(server_raw.get("gid", os.getenv("CGID", 1000))),
        health_timeout=float(server_raw.get("health_timeout", 60)),
        health_interval=float(server_raw.get("health_interval", 3)),
        log_level=str(os.getenv("SCRATCHPAD_LOG_LEVEL") or server_raw.get("log_level", "INFO")),
    )

    docker = DockerSettings(**{
        key: value for key, value in docker_raw.items()
        if key in DockerSettings.__dataclass_fields__
    })

    mode = str(ingress_raw.get("mode", "subdomain")).lower()
    if mode not in ROUTING_MODES:
        raise ConfigError(f"ingress.mode must be one of {ROUTING_MODES}, got {mode!r}")

    control_prefix = "/" + str(ingress_raw.get("control_prefix", "/_controller")).strip("/")
    ingress = IngressSettings(
        sockets_root=Path(ingress_raw.get("sockets_root") or server.host_releases_dir),
        config_path=_resolve_path(base_dir, ingress_raw.get("config_path"), "nginx/scratches.conf"),
        fallback_page=_resolve_path(base_dir, ingress_raw.get("fallback_page"), "nginx/unavailable.html"),
        mode=mode,
        domain=str(ingress_raw.get("domain", "scratches.localhost")),
        control_label=str(ingress_raw.get("control_label", "controller")),
        control_prefix=control_prefix,
        control_upstream=str(ingress_raw.get("control_upstream", "http://controller:3456")),
        default_service=str(ingress_raw.get("default_service", "api")),
        route_prefixes={
            "/" + str(prefix).strip("/"): str(service)
            for prefix, service in ingress_raw.get("route_prefixes", {"/logs": "logs"}).items()
        },
        listen=int(ingress_raw.get("listen", 80)),
    )

    profiles = {
        name: Profile(
            name=name,
            services=list(data.get("services", [])),
            env={str(k): str(v) for k, v in data.get("env", {}).items()},
        )
        for name, data in _section(raw, "profiles").items()
    }

    fragments = load_fragments(_section(raw, "services"), templates_dir / TEMPLATE_SERVICES_DIR)

    settings = Settings(
        base_dir=base_dir,
        server=server,
        docker=docker,
        ingress=ingress,
        fragments=fragments,
        scratch_services=list(scratch_raw.get("services", [])),
        scratch_env={str(k): str(v) for k, v in scratch_raw.get("env", {}).items()},
        profiles=profiles,
    )

    known = {fragment.name for fragment in fragments}
    for profile in [Profile("scratch", settings.scratch_services), *profiles.values()]:
        missing = [name for name in profile.services if name not in known]
        if missing:
            raise ConfigError(f"Profile '{profile.name}' references unknown service(s): {', '.join(missing)}")

    return settings


def load_settings(base_dir: Optional[Path] = None, environ: Optional[dict] = None) -> Settings:
    """
    Load Settings for a controller base directory.

    The base directory defaults to $SCRATCHPAD_CONFIG_DIR, then the cwd.
    """
    if base_dir is None:
        base_dir = Path(os.getenv("SCRATCHPAD_CONFIG_DIR") or Path.cwd())
    raw = load_raw_config(Path(base_dir), environ)
    settings = build_settings(raw, Path(base_dir))
    logger.debug(
        f"Loaded settings: releases_dir={settings.server.releases_dir}, "
        f"mode={settings.ingress.mode}, services={[f.name for f in settings.fragments]}"
    )
    return settings

#!/usr/bin/env python3
"""
Template composition: fragments + env templates -> one scratch's files.

Rendering is pure: the same fragments, variables and settings always yield a
byte-identical descriptor. Nothing here touches containers; materialize()
is the only function that writes, and only inside the scratch root.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError

from .config_constants import (
    DESCRIPTOR_FILE,
    DESCRIPTOR_TEMPLATE,
    ENV_DIR,
    LOGS_DIR,
    LOGS_SERVICE,
    SCRATCH_SUBDIRS,
    SOCKETS_DIR,
    SOCKETS_SERVICE,
    TEMPLATE_ENV_DIR,
)
from .errors import ConfigError, InvalidPath
from .fragments import ServiceFragment, per_scratch, shared
from .routing import bridge_endpoints, build_sockets_command

logger = logging.getLogger(__name__)

# Seed file so the log viewer always has something to tail
SCRATCH_LOG_FILE = 'scratch.log'

DEFAULT_DESCRIPTOR_TEMPLATE = """\
# Generated by scratchpad for {{ project }}. Do not edit; re-render instead.
name: {{ project | tojson }}
services:
{%- for svc in services %}
  {{ svc.name }}:
    image: {{ svc.image | tojson }}
    container_name: {{ svc.container_name | tojson }}
    restart: unless-stopped
{%- if svc.entrypoint %}
    entrypoint: {{ svc.entrypoint | tojson }}
{%- endif %}
{%- if svc.command is not none %}
    command: {{ svc.command | tojson }}
{%- endif %}
{%- if svc.env_files %}
    env_file:
{%- for env_file in svc.env_files %}
      - {{ env_file | tojson }}
{%- endfor %}
{%- endif %}
{%- if svc.environment %}
    environment:
{%- for key, value in svc.environment.items() %}
      {{ key | tojson }}: {{ value | tojson }}
{%- endfor %}
{%- endif %}
{%- if svc.ports %}
    ports:
{%- for port in svc.ports %}
      - {{ port | tojson }}
{%- endfor %}
{%- endif %}
{%- if svc.volumes %}
    volumes:
{%- for volume in svc.volumes %}
      - {{ volume | tojson }}
{%- endfor %}
{%- endif %}
{%- if svc.depends_on %}
    depends_on:
{%- for dep in svc.depends_on %}
      - {{ dep | tojson }}
{%- endfor %}
{%- endif %}
{%- if svc.healthcheck %}
    healthcheck:
      test: {{ ["CMD-SHELL", svc.healthcheck] | tojson }}
      interval: 5s
      timeout: 5s
      retries: 12
{%- endif %}
    labels:
      {{ (label_prefix ~ ".scratch") | tojson }}: {{ identity | tojson }}
      {{ (label_prefix ~ ".service") | tojson }}: {{ svc.name | tojson }}
    networks:
{%- for net in svc.networks %}
      - {{ net }}
{%- endfor %}
{%- endfor %}
networks:
{%- if internal_network %}
  internal:
    name: {{ internal_network | tojson }}
{%- endif %}
  shared:
    name: {{ shared_network | tojson }}
    external: true
volumes:
  storage:
    name: {{ (project ~ "-storage") | tojson }}
"""


@dataclass(frozen=True)
class SubstitutionVars:
    """Values behind the fixed placeholder vocabulary."""

    identity: str
    branch: str
    db_name: str
    release_path: str
    host_release_path: str
    uid: int
    gid: int
    network: str

    def as_mapping(self) -> dict[str, str]:
        return {
            "__IDENTITY__": self.identity,
            "__BRANCH__": self.branch,
            "__DB_NAME__": self.db_name,
            "__RELEASE_PATH__": self.release_path,
            "__HOST_RELEASE_PATH__": self.host_release_path,
            "__UID__": str(self.uid),
            "__GID__": str(self.gid),
            "__NETWORK__": self.network,
        }


def build_variables(identity: str, branch: str, settings) -> SubstitutionVars:
    """Derive a scratch's substitution values from controller settings."""
    return SubstitutionVars(
        identity=identity,
        branch=branch,
        db_name=f"{settings.server.db_prefix}{identity}",
        release_path=str(settings.server.releases_dir / identity),
        host_release_path=str(settings.server.host_releases_dir / identity),
        uid=settings.server.uid,
        gid=settings.server.gid,
        network=settings.docker.network,
    )


def substitute_placeholders(value: Any, variables: SubstitutionVars) -> Any:
    """
    Replace known placeholders in strings, recursing into lists and dicts.

    Unknown ``__TOKENS__`` are left untouched.
    """
    if isinstance(value, str):
        for token, replacement in variables.as_mapping().items():
            value = value.replace(token, replacement)
        return value
    if isinstance(value, (list, tuple)):
        return [substitute_placeholders(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: substitute_placeholders(item, variables) for key, item in value.items()}
    return value


def render_env_template(text: str, variables: SubstitutionVars) -> str:
    return substitute_placeholders(text, variables)


def project_name(label_prefix: str, identity: str) -> str:
    return f"{label_prefix}-{identity}"


def load_descriptor_template(templates_dir: Optional[Path]) -> str:
    """Return the descriptor template override, or the built-in default."""
    if templates_dir:
        override = templates_dir / DESCRIPTOR_TEMPLATE
        if override.is_file():
            logger.debug(f"Using descriptor template override: {override}")
            return override.read_text(encoding='utf-8')
    return DEFAULT_DESCRIPTOR_TEMPLATE


def load_env_templates(templates_dir: Optional[Path]) -> dict[str, str]:
    """Read every env template under <templates>/env.d, sorted by name."""
    env_dir = templates_dir / TEMPLATE_ENV_DIR if templates_dir else None
    if not env_dir or not env_dir.is_dir():
        return {}
    return {
        path.name: path.read_text(encoding='utf-8')
        for path in sorted(env_dir.iterdir())
        if path.is_file()
    }


def _service_context(
    fragment: ServiceFragment,
    container_prefix: str,
    variables: SubstitutionVars,
    extra_env: Mapping[str, str],
    networks: Sequence[str] = ("internal", "shared"),
) -> dict:
    environment = dict(fragment.environment)
    environment.update(extra_env)
    return {
        "name": fragment.name,
        "image": substitute_placeholders(fragment.image, variables),
        "container_name": f"{container_prefix}-{fragment.name}",
        "entrypoint": None,
        "command": substitute_placeholders(fragment.command, variables),
        "env_files": [f"./{ENV_DIR}/{name}" for name in fragment.env_files],
        "environment": substitute_placeholders(environment, variables),
        "ports": substitute_placeholders(list(fragment.ports), variables),
        "volumes": substitute_placeholders(list(fragment.volumes), variables),
        "depends_on": list(fragment.depends_on),
        "healthcheck": substitute_placeholders(fragment.healthcheck, variables),
        "networks": list(networks),
    }


def _auxiliary_services(fragments: list[ServiceFragment], identity: str, settings) -> list[dict]:
    endpoints = bridge_endpoints(fragments, settings.docker.logs_port)
    logs = {
        "name": LOGS_SERVICE,
        "image": settings.docker.logs_image,
        "container_name": f"{identity}-{LOGS_SERVICE}",
        "entrypoint": None,
        "command": [
            "--ui-hide-topbar", "--port", str(settings.docker.logs_port),
            f"/{LOGS_DIR}/{SCRATCH_LOG_FILE}",
        ],
        "env_files": [],
        "environment": {},
        "ports": [],
        "volumes": [f"./{LOGS_DIR}:/{LOGS_DIR}:ro"],
        "depends_on": [],
        "healthcheck": None,
        "networks": ["internal"],
    }
    sockets = {
        "name": SOCKETS_SERVICE,
        "image": settings.docker.sockets_image,
        "container_name": f"{identity}-{SOCKETS_SERVICE}",
        "entrypoint": ["/bin/sh", "-c"],
        "command": [build_sockets_command(endpoints)],
        "env_files": [],
        "environment": {},
        "ports": [],
        "volumes": [f"./{SOCKETS_DIR}:/{SOCKETS_DIR}"],
        "depends_on": sorted({endpoint.service for endpoint in endpoints}),
        "healthcheck": None,
        "networks": ["internal"],
    }
    return [logs, sockets]


def render_descriptor(
    fragments: Iterable[ServiceFragment],
    variables: SubstitutionVars,
    settings,
    extra_env: Optional[Mapping[str, str]] = None,
    template_text: Optional[str] = None,
) -> str:
    """
    Render the deployment descriptor for one scratch.

    Shared fragments are skipped; per-scratch fragments keep declaration
    order and are followed by the logs and sockets auxiliary services.
    """
    identity = variables.identity
    scratch_fragments = per_scratch(fragments)
    extra_env = dict(extra_env or {})

    services = [
        _service_context(fragment, identity, variables, extra_env)
        for fragment in scratch_fragments
    ]
    services.extend(_auxiliary_services(scratch_fragments, identity, settings))

    context = {
        "identity": identity,
        "branch": variables.branch,
        "db_name": variables.db_name,
        "project": project_name(settings.docker.label_prefix, identity),
        "label_prefix": settings.docker.label_prefix,
        "internal_network": f"{identity}-internal",
        "shared_network": settings.docker.network,
        "services": services,
    }

    rendered = _render(template_text, context)
    logger.debug(f"Rendered descriptor for {identity}: {len(services)} service(s), {len(rendered)} bytes")
    return rendered


def render_shared_descriptor(
    fragments: Iterable[ServiceFragment],
    variables: SubstitutionVars,
    settings,
    template_text: Optional[str] = None,
) -> str:
    """
    Render the descriptor of the shared services project.

    Only shared fragments are included; they join the shared network only.
    """
    project = project_name(settings.docker.label_prefix, variables.identity)
    services = [
        _service_context(fragment, project, variables, {}, networks=("shared",))
        for fragment in shared(fragments)
    ]
    context = {
        "identity": variables.identity,
        "branch": variables.branch,
        "db_name": variables.db_name,
        "project": project,
        "label_prefix": settings.docker.label_prefix,
        "internal_network": None,
        "shared_network": settings.docker.network,
        "services": services,
    }
    return _render(template_text, context)


def _render(template_text: Optional[str], context: dict) -> str:
    env = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)
    try:
        return env.from_string(template_text or DEFAULT_DESCRIPTOR_TEMPLATE).render(**context)
    except TemplateError as e:
        raise ConfigError(f"Failed to render descriptor for {context['project']}: {e}") from e


def _inside(root: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def materialize(
    root: Path,
    descriptor: str,
    env_templates: Mapping[str, str],
    variables: SubstitutionVars,
) -> list[Path]:
    """
    Write the descriptor and rendered env files into a scratch root.

    Returns:
        Paths written, descriptor first
    """
    root.mkdir(parents=True, exist_ok=True)
    for subdir in SCRATCH_SUBDIRS:
        (root / subdir).mkdir(exist_ok=True)
    (root / LOGS_DIR / SCRATCH_LOG_FILE).touch(exist_ok=True)

    written = []
    descriptor_path = root / DESCRIPTOR_FILE
    descriptor_path.write_text(descriptor, encoding='utf-8')
    written.append(descriptor_path)

    for name, text in env_templates.items():
        target = root / ENV_DIR / name
        if not _inside(root / ENV_DIR, target):
            raise InvalidPath(f"Env template name escapes {ENV_DIR}: {name}")
        target.write_text(render_env_template(text, variables), encoding='utf-8')
        written.append(target)

    logger.info(f"Materialized {root} ({len(written) - 1} env file(s))")
    return written


def parse_descriptor(text: Optional[str]) -> dict:
    """Parse descriptor YAML; empty or missing text parses to {}."""
    if not text:
        return {}
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid descriptor YAML: {e}") from e
    return data or {}


def changed_services(old: Optional[str], new: str) -> list[str]:
    """
    Services whose descriptor section differs between two renderings.

    Order follows the new descriptor. Services new to the descriptor count
    as changed.
    """
    old_services = parse_descriptor(old).get('services') or {}
    new_services = parse_descriptor(new).get('services') or {}
    return [
        name for name, section in new_services.items()
        if old_services.get(name) != section
    ]


def removed_services(old: Optional[str], new: str) -> list[str]:
    old_services = parse_descriptor(old).get('services') or {}
    new_services = parse_descriptor(new).get('services') or {}
    return [name for name in old_services if name not in new_services]

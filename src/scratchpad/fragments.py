"""
Service fragments: declarative, reusable descriptions of one service.

Fragments come from the ``[services.<name>]`` tables of the controller
configuration (declaration order), followed by ``services.d/*.toml`` files
in sorted filename order. The order is preserved through composition so
rendered descriptors are reproducible.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from .config_constants import AUXILIARY_SERVICES
from .errors import ConfigError

logger = logging.getLogger(__name__)

FRAGMENT_KEYS = {
    'name', 'image', 'shared', 'ports', 'environment', 'env', 'volumes',
    'healthcheck', 'command', 'depends_on', 'env_files', 'sockets',
    'required', 'database', 'artifact', 'provision',
}


@dataclass(frozen=True)
class ServiceFragment:
    name: str
    image: str
    shared: bool = False
    ports: tuple[str, ...] = ()
    environment: dict[str, str] = field(default_factory=dict)
    volumes: tuple[str, ...] = ()
    healthcheck: Optional[str] = None
    command: Any = None
    depends_on: tuple[str, ...] = ()
    env_files: tuple[str, ...] = ()
    sockets: dict[str, int] = field(default_factory=dict)
    required: bool = True
    database: bool = False
    artifact: bool = False
    provision: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, data: dict, source: str = "config") -> "ServiceFragment":
        unknown = set(data) - FRAGMENT_KEYS
        if unknown:
            raise ConfigError(
                f"Unknown keys in service '{name}' ({source}): {', '.join(sorted(unknown))}"
            )

        image = data.get('image')
        if not image or not isinstance(image, str):
            raise ConfigError(f"Service '{name}' ({source}) must define an image")

        environment = data.get('environment', data.get('env', {}))
        if not isinstance(environment, dict):
            raise ConfigError(f"Service '{name}' environment must be a table")

        sockets = data.get('sockets', {})
        if not isinstance(sockets, dict):
            raise ConfigError(f"Service '{name}' sockets must map socket name -> port")

        provision = data.get('provision', {})
        if provision and not data.get('shared', False):
            raise ConfigError(f"Service '{name}' declares provision commands but is not shared")

        return cls(
            name=name,
            image=image,
            shared=bool(data.get('shared', False)),
            ports=tuple(str(port) for port in data.get('ports', [])),
            environment={str(k): _stringify(v) for k, v in environment.items()},
            volumes=tuple(str(vol) for vol in data.get('volumes', [])),
            healthcheck=data.get('healthcheck'),
            command=data.get('command'),
            depends_on=tuple(data.get('depends_on', [])),
            env_files=tuple(data.get('env_files', [])),
            sockets={str(k): int(v) for k, v in sockets.items()},
            required=bool(data.get('required', True)),
            database=bool(data.get('database', False)),
            artifact=bool(data.get('artifact', False)),
            provision={str(k): str(v) for k, v in provision.items()},
        )


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def load_fragments(services: dict, services_dir: Optional[Path] = None) -> list[ServiceFragment]:
    """
    Load fragments from the config table, then from services.d/*.toml.

    Raises:
        ConfigError: on malformed fragments or duplicate names
    """
    fragments: list[ServiceFragment] = []
    seen: set[str] = set()

    def _add(fragment: ServiceFragment) -> None:
        if fragment.name in AUXILIARY_SERVICES:
            raise ConfigError(f"Service name '{fragment.name}' is reserved for an auxiliary service")
        if fragment.name in seen:
            raise ConfigError(f"Service '{fragment.name}' is defined more than once")
        seen.add(fragment.name)
        fragments.append(fragment)

    for name, data in (services or {}).items():
        if not isinstance(data, dict):
            raise ConfigError(f"Service '{name}' must be a table")
        _add(ServiceFragment.from_dict(name, data))

    if services_dir and services_dir.is_dir():
        for path in sorted(services_dir.glob('*.toml')):
            try:
                with open(path, 'rb') as f:
                    data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Failed to parse service fragment {path}: {e}") from e
            name = data.get('name', path.stem)
            _add(ServiceFragment.from_dict(name, data, source=str(path)))

    logger.debug(f"Loaded {len(fragments)} service fragment(s): {[f.name for f in fragments]}")
    return fragments


def select_fragments(fragments: Iterable[ServiceFragment], names: Iterable[str]) -> list[ServiceFragment]:
    """
    Select fragments by name, keeping declaration order.

    An empty selection means every fragment.
    """
    fragments = list(fragments)
    wanted = list(names)
    if not wanted:
        return fragments

    known = {fragment.name for fragment in fragments}
    missing = [name for name in wanted if name not in known]
    if missing:
        raise ConfigError(f"Unknown service(s): {', '.join(missing)}")

    wanted_set = set(wanted)
    return [fragment for fragment in fragments if fragment.name in wanted_set]


def per_scratch(fragments: Iterable[ServiceFragment]) -> list[ServiceFragment]:
    return [fragment for fragment in fragments if not fragment.shared]


def shared(fragments: Iterable[ServiceFragment]) -> list[ServiceFragment]:
    return [fragment for fragment in fragments if fragment.shared]

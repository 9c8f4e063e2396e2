"""
Environment file manager for one scratch's ``env.d/`` directory.

Writes are confined to the scratch root: absolute paths, ``..`` segments and
symlinks pointing elsewhere are rejected with InvalidPath before anything is
written.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Mapping, Optional

from .composer import SubstitutionVars, load_env_templates, render_env_template
from .config_constants import ENV_DIR
from .errors import InvalidPath, NotFound
from .fragments import ServiceFragment, per_scratch

logger = logging.getLogger(__name__)


def parse_env(text: str) -> dict[str, str]:
    """
    Parse KEY=VALUE lines. Comments, blank lines and lines without '=' are
    ignored; an ``export`` prefix and matching outer quotes are stripped.
    """
    entries = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()
        key, value = line.split('=', 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        if key:
            entries[key] = value
    return entries


def env_dir(root: Path) -> Path:
    return root / ENV_DIR


def read(root: Path) -> dict[str, str]:
    """Raw content of every env file, sorted by name."""
    directory = env_dir(root)
    if not directory.is_dir():
        return {}
    return {
        path.name: path.read_text(encoding='utf-8')
        for path in sorted(directory.iterdir())
        if path.is_file()
    }


def read_entries(root: Path) -> dict[str, dict[str, str]]:
    return {name: parse_env(content) for name, content in read(root).items()}


def resolve_env_path(root: Path, name: str) -> Path:
    """
    Resolve an env file name to a path inside the scratch root.

    Bare names land in env.d/; names with a directory part are taken
    relative to the scratch root.

    Raises:
        InvalidPath: if the target is absolute or resolves outside the root
    """
    if not name or not str(name).strip():
        raise InvalidPath("Empty env file name")

    candidate = Path(name)
    if candidate.is_absolute():
        raise InvalidPath(f"Absolute env file path not allowed: {name}")
    if '..' in candidate.parts:
        raise InvalidPath(f"Env file path escapes the scratch: {name}")

    target = root / candidate if len(candidate.parts) > 1 else env_dir(root) / candidate
    root_resolved = root.resolve()
    try:
        target.resolve().relative_to(root_resolved)
    except ValueError:
        raise InvalidPath(f"Env file path resolves outside {root}: {name}") from None
    return target


def write(root: Path, name: str, content: str) -> Path:
    target = resolve_env_path(root, name)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding='utf-8')
    logger.info(f"Wrote env file {target}")
    return target


def write_many(root: Path, files: Mapping[str, str]) -> list[Path]:
    """Validate every target first, then write. Nothing is written on InvalidPath."""
    targets = [(resolve_env_path(root, name), content) for name, content in files.items()]
    written = []
    for target, content in targets:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding='utf-8')
        written.append(target)
    logger.info(f"Wrote {len(written)} env file(s) in {root}")
    return written


def reset_to_template(
    root: Path,
    templates_dir: Path,
    variables: SubstitutionVars,
    names: Optional[Iterable[str]] = None,
) -> list[str]:
    """
    Re-copy env templates into the scratch with placeholders re-applied.

    Only the named files are touched; every template when names is empty.

    Raises:
        NotFound: if a named template does not exist
    """
    templates = load_env_templates(templates_dir)
    wanted = list(names or [])
    if wanted:
        missing = [name for name in wanted if name not in templates]
        if missing:
            raise NotFound(f"No env template named: {', '.join(missing)}")
        templates = {name: templates[name] for name in wanted}

    directory = env_dir(root)
    directory.mkdir(parents=True, exist_ok=True)
    for name, text in templates.items():
        target = resolve_env_path(root, name)
        target.write_text(render_env_template(text, variables), encoding='utf-8')
        logger.info(f"Reset env file {name} from template")
    return list(templates)


def dependent_services(fragments: Iterable[ServiceFragment], names: Iterable[str]) -> list[str]:
    """Per-scratch services that read any of the given env files."""
    wanted = {Path(name).name for name in names}
    return [
        fragment.name for fragment in per_scratch(fragments)
        if wanted.intersection(fragment.env_files)
    ]

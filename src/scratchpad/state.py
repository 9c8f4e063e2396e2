"""
Per-scratch metadata: lifecycle state plus the inputs needed to re-render.

Stored as ``<root>/.scratchpad.toml`` (tomli_w on write, tomllib on read).
The registry of scratches is the directory listing itself; this file only
records what the listing cannot.
"""

from __future__ import annotations

import enum
import logging
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config_constants import METADATA_FILE
from .errors import ConfigError

logger = logging.getLogger(__name__)


class ScratchState(str, enum.Enum):
    ABSENT = "absent"
    MATERIALIZING = "materializing"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPED = "stopped"
    DEGRADED = "degraded"
    DELETED = "deleted"

    @property
    def is_running(self) -> bool:
        return self in (ScratchState.RUNNING, ScratchState.DEGRADED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class ScratchEnvironment:
    identity: str
    branch: str
    root: Path
    state: ScratchState = ScratchState.ABSENT
    profile: Optional[str] = None
    services: list[str] = field(default_factory=list)
    db_name: Optional[str] = None
    created: datetime = field(default_factory=utcnow)
    updated: datetime = field(default_factory=utcnow)
    last_failure: Optional[str] = None
    env_digests: dict[str, str] = field(default_factory=dict)

    def transition(self, state: ScratchState, failure: Optional[str] = None) -> None:
        logger.info(f"[{self.identity}] {self.state.value} -> {state.value}")
        self.state = state
        self.last_failure = failure
        self.updated = utcnow()

    def to_dict(self) -> dict:
        data = {
            "identity": self.identity,
            "branch": self.branch,
            "state": self.state.value,
            "services": list(self.services),
            "created": self.created,
            "updated": self.updated,
        }
        if self.env_digests:
            data["env_digests"] = dict(sorted(self.env_digests.items()))
        # TOML has no null; optional fields are omitted when unset
        for key in ("profile", "db_name", "last_failure"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def to_summary(self) -> dict:
        """JSON-friendly view for the CLI and control API."""
        data = self.to_dict()
        data["root"] = str(self.root)
        data["created"] = self.created.isoformat()
        data["updated"] = self.updated.isoformat()
        data.setdefault("last_failure", None)
        data.pop("env_digests", None)
        return data


def metadata_path(root: Path) -> Path:
    return root / METADATA_FILE


def load_metadata(root: Path) -> Optional[ScratchEnvironment]:
    """
    Read a scratch's metadata file.

    Returns None when the file does not exist (directory left by a crash
    mid-materialization, or not a scratch at all).
    """
    path = metadata_path(root)
    if not path.is_file():
        return None

    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Corrupt scratch metadata {path}: {e}") from e

    try:
        state = ScratchState(data.get("state", ScratchState.ABSENT.value))
    except ValueError as e:
        raise ConfigError(f"Unknown state in {path}: {data.get('state')}") from e

    return ScratchEnvironment(
        identity=data.get("identity", root.name),
        branch=data.get("branch", root.name),
        root=root,
        state=state,
        profile=data.get("profile"),
        services=list(data.get("services", [])),
        db_name=data.get("db_name"),
        created=data.get("created") or utcnow(),
        updated=data.get("updated") or utcnow(),
        last_failure=data.get("last_failure"),
        env_digests=dict(data.get("env_digests", {})),
    )


def save_metadata(scratch: ScratchEnvironment) -> Path:
    """Write metadata through a temporary file so readers never see half a file."""
    import tomli_w

    path = metadata_path(scratch.root)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, 'wb') as f:
        tomli_w.dump(scratch.to_dict(), f)
    tmp_path.replace(path)
    return path

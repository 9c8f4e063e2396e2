"""
Error taxonomy for scratchpad.

InvalidIdentity, InvalidPath, NotFound and Busy are raised before any side
effect. ScriptFailure carries the exit status and captured stderr of an
external invocation. RoutingUnavailable never leaves the routing layer.
"""

from __future__ import annotations

from typing import Sequence


class ScratchError(Exception):
    """Base class for every error raised by scratchpad."""

    kind = "error"


class ConfigError(ScratchError):
    """Configuration missing or malformed."""

    kind = "config"


class InvalidIdentity(ScratchError):
    """Branch name is empty or unsafe after sanitization."""

    kind = "invalid_identity"


class NotFound(ScratchError):
    """Operation on a scratch (or template) that does not exist."""

    kind = "not_found"


class Busy(ScratchError):
    """Another lifecycle operation is in flight for the same identity."""

    kind = "busy"

    def __init__(self, identity: str, operation: str | None = None) -> None:
        self.identity = identity
        self.operation = operation
        detail = f" ({operation} in progress)" if operation else ""
        super().__init__(f"Scratch '{identity}' is busy{detail}")


class InvalidPath(ScratchError):
    """Env file path escapes the scratch root."""

    kind = "invalid_path"


class ScriptFailure(ScratchError):
    """An external command returned a nonzero exit status."""

    kind = "script_failure"

    def __init__(self, exit_code: int, stderr: str, command: Sequence[str] | None = None) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = list(command or [])
        cmd = " ".join(self.command) or "command"
        message = f"{cmd} failed with exit code {exit_code}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class RoutingUnavailable(ScratchError):
    """Bridge endpoint missing at dispatch time."""

    kind = "routing_unavailable"


class Degraded(ScratchError):
    """Scratch reached a running state with unhealthy or failed services."""

    kind = "degraded"

    def __init__(self, identity: str, failures: Sequence[str]) -> None:
        self.identity = identity
        self.failures = list(failures)
        super().__init__(f"Scratch '{identity}' is degraded: {'; '.join(self.failures)}")

"""
Structured subprocess execution.

Every external invocation (docker compose, initialisation scripts) goes
through CommandRunner.run, which returns a CommandResult instead of raising.
Callers decide whether a nonzero exit is fatal with CommandResult.check().
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .errors import ScriptFailure

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0


@dataclass
class CommandResult:
    command: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled

    def check(self) -> "CommandResult":
        """Raise ScriptFailure unless the command succeeded."""
        if not self.ok:
            stderr = self.stderr
            if self.cancelled:
                stderr = f"cancelled{': ' + stderr if stderr else ''}"
            raise ScriptFailure(self.exit_code, stderr, self.command)
        return self


@dataclass
class CommandRunner:
    """Run external commands, capturing output and supporting cancellation."""

    poll_interval: float = 0.2
    base_env: Optional[Mapping[str, str]] = None

    def run(
        self,
        cmd: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        command = [str(part) for part in cmd]
        run_env = dict(self.base_env if self.base_env is not None else os.environ)
        if env:
            run_env.update(env)

        logger.info(f"Running: {' '.join(command)}")

        try:
            proc = subprocess.Popen(
                command,
                cwd=str(cwd) if cwd else None,
                env=run_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as e:
            result = CommandResult(command, 127, "", str(e))
            self._record(result)
            return result

        cancelled = False
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    stdout, stderr = self._terminate(proc)
                    break

        result = CommandResult(command, proc.returncode, stdout or "", stderr or "", cancelled)
        self._record(result)
        return result

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> tuple[str, str]:
        proc.terminate()
        try:
            return proc.communicate(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()
            return proc.communicate()

    def _record(self, result: CommandResult) -> None:
        for line in result.stdout.splitlines():
            logger.info(f"  [OUT] {line}")
        if result.cancelled:
            logger.warning(f"Cancelled: {' '.join(result.command)}")
        elif result.exit_code != 0:
            logger.warning(f"Command failed (exit {result.exit_code}): {' '.join(result.command)}")
            for line in result.stderr.splitlines():
                logger.warning(f"  [ERR] {line}")
        else:
            for line in result.stderr.splitlines():
                logger.info(f"  [ERR] {line}")

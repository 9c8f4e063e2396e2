#!/usr/bin/env python3
"""
Container runtime driven through the ``docker compose`` command contract.

Every scratch is one compose project (``<label_prefix>-<identity>``) whose
descriptor lives at ``<root>/docker-compose.yml``. Verbs return
CommandResult; callers decide what a nonzero exit means. ``ps`` results are
cached briefly and every mutating verb invalidates the project's entry.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from .cache import ExpiringCache
from .config_constants import DESCRIPTOR_FILE
from .process import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

PS_CACHE_TTL = 3.0


@dataclass(frozen=True)
class ComposeProject:
    name: str
    root: Path

    @property
    def compose_file(self) -> Path:
        return self.root / DESCRIPTOR_FILE


@dataclass(frozen=True)
class ServiceState:
    name: str
    state: str
    health: str = ""
    exit_code: Optional[int] = None

    @property
    def healthy(self) -> bool:
        return self.state == "running" and self.health in ("", "healthy")

    @property
    def starting(self) -> bool:
        return self.state in ("created", "restarting") or (
            self.state == "running" and self.health == "starting"
        )

    def describe(self) -> str:
        return f"{self.state} ({self.health})" if self.health else self.state


def parse_ps_output(stdout: str) -> list[ServiceState]:
    """
    Parse ``docker compose ps --format json``.

    Older compose releases print one JSON array, newer ones one object per
    line; both are accepted.
    """
    text = stdout.strip()
    if not text:
        return []

    if text.startswith('['):
        rows = json.loads(text)
    else:
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]

    states = []
    for row in rows:
        states.append(ServiceState(
            name=row.get("Service") or row.get("Name", ""),
            state=str(row.get("State", "")).lower(),
            health=str(row.get("Health", "") or "").lower(),
            exit_code=row.get("ExitCode"),
        ))
    return states


class ComposeRuntime:
    def __init__(
        self,
        compose_command: Sequence[str] = ("docker", "compose"),
        runner: Optional[CommandRunner] = None,
        cache: Optional[ExpiringCache] = None,
    ) -> None:
        self.compose_command = list(compose_command)
        self.runner = runner or CommandRunner()
        self.cache = cache or ExpiringCache(PS_CACHE_TTL)

    def _compose(self, project: ComposeProject, *args: str, cancel=None) -> CommandResult:
        cmd = [*self.compose_command, "-p", project.name, "-f", str(project.compose_file), *args]
        return self.runner.run(cmd, cwd=project.root, cancel=cancel)

    def _mutate(self, project: ComposeProject, *args: str, cancel=None) -> CommandResult:
        try:
            return self._compose(project, *args, cancel=cancel)
        finally:
            self.cache.invalidate(project.name)

    def up(
        self,
        project: ComposeProject,
        services: Iterable[str] = (),
        no_deps: bool = False,
        force_recreate: bool = False,
        remove_orphans: bool = False,
        cancel=None,
    ) -> CommandResult:
        args = ["up", "-d"]
        if no_deps:
            args.append("--no-deps")
        if force_recreate:
            args.append("--force-recreate")
        if remove_orphans:
            args.append("--remove-orphans")
        return self._mutate(project, *args, *services, cancel=cancel)

    def down(self, project: ComposeProject, volumes: bool = False, rmi_local: bool = False) -> CommandResult:
        args = ["down", "--remove-orphans"]
        if volumes:
            args.append("-v")
        if rmi_local:
            args.extend(["--rmi", "local"])
        return self._mutate(project, *args)

    def stop(self, project: ComposeProject, services: Iterable[str] = ()) -> CommandResult:
        return self._mutate(project, "stop", *services)

    def start(self, project: ComposeProject, services: Iterable[str] = ()) -> CommandResult:
        return self._mutate(project, "start", *services)

    def remove(self, project: ComposeProject, services: Iterable[str]) -> CommandResult:
        return self._mutate(project, "rm", "-s", "-f", *services)

    def pull(self, project: ComposeProject, services: Iterable[str] = ()) -> CommandResult:
        return self._mutate(project, "pull", "--ignore-pull-failures", *services)

    def exec(self, project: ComposeProject, service: str, command: str) -> CommandResult:
        return self._compose(project, "exec", "-T", service, "sh", "-c", command)

    def logs(self, project: ComposeProject, services: Iterable[str] = (), tail: int = 100) -> CommandResult:
        return self._compose(project, "logs", "--no-color", "--tail", str(tail), *services)

    def ps(self, project: ComposeProject, fresh: bool = False) -> list[ServiceState]:
        if fresh:
            self.cache.invalidate(project.name)
        if not project.compose_file.exists():
            return []

        def _fetch() -> list[ServiceState]:
            result = self._compose(project, "ps", "--all", "--format", "json")
            if not result.ok:
                logger.warning(f"compose ps failed for {project.name}: {result.stderr.strip()}")
                return []
            return parse_ps_output(result.stdout)

        return self.cache.get_or_fetch(project.name, _fetch)

    def run_script(
        self,
        script: Path,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        args: Sequence[str] = (),
        cancel=None,
    ) -> CommandResult:
        return self.runner.run(["sh", str(script), *args], cwd=cwd, env=env, cancel=cancel)

    def wait_healthy(
        self,
        project: ComposeProject,
        services: Iterable[str],
        timeout: float = 60.0,
        interval: float = 3.0,
    ) -> dict[str, str]:
        """
        Poll until every named service is healthy or the timeout elapses.

        Returns:
            {service: status} for services that never became healthy
        """
        pending = list(services)
        logger.info(f"Waiting for {project.name} to become healthy (timeout: {timeout}s)...")
        start = time.monotonic()
        failures: dict[str, str] = {}

        while True:
            states = {state.name: state for state in self.ps(project, fresh=True)}
            failures = {}
            for name in pending:
                state = states.get(name)
                if state is None:
                    failures[name] = "not found"
                elif not state.healthy:
                    failures[name] = state.describe()

            if not failures:
                logger.info(f"{project.name} is healthy")
                return {}

            elapsed = time.monotonic() - start
            retryable = any(
                states.get(name) is None or states[name].starting for name in failures
            )
            if elapsed >= timeout or not retryable:
                break
            logger.info(f"  [{int(elapsed)}s] waiting on {', '.join(sorted(failures))}, retrying in {interval}s...")
            time.sleep(interval)

        for name, status in failures.items():
            logger.error(f"{project.name}/{name} failed to become healthy: {status}")
        return failures

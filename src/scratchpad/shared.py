"""
Shared services: one compose project used by every scratch.

Shared services (typically the database server) are started at most once
per controller process and reused afterwards. Every operation on them is
serialized by a single lock, independent of the per-identity guard, so
scratches for different identities can provision in parallel without
racing on the shared project.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .composer import (
    SubstitutionVars,
    load_descriptor_template,
    render_shared_descriptor,
    substitute_placeholders,
)
from .config_constants import DESCRIPTOR_FILE, SHARED_PROJECT_SUFFIX
from .errors import ScriptFailure
from .fragments import ServiceFragment, shared
from .runtime import ComposeProject, ComposeRuntime

logger = logging.getLogger(__name__)


class SharedServices:
    def __init__(self, settings, runtime: ComposeRuntime) -> None:
        self.settings = settings
        self.runtime = runtime
        self.lock = threading.Lock()
        self._started = False

    @property
    def fragments(self) -> list[ServiceFragment]:
        return shared(self.settings.fragments)

    @property
    def project(self) -> ComposeProject:
        return ComposeProject(
            name=f"{self.settings.docker.label_prefix}-{SHARED_PROJECT_SUFFIX}",
            root=self.settings.server.shared_dir,
        )

    def _variables(self) -> SubstitutionVars:
        shared_dir = str(self.settings.server.shared_dir)
        return SubstitutionVars(
            identity=SHARED_PROJECT_SUFFIX,
            branch="",
            db_name="",
            release_path=shared_dir,
            host_release_path=shared_dir,
            uid=self.settings.server.uid,
            gid=self.settings.server.gid,
            network=self.settings.docker.network,
        )

    def render(self) -> str:
        descriptor = render_shared_descriptor(
            self.fragments,
            self._variables(),
            self.settings,
            load_descriptor_template(self.settings.server.templates_dir),
        )
        shared_dir = self.settings.server.shared_dir
        shared_dir.mkdir(parents=True, exist_ok=True)
        (shared_dir / DESCRIPTOR_FILE).write_text(descriptor, encoding='utf-8')
        return descriptor

    def _all_running(self) -> bool:
        states = {state.name: state for state in self.runtime.ps(self.project, fresh=True)}
        return all(
            fragment.name in states and states[fragment.name].healthy
            for fragment in self.fragments
        )

    def ensure_running(self) -> dict[str, str]:
        """
        Start the shared project unless it is already up.

        Returns:
            {service: status} for shared services that did not become healthy

        Raises:
            ScriptFailure: if compose up fails
        """
        if not self.fragments:
            return {}

        with self.lock:
            if self._started and self._all_running():
                logger.debug("Shared services already running")
                return {}

            self.render()
            if self._all_running():
                self._started = True
                return {}

            logger.info(f"Starting shared services: {[f.name for f in self.fragments]}")
            self.runtime.up(self.project).check()
            failures = self.runtime.wait_healthy(
                self.project,
                [fragment.name for fragment in self.fragments],
                timeout=self.settings.server.health_timeout,
                interval=self.settings.server.health_interval,
            )
            self._started = not failures
            return failures

    def stop(self) -> None:
        with self.lock:
            if self.project.compose_file.exists():
                self.runtime.down(self.project).check()
            self._started = False

    def restart(self) -> dict[str, str]:
        with self.lock:
            self.render()
            self.runtime.down(self.project).check()
            self._started = False
        return self.ensure_running()

    def provision_database(self, variables: SubstitutionVars) -> list[str]:
        """
        Run every shared service's ``create`` provision command for a scratch.

        Returns:
            Names of the services that provisioned something

        Raises:
            ScriptFailure: on the first failing provision command
        """
        provisioned = []
        with self.lock:
            for fragment in self.fragments:
                command = fragment.provision.get("create")
                if not command:
                    continue
                logger.info(f"Provisioning {variables.db_name} on {fragment.name}")
                self.runtime.exec(
                    self.project, fragment.name, substitute_placeholders(command, variables)
                ).check()
                provisioned.append(fragment.name)
        return provisioned

    def drop_database(self, variables: SubstitutionVars) -> list[str]:
        """
        Best-effort removal of a scratch's provisioned databases.

        Returns:
            Failure messages; empty when everything was dropped
        """
        failures = []
        with self.lock:
            for fragment in self.fragments:
                command = fragment.provision.get("drop")
                if not command:
                    continue
                logger.info(f"Dropping {variables.db_name} on {fragment.name}")
                result = self.runtime.exec(
                    self.project, fragment.name, substitute_placeholders(command, variables)
                )
                if not result.ok:
                    error = ScriptFailure(result.exit_code, result.stderr, result.command)
                    logger.warning(f"Failed to drop {variables.db_name} on {fragment.name}: {error}")
                    failures.append(f"{fragment.name}: {error}")
        return failures

    def status(self) -> Optional[list]:
        if not self.fragments:
            return None
        return self.runtime.ps(self.project)

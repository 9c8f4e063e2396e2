#!/usr/bin/env python3
"""
Lifecycle controller: drives scratches through their state machine.

States::

    absent -> materializing -> initializing -> running <-> stopped
                                                degraded     deleted

Every operation takes the per-identity guard before looking at the
filesystem, so existence checks and side effects never interleave with
another operation on the same scratch. External command failures during
create/update/start leave the scratch ``degraded`` with the failure
recorded; nothing is rolled back.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Mapping, Optional

from . import envfiles
from .composer import (
    SubstitutionVars,
    build_variables,
    changed_services,
    load_descriptor_template,
    load_env_templates,
    materialize,
    project_name,
    removed_services,
    render_descriptor,
    render_env_template,
)
from .config import Profile, Settings
from .config_constants import (
    DESCRIPTOR_FILE,
    ENV_DIR,
    LOGS_DIR,
    SCRATCH_SUBDIRS,
    SOCKETS_SERVICE,
    TEMPLATE_INIT_DIR,
    TEMPLATE_UP_DIR,
)
from .errors import Busy, Degraded, InvalidIdentity, NotFound, ScriptFailure
from .fragments import ServiceFragment, per_scratch, select_fragments
from .guard import OperationGuard
from .identity import is_valid_identity, resolve_identity
from .oplog import operation_log
from .routing import reap_bridges
from .runtime import ComposeProject, ComposeRuntime, ServiceState
from .shared import SharedServices
from .state import ScratchEnvironment, ScratchState, load_metadata, save_metadata, utcnow

logger = logging.getLogger(__name__)

OPERATIONS = (
    "create", "start", "stop", "restart", "update", "rebuild",
    "wipe_database", "delete", "write_env", "reset_env",
)


@dataclass
class LifecycleResult:
    scratch: ScratchEnvironment
    operation: str
    changed_services: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    log_file: Optional[Path] = None

    @property
    def degraded(self) -> bool:
        return bool(self.failures)

    def raise_for_degraded(self) -> "LifecycleResult":
        if self.failures:
            raise Degraded(self.scratch.identity, self.failures)
        return self

    def to_summary(self) -> dict:
        return {
            "identity": self.scratch.identity,
            "state": self.scratch.state.value,
            "operation": self.operation,
            "changed_services": list(self.changed_services),
            "failures": list(self.failures),
            "warnings": list(self.warnings),
            "log_file": str(self.log_file) if self.log_file else None,
        }


@dataclass
class ScratchStatus:
    """
    One registry entry. ``scratch`` is None while another operation holds
    the identity; ``operation`` then names it.
    """

    identity: str
    scratch: Optional[ScratchEnvironment] = None
    containers: list[ServiceState] = field(default_factory=list)
    operation: Optional[str] = None

    def to_summary(self) -> dict:
        if self.scratch is None:
            return {"identity": self.identity, "state": None, "branch": None, "operation": self.operation}
        data = self.scratch.to_summary()
        data["operation"] = self.operation
        data["containers"] = [
            {"service": c.name, "state": c.state, "health": c.health or None}
            for c in self.containers
        ]
        return data


def _digest(content: str) -> str:
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


class LifecycleController:
    def __init__(
        self,
        settings: Settings,
        runtime: Optional[ComposeRuntime] = None,
        shared: Optional[SharedServices] = None,
        guard: Optional[OperationGuard] = None,
    ) -> None:
        self.settings = settings
        self.runtime = runtime or ComposeRuntime(settings.docker.compose_command)
        self.shared = shared or SharedServices(settings, self.runtime)
        self.guard = guard or OperationGuard()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Paths and lookups
    # ------------------------------------------------------------------

    @property
    def releases_dir(self) -> Path:
        return self.settings.server.releases_dir

    def root_for(self, identity: str) -> Path:
        return self.releases_dir / identity

    def project_for(self, identity: str) -> ComposeProject:
        return ComposeProject(
            name=project_name(self.settings.docker.label_prefix, identity),
            root=self.root_for(identity),
        )

    @staticmethod
    def _require_identity(identity: str) -> str:
        if not is_valid_identity(identity):
            raise InvalidIdentity(f"Not a scratch identity: {identity!r}")
        return identity

    def _load_existing(self, identity: str, branch: Optional[str] = None) -> ScratchEnvironment:
        root = self.root_for(identity)
        if not root.is_dir():
            raise NotFound(f"No scratch named '{identity}'")
        scratch = load_metadata(root)
        if scratch is None:
            # Left behind by an interrupted create
            logger.warning(f"[{identity}] no metadata found, treating as interrupted create")
            scratch = ScratchEnvironment(
                identity=identity,
                branch=branch or identity,
                root=root,
                state=ScratchState.MATERIALIZING,
            )
        return scratch

    def _profile(self, name: Optional[str]) -> Optional[Profile]:
        return self.settings.get_profile(name)

    def _selection(self, profile: Optional[Profile]) -> list[ServiceFragment]:
        names = profile.services if profile and profile.services else self.settings.scratch_services
        return select_fragments(self.settings.fragments, names)

    def _extra_env(self, profile: Optional[Profile]) -> dict[str, str]:
        env = dict(self.settings.scratch_env)
        if profile:
            env.update(profile.env)
        return env

    def _variables(self, scratch: ScratchEnvironment) -> SubstitutionVars:
        return build_variables(scratch.identity, scratch.branch, self.settings)

    def _script_env(self, scratch: ScratchEnvironment) -> dict[str, str]:
        variables = self._variables(scratch)
        project = self.project_for(scratch.identity)
        return {
            "IDENTITY": variables.identity,
            "BRANCH": variables.branch,
            "DB_NAME": variables.db_name,
            "RELEASE_PATH": variables.release_path,
            "HOST_RELEASE_PATH": variables.host_release_path,
            "NETWORK": variables.network,
            "CUID": str(variables.uid),
            "CGID": str(variables.gid),
            "COMPOSE_PROJECT_NAME": project.name,
            "COMPOSE_FILE": str(project.compose_file),
        }

    @contextmanager
    def _log(self, scratch: ScratchEnvironment, operation: str, log_dir: Optional[Path] = None) -> Iterator[Path]:
        with operation_log(log_dir or scratch.root / LOGS_DIR, operation) as path:
            logger.info(f"[{scratch.identity}] {operation} (log: {path})")
            yield path

    def _save(self, scratch: ScratchEnvironment) -> None:
        save_metadata(scratch)
        self.runtime.cache.invalidate(self.project_for(scratch.identity).name)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _render_descriptor(self, scratch: ScratchEnvironment) -> tuple[str, list[ServiceFragment]]:
        profile = self._profile(scratch.profile)
        fragments = self._selection(profile)
        descriptor = render_descriptor(
            fragments,
            self._variables(scratch),
            self.settings,
            extra_env=self._extra_env(profile),
            template_text=load_descriptor_template(self.settings.server.templates_dir),
        )
        scratch.services = [fragment.name for fragment in fragments]
        return descriptor, fragments

    def _write_missing_env(self, scratch: ScratchEnvironment) -> list[str]:
        """Write env templates that have no file in the scratch yet."""
        variables = self._variables(scratch)
        env_dir = scratch.root / ENV_DIR
        env_dir.mkdir(parents=True, exist_ok=True)
        written = []
        for name, text in load_env_templates(self.settings.server.templates_dir).items():
            target = envfiles.resolve_env_path(scratch.root, name)
            if not target.exists():
                target.write_text(render_env_template(text, variables), encoding='utf-8')
                written.append(name)
        return written

    def _env_digests(self, scratch: ScratchEnvironment) -> dict[str, str]:
        return {name: _digest(content) for name, content in envfiles.read(scratch.root).items()}

    # ------------------------------------------------------------------
    # Steps shared by several operations
    # ------------------------------------------------------------------

    def _prepare_shared(self, scratch: ScratchEnvironment, fragments: list[ServiceFragment],
                        provision: bool = True) -> list[str]:
        if not any(fragment.shared for fragment in fragments):
            return []
        try:
            unhealthy = self.shared.ensure_running()
        except ScriptFailure as e:
            logger.error(f"[{scratch.identity}] shared services failed to start: {e}")
            return [str(e)]
        failures = [f"{name}: {status}" for name, status in unhealthy.items()]
        if failures or not provision:
            return failures
        try:
            self.shared.provision_database(self._variables(scratch))
        except ScriptFailure as e:
            logger.error(f"[{scratch.identity}] database provisioning failed: {e}")
            failures.append(str(e))
        return failures

    def _run_init_scripts(self, scratch: ScratchEnvironment, only: Optional[str] = None) -> list[str]:
        """
        Run initialise.d scripts; all of them, or only <service>.sh.

        Failures are logged and returned, never raised.
        """
        init_dir = self.settings.server.templates_dir / TEMPLATE_INIT_DIR
        if not init_dir.is_dir():
            return []

        scripts = sorted(init_dir.glob("*.sh"))
        if only:
            scripts = [script for script in scripts if script.stem == only]

        warnings = []
        env = self._script_env(scratch)
        for script in scripts:
            result = self.runtime.run_script(script, cwd=scratch.root, env=env)
            if not result.ok:
                failure = ScriptFailure(result.exit_code, result.stderr, result.command)
                logger.warning(f"[{scratch.identity}] init script {script.name} failed: {failure}")
                warnings.append(str(failure))
        return warnings

    def _health_targets(self, fragments: list[ServiceFragment]) -> list[str]:
        return [fragment.name for fragment in per_scratch(fragments) if fragment.required] + [SOCKETS_SERVICE]

    def _wait_healthy(self, scratch: ScratchEnvironment, fragments: list[ServiceFragment],
                      services: Optional[list[str]] = None) -> list[str]:
        targets = self._health_targets(fragments)
        if services is not None:
            targets = [name for name in targets if name in services]
        if not targets:
            return []
        failures = self.runtime.wait_healthy(
            self.project_for(scratch.identity),
            targets,
            timeout=self.settings.server.health_timeout,
            interval=self.settings.server.health_interval,
        )
        return [f"{name}: {status}" for name, status in failures.items()]

    def _finish(self, scratch: ScratchEnvironment, operation: str, failures: list[str],
                log_file: Optional[Path], changed: Optional[list[str]] = None,
                warnings: Optional[list[str]] = None) -> LifecycleResult:
        warnings = list(warnings or [])
        state = ScratchState.DEGRADED if failures else ScratchState.RUNNING
        scratch.transition(state, "; ".join(failures + warnings) or None)
        self._save(scratch)
        if failures:
            logger.error(f"[{scratch.identity}] {operation} finished degraded: {'; '.join(failures)}")
        else:
            logger.info(f"[{scratch.identity}] {operation} finished: running")
        return LifecycleResult(scratch, operation, list(changed or []), failures, warnings, log_file)

    def _fail(self, scratch: ScratchEnvironment, error: Exception) -> None:
        scratch.transition(ScratchState.DEGRADED, str(error))
        self._save(scratch)

    def _start_locked(self, scratch: ScratchEnvironment, operation: str, log_file: Path) -> LifecycleResult:
        # Databases exist once a scratch got past initialization
        provision = scratch.state in (ScratchState.ABSENT, ScratchState.MATERIALIZING, ScratchState.INITIALIZING)
        for subdir in SCRATCH_SUBDIRS:
            (scratch.root / subdir).mkdir(parents=True, exist_ok=True)
        descriptor, fragments = self._render_descriptor(scratch)
        (scratch.root / DESCRIPTOR_FILE).write_text(descriptor, encoding='utf-8')
        self._write_missing_env(scratch)

        failures = self._prepare_shared(scratch, fragments, provision)
        try:
            self.runtime.up(self.project_for(scratch.identity), remove_orphans=True).check()
            failures += self._wait_healthy(scratch, fragments)
        except ScriptFailure as e:
            failures.append(str(e))
        scratch.env_digests = self._env_digests(scratch)
        return self._finish(scratch, operation, failures, log_file, changed=scratch.services)

    def _stop_locked(self, scratch: ScratchEnvironment) -> None:
        project = self.project_for(scratch.identity)
        result = self.runtime.down(project) if project.compose_file.exists() else None
        reap_bridges(scratch.root)
        if result is not None and not result.ok:
            error = ScriptFailure(result.exit_code, result.stderr, result.command)
            scratch.last_failure = str(error)
            self._save(scratch)
            raise error
        scratch.transition(ScratchState.STOPPED)
        self._save(scratch)

    def _redeploy(self, scratch: ScratchEnvironment, services: list[str], operation: str,
                  log_file: Path, fragments: list[ServiceFragment]) -> LifecycleResult:
        failures = []
        if services:
            try:
                self.runtime.up(
                    self.project_for(scratch.identity), services, no_deps=True, force_recreate=True
                ).check()
                failures += self._wait_healthy(scratch, fragments, services)
            except ScriptFailure as e:
                failures.append(str(e))
        scratch.env_digests = self._env_digests(scratch)
        return self._finish(scratch, operation, failures, log_file, changed=services)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(self, branch: str, name: Optional[str] = None, profile: Optional[str] = None) -> LifecycleResult:
        """
        Create a scratch for a branch, or update it if it already exists.

        Raises:
            InvalidIdentity: if the branch (or name) sanitizes to nothing
            Busy: if another operation holds the identity
        """
        identity = resolve_identity(name or branch)
        profile_obj = self._profile(profile)

        with self.guard.hold(identity, "create"):
            root = self.root_for(identity)
            if root.exists():
                existing = self._load_existing(identity, branch)
                if existing.branch != branch:
                    logger.warning(
                        f"[{identity}] branch '{branch}' maps to existing scratch of "
                        f"branch '{existing.branch}', updating it"
                    )
                if profile_obj is not None and existing.profile != profile_obj.name:
                    logger.info(f"[{identity}] switching profile {existing.profile!r} -> {profile_obj.name!r}")
                    existing.profile = profile_obj.name
                return self._update_locked(existing, "create")
            return self._create_locked(identity, branch, profile_obj)

    def _create_locked(self, identity: str, branch: str, profile: Optional[Profile]) -> LifecycleResult:
        root = self.root_for(identity)
        scratch = ScratchEnvironment(
            identity=identity,
            branch=branch,
            root=root,
            profile=profile.name if profile else None,
        )
        variables = self._variables(scratch)
        scratch.db_name = variables.db_name
        root.mkdir(parents=True)

        with self._log(scratch, "create") as log_file:
            try:
                scratch.transition(ScratchState.MATERIALIZING)
                descriptor, fragments = self._render_descriptor(scratch)
                self._save(scratch)
                materialize(
                    root,
                    descriptor,
                    load_env_templates(self.settings.server.templates_dir),
                    variables,
                )

                scratch.transition(ScratchState.INITIALIZING)
                self._save(scratch)
                failures = self._prepare_shared(scratch, fragments)
                warnings = self._run_init_scripts(scratch)

                try:
                    self.runtime.up(self.project_for(identity)).check()
                    failures += self._wait_healthy(scratch, fragments)
                except ScriptFailure as e:
                    failures.append(str(e))
            except Exception as e:
                logger.error(f"[{identity}] create failed: {e}")
                self._fail(scratch, e)
                raise

            scratch.env_digests = self._env_digests(scratch)
            return self._finish(scratch, "create", failures, log_file, scratch.services, warnings)

    def start(self, identity: str) -> LifecycleResult:
        identity = self._require_identity(identity)
        with self.guard.hold(identity, "start"):
            scratch = self._load_existing(identity)
            with self._log(scratch, "start") as log_file:
                return self._start_locked(scratch, "start", log_file)

    def stop(self, identity: str) -> LifecycleResult:
        identity = self._require_identity(identity)
        with self.guard.hold(identity, "stop"):
            scratch = self._load_existing(identity)
            with self._log(scratch, "stop") as log_file:
                self._stop_locked(scratch)
                return LifecycleResult(scratch, "stop", log_file=log_file)

    def restart(self, identity: str) -> LifecycleResult:
        identity = self._require_identity(identity)
        with self.guard.hold(identity, "restart"):
            scratch = self._load_existing(identity)
            with self._log(scratch, "restart") as log_file:
                self._stop_locked(scratch)
                return self._start_locked(scratch, "restart", log_file)

    def update(self, identity: str) -> LifecycleResult:
        identity = self._require_identity(identity)
        with self.guard.hold(identity, "update"):
            return self._update_locked(self._load_existing(identity), "update")

    def _update_locked(self, scratch: ScratchEnvironment, operation: str) -> LifecycleResult:
        with self._log(scratch, operation) as log_file:
            if scratch.state not in (ScratchState.RUNNING, ScratchState.DEGRADED, ScratchState.STOPPED):
                logger.info(f"[{scratch.identity}] state {scratch.state.value}, running a full start")
                return self._start_locked(scratch, operation, log_file)

            descriptor_path = scratch.root / DESCRIPTOR_FILE
            old = descriptor_path.read_text(encoding='utf-8') if descriptor_path.exists() else None
            new, fragments = self._render_descriptor(scratch)
            added_env = self._write_missing_env(scratch)
            descriptor_path.write_text(new, encoding='utf-8')

            if scratch.state == ScratchState.STOPPED:
                logger.info(f"[{scratch.identity}] stopped, descriptor re-rendered only")
                scratch.updated = utcnow()
                self._save(scratch)
                return LifecycleResult(scratch, operation, warnings=[], log_file=log_file)

            changed = changed_services(old, new)
            digests = self._env_digests(scratch)
            env_changed = sorted(
                set(added_env) | {name for name, d in digests.items() if scratch.env_digests.get(name) != d}
            )
            for service in envfiles.dependent_services(fragments, env_changed):
                if service not in changed:
                    changed.append(service)

            removed = removed_services(old, new)
            if removed:
                logger.info(f"[{scratch.identity}] removing services: {removed}")
                self.runtime.remove(self.project_for(scratch.identity), removed)

            logger.info(f"[{scratch.identity}] changed services: {changed or 'none'}")
            return self._redeploy(scratch, changed, operation, log_file, fragments)

    def rebuild(self, identity: str) -> LifecycleResult:
        identity = self._require_identity(identity)
        with self.guard.hold(identity, "rebuild"):
            scratch = self._load_existing(identity)
            with self._log(scratch, "rebuild") as log_file:
                self._stop_locked(scratch)
                result = self._start_locked(scratch, "rebuild", log_file)

                _, fragments = self._render_descriptor(scratch)
                artifacts = [f.name for f in per_scratch(fragments) if f.artifact]
                if not artifacts:
                    return result

                project = self.project_for(identity)
                failures = list(result.failures)
                warnings = list(result.warnings)
                try:
                    self.runtime.pull(project, artifacts).check()
                    self.runtime.up(project, artifacts, force_recreate=True).check()
                except ScriptFailure as e:
                    failures.append(str(e))

                up_dir = self.settings.server.templates_dir / TEMPLATE_UP_DIR
                env = self._script_env(scratch)
                for service in artifacts:
                    script = up_dir / f"{service}.sh"
                    if not script.is_file():
                        continue
                    script_result = self.runtime.run_script(script, cwd=scratch.root, env=env)
                    if not script_result.ok:
                        failures.append(str(ScriptFailure(
                            script_result.exit_code, script_result.stderr, script_result.command
                        )))

                if not failures:
                    failures += self._wait_healthy(scratch, fragments, artifacts)
                return self._finish(scratch, "rebuild", failures, log_file, artifacts, warnings)

    def wipe_database(self, identity: str) -> LifecycleResult:
        """
        Reset the scratch's own database service from its init script.

        Shared services are never touched.
        """
        identity = self._require_identity(identity)
        with self.guard.hold(identity, "wipe_database"):
            scratch = self._load_existing(identity)
            _, fragments = self._render_descriptor(scratch)
            databases = [f.name for f in per_scratch(fragments) if f.database]
            if not databases:
                raise NotFound(f"Scratch '{identity}' has no database service")

            with self._log(scratch, "wipe_database") as log_file:
                project = self.project_for(identity)
                running = scratch.state.is_running
                failures = []
                script_failures = []
                for service in databases:
                    if running:
                        try:
                            self.runtime.stop(project, [service]).check()
                        except ScriptFailure as e:
                            logger.error(f"[{identity}] could not stop {service}, not re-seeding it: {e}")
                            failures.append(str(e))
                            continue
                    script_failures += self._run_init_scripts(scratch, only=service)
                    if running:
                        try:
                            self.runtime.up(project, [service], no_deps=True).check()
                        except ScriptFailure as e:
                            failures.append(str(e))

                if not running:
                    self._save(scratch)
                    return LifecycleResult(scratch, "wipe_database", databases, [], script_failures, log_file)
                if not failures:
                    failures += self._wait_healthy(scratch, fragments, databases)
                return self._finish(scratch, "wipe_database", script_failures + failures, log_file, databases)

    def delete(self, identity: str) -> LifecycleResult:
        """
        Tear a scratch down completely.

        Raises:
            NotFound: if the scratch does not exist (nothing is touched)
            ScriptFailure: if compose down fails (the scratch is kept)
        """
        identity = self._require_identity(identity)
        with self.guard.hold(identity, "delete"):
            scratch = self._load_existing(identity)
            with self._log(scratch, "delete", log_dir=self.settings.server.logs_dir) as log_file:
                project = self.project_for(identity)
                warnings = []
                if project.compose_file.exists():
                    result = self.runtime.down(project, volumes=True, rmi_local=True)
                    if not result.ok:
                        error = ScriptFailure(result.exit_code, result.stderr, result.command)
                        scratch.last_failure = str(error)
                        self._save(scratch)
                        raise error
                reap_bridges(scratch.root)

                if self.shared.fragments:
                    warnings += self.shared.drop_database(self._variables(scratch))

                shutil.rmtree(scratch.root)
                self.runtime.cache.invalidate(project.name)
                scratch.transition(ScratchState.DELETED)
                logger.info(f"[{identity}] deleted")
                return LifecycleResult(scratch, "delete", warnings=warnings, log_file=log_file)

    # ------------------------------------------------------------------
    # Registry and env files
    # ------------------------------------------------------------------

    def list(self) -> list[ScratchStatus]:
        """
        Registry derived from the releases directory listing.

        Each entry is read under the identity guard; a scratch with an
        operation in flight is listed by identity and operation only.
        """
        if not self.releases_dir.is_dir():
            return []
        entries = []
        for root in sorted(self.releases_dir.iterdir()):
            if not root.is_dir() or not is_valid_identity(root.name):
                continue
            identity = root.name
            try:
                with self.guard.reading(identity):
                    if not root.is_dir():
                        continue
                    scratch = load_metadata(root)
            except Busy as e:
                entries.append(ScratchStatus(identity, operation=e.operation))
                continue
            if scratch is None:
                scratch = ScratchEnvironment(identity, identity, root, ScratchState.MATERIALIZING)
            entries.append(ScratchStatus(identity, scratch))
        return entries

    def get(self, identity: str) -> ScratchEnvironment:
        """
        Metadata of an existing scratch.

        Raises:
            NotFound: if the scratch does not exist
            Busy: if an operation is in flight for it
        """
        identity = self._require_identity(identity)
        with self.guard.reading(identity):
            return self._load_existing(identity)

    def status(self, identity: str) -> ScratchStatus:
        identity = self._require_identity(identity)
        with self.guard.reading(identity):
            scratch = self._load_existing(identity)
            containers = self.runtime.ps(self.project_for(identity))
        return ScratchStatus(identity, scratch, containers)

    def logs(self, identity: str, service: Optional[str] = None, tail: int = 100) -> str:
        identity = self._require_identity(identity)
        with self.guard.reading(identity):
            scratch = self._load_existing(identity)
            result = self.runtime.logs(self.project_for(scratch.identity), [service] if service else [], tail)
        return result.check().stdout

    def read_env(self, identity: str, structured: bool = False) -> dict:
        identity = self._require_identity(identity)
        with self.guard.reading(identity):
            scratch = self._load_existing(identity)
            if structured:
                return envfiles.read_entries(scratch.root)
            return envfiles.read(scratch.root)

    def write_env(self, identity: str, files: Mapping[str, str]) -> LifecycleResult:
        """
        Write env files and redeploy the services reading them.

        Raises:
            InvalidPath: if any target escapes the scratch (nothing is written)
        """
        identity = self._require_identity(identity)
        with self.guard.hold(identity, "write_env"):
            scratch = self._load_existing(identity)
            written = envfiles.write_many(scratch.root, files)
            with self._log(scratch, "write_env") as log_file:
                return self._after_env_change(scratch, [path.name for path in written], "write_env", log_file)

    def reset_env(self, identity: str, files: Optional[list[str]] = None) -> LifecycleResult:
        identity = self._require_identity(identity)
        with self.guard.hold(identity, "reset_env"):
            scratch = self._load_existing(identity)
            names = envfiles.reset_to_template(
                scratch.root,
                self.settings.server.templates_dir,
                self._variables(scratch),
                files,
            )
            with self._log(scratch, "reset_env") as log_file:
                return self._after_env_change(scratch, names, "reset_env", log_file)

    def _after_env_change(self, scratch: ScratchEnvironment, names: list[str], operation: str,
                          log_file: Path) -> LifecycleResult:
        _, fragments = self._render_descriptor(scratch)
        services = envfiles.dependent_services(fragments, names)
        if not scratch.state.is_running:
            self._save(scratch)
            return LifecycleResult(scratch, operation, services, log_file=log_file)
        return self._redeploy(scratch, services, operation, log_file, fragments)

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.server.workers,
                thread_name_prefix="scratchpad",
            )
        return self._executor

    def submit(self, operation: str, *args, **kwargs) -> Future:
        """Run a lifecycle operation on the worker pool."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        future = self.executor.submit(getattr(self, operation), *args, **kwargs)
        target = args[0] if args else kwargs.get("identity") or kwargs.get("branch")
        future.add_done_callback(lambda done: self._report_queued(done, operation, target))
        return future

    @staticmethod
    def _report_queued(future: Future, operation: str, target: Optional[str]) -> None:
        # Queued futures are never awaited. Errors raised before the operation
        # log opens (Busy, NotFound, ConfigError) are only reported here.
        if future.cancelled():
            logger.warning(f"[{target}] queued {operation} was cancelled")
            return
        error = future.exception()
        if error is not None:
            logger.error(f"[{target}] queued {operation} failed: {type(error).__name__}: {error}")

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

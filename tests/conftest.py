"""
Shared fixtures: a controller configuration in tmp_path and a fake command
runner standing in for docker compose.
"""

import json
import sys
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from scratchpad.config import build_settings  # noqa: E402
from scratchpad.process import CommandResult  # noqa: E402


class FakeRunner:
    """
    Records every command. ``docker compose ps`` reports every service of the
    project's descriptor as running and healthy unless listed in ``states``;
    ``down`` makes a project report nothing until the next ``up``.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.states = {}
        self.down_projects = set()

    @staticmethod
    def verb(cmd):
        if cmd[0] == "sh":
            return f"script:{Path(cmd[1]).name}"
        if "-f" in cmd:
            return cmd[cmd.index("-f") + 2]
        return cmd[0]

    def run(self, cmd, cwd=None, env=None, cancel=None):
        cmd = [str(part) for part in cmd]
        self.calls.append(cmd)
        verb = self.verb(cmd)

        if verb in self.failures:
            exit_code, stderr = self.failures[verb]
            return CommandResult(cmd, exit_code, "", stderr)

        if "-p" in cmd:
            project = cmd[cmd.index("-p") + 1]
            compose_file = Path(cmd[cmd.index("-f") + 1])
            if verb == "down":
                self.down_projects.add(project)
            elif verb == "up":
                self.down_projects.discard(project)
            elif verb == "ps":
                return CommandResult(cmd, 0, self._ps(project, compose_file), "")
        return CommandResult(cmd, 0, "", "")

    def _ps(self, project, compose_file):
        if project in self.down_projects or not compose_file.exists():
            return ""
        services = yaml.safe_load(compose_file.read_text())["services"]
        lines = []
        for name in services:
            state, health = self.states.get(name, ("running", "healthy"))
            lines.append(json.dumps({"Service": name, "State": state, "Health": health}))
        return "\n".join(lines)

    def compose_calls(self, verb=None, project=None):
        calls = [call for call in self.calls if "-p" in call]
        if project:
            calls = [call for call in calls if call[call.index("-p") + 1] == project]
        if verb:
            calls = [call for call in calls if self.verb(call) == verb]
        return calls

    def script_calls(self):
        return [Path(call[1]).name for call in self.calls if call[0] == "sh"]


def base_raw_config(tmp_path):
    return {
        "server": {
            "releases_dir": str(tmp_path / "releases"),
            "templates_dir": str(tmp_path / "templates"),
            "shared_dir": str(tmp_path / "shared"),
            "logs_dir": str(tmp_path / "logs"),
            "db_prefix": "scratch_",
            "uid": 1000,
            "gid": 1000,
            "health_timeout": 0,
            "health_interval": 0,
        },
        "docker": {
            "network": "scratchpad-network",
            "label_prefix": "scratchpad",
        },
        "ingress": {
            "mode": "subdomain",
            "domain": "scratches.test",
            "sockets_root": "/srv/releases",
            "config_path": str(tmp_path / "nginx" / "scratches.conf"),
            "fallback_page": str(tmp_path / "nginx" / "unavailable.html"),
        },
        "services": {
            "postgres": {
                "image": "postgres:16",
                "shared": True,
                "healthcheck": "pg_isready -U postgres",
                "provision": {
                    "create": "createdb -U postgres __DB_NAME__",
                    "drop": "dropdb -U postgres --if-exists __DB_NAME__",
                },
            },
            "api": {
                "image": "example/api:__BRANCH__",
                "environment": {"DB_NAME": "__DB_NAME__", "SCRATCH": "__IDENTITY__"},
                "env_files": ["api.env"],
                "sockets": {"api": 3000},
                "depends_on": ["db"],
                "artifact": True,
            },
            "db": {
                "image": "redis:7",
                "database": True,
                "volumes": ["__RELEASE_PATH__/storage:/data"],
                "healthcheck": "redis-cli ping",
            },
            "worker": {
                "image": "example/worker:latest",
                "env_files": ["worker.env"],
                "required": False,
            },
        },
    }


@pytest.fixture
def templates_dir(tmp_path):
    templates = tmp_path / "templates"
    (templates / "env.d").mkdir(parents=True)
    (templates / "env.d" / "api.env").write_text(
        "# api settings\nDB_NAME=__DB_NAME__\nPUBLIC_URL=https://__IDENTITY__.scratches.test\n"
    )
    (templates / "env.d" / "worker.env").write_text("QUEUE=__IDENTITY__-jobs\n")
    (templates / "initialise.d").mkdir()
    (templates / "initialise.d" / "db.sh").write_text("#!/bin/sh\necho seeding $DB_NAME\n")
    (templates / "up.d").mkdir()
    (templates / "up.d" / "api.sh").write_text("#!/bin/sh\necho migrating\n")
    return templates


@pytest.fixture
def settings(tmp_path, templates_dir):
    return build_settings(base_raw_config(tmp_path), tmp_path)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def controller(settings, runner):
    from scratchpad.lifecycle import LifecycleController
    from scratchpad.runtime import ComposeRuntime

    runtime = ComposeRuntime(runner=runner)
    ctl = LifecycleController(settings, runtime=runtime)
    yield ctl
    ctl.shutdown()

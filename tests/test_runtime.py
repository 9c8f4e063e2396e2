"""
Compose runtime tests: command construction, ps parsing and caching.
"""

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from scratchpad.runtime import ComposeProject, ComposeRuntime, parse_ps_output  # noqa: E402

from conftest import FakeRunner  # noqa: E402

DESCRIPTOR = """\
services:
  api:
    image: example/api
  db:
    image: redis
"""


@pytest.fixture
def project(tmp_path):
    (tmp_path / "docker-compose.yml").write_text(DESCRIPTOR)
    return ComposeProject("scratchpad-featurex", tmp_path)


@pytest.fixture
def runtime(runner):
    return ComposeRuntime(runner=runner)


class TestParsePsOutput:
    def test_json_array(self):
        states = parse_ps_output('[{"Service": "api", "State": "running", "Health": "healthy"}]')

        assert states[0].name == "api"
        assert states[0].healthy

    def test_json_lines(self):
        output = (
            '{"Service": "api", "State": "running", "Health": "starting"}\n'
            '{"Service": "db", "State": "exited", "Health": "", "ExitCode": 1}\n'
        )

        api, db = parse_ps_output(output)

        assert api.starting and not api.healthy
        assert db.exit_code == 1
        assert db.describe() == "exited"
        assert api.describe() == "running (starting)"

    def test_empty(self):
        assert parse_ps_output("  \n") == []


class TestCommands:
    def test_up(self, runtime, runner, project):
        runtime.up(project, ["api"], no_deps=True, force_recreate=True)

        assert runner.calls[-1] == [
            "docker", "compose", "-p", "scratchpad-featurex", "-f", str(project.compose_file),
            "up", "-d", "--no-deps", "--force-recreate", "api",
        ]

    def test_down_with_volumes(self, runtime, runner, project):
        runtime.down(project, volumes=True, rmi_local=True)

        assert runner.calls[-1][6:] == ["down", "--remove-orphans", "-v", "--rmi", "local"]

    def test_exec(self, runtime, runner, project):
        runtime.exec(project, "db", "createdb x")

        assert runner.calls[-1][6:] == ["exec", "-T", "db", "sh", "-c", "createdb x"]

    def test_custom_compose_command(self, runner, project):
        ComposeRuntime(["docker-compose"], runner=runner).stop(project)

        assert runner.calls[-1][:3] == ["docker-compose", "-p", "scratchpad-featurex"]

    def test_run_script(self, runtime, runner, tmp_path):
        result = runtime.run_script(tmp_path / "seed.sh", cwd=tmp_path, args=["x"])

        assert result.ok
        assert runner.calls[-1] == ["sh", str(tmp_path / "seed.sh"), "x"]


class TestPs:
    def test_cached_until_mutation(self, runtime, runner, project):
        first = runtime.ps(project)
        second = runtime.ps(project)

        assert [s.name for s in first] == ["api", "db"]
        assert first is second
        assert len(runner.compose_calls("ps")) == 1

        runtime.stop(project)
        runtime.ps(project)
        assert len(runner.compose_calls("ps")) == 2

    def test_fresh_bypasses_cache(self, runtime, runner, project):
        runtime.ps(project)
        runtime.ps(project, fresh=True)

        assert len(runner.compose_calls("ps")) == 2

    def test_missing_descriptor(self, runtime, runner, tmp_path):
        assert runtime.ps(ComposeProject("scratchpad-ghost", tmp_path / "ghost")) == []
        assert runner.calls == []

    def test_failed_ps(self, runtime, runner, project):
        runner.failures["ps"] = (1, "daemon down")

        assert runtime.ps(project) == []


class TestWaitHealthy:
    def test_all_healthy(self, runtime, project):
        assert runtime.wait_healthy(project, ["api", "db"], timeout=0, interval=0) == {}

    def test_exited_service_fails_without_retry(self, runtime, runner, project):
        runner.states["db"] = ("exited", "")

        failures = runtime.wait_healthy(project, ["api", "db"], timeout=30, interval=0)

        assert failures == {"db": "exited"}
        assert len(runner.compose_calls("ps")) == 1

    def test_timeout(self, runtime, runner, project):
        runner.states["api"] = ("running", "starting")

        failures = runtime.wait_healthy(project, ["api", "missing"], timeout=0, interval=0)

        assert failures == {"api": "running (starting)", "missing": "not found"}

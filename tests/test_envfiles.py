"""
Env file manager tests.
"""

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from scratchpad import envfiles  # noqa: E402
from scratchpad.composer import build_variables  # noqa: E402
from scratchpad.errors import InvalidPath, NotFound  # noqa: E402


@pytest.fixture
def root(tmp_path):
    root = tmp_path / "releases" / "featurex"
    (root / "env.d").mkdir(parents=True)
    (root / "env.d" / "api.env").write_text("DB_NAME=edited\n")
    (root / "env.d" / "worker.env").write_text("QUEUE=edited\n")
    return root


class TestParseEnv:
    def test_entries(self):
        text = """
# comment
export TOKEN=abc
QUOTED="hello world"
SINGLE='x=y'
EMPTY=
not an entry
"""
        assert envfiles.parse_env(text) == {
            "TOKEN": "abc",
            "QUOTED": "hello world",
            "SINGLE": "x=y",
            "EMPTY": "",
        }


class TestResolveEnvPath:
    def test_bare_name_lands_in_env_dir(self, root):
        assert envfiles.resolve_env_path(root, "api.env") == root / "env.d" / "api.env"

    def test_relative_path_inside_root(self, root):
        assert envfiles.resolve_env_path(root, "config/app.env") == root / "config" / "app.env"

    @pytest.mark.parametrize("name", ["", "  ", "/etc/passwd", "../other/api.env", "env.d/../../x.env"])
    def test_rejected(self, root, name):
        with pytest.raises(InvalidPath):
            envfiles.resolve_env_path(root, name)

    def test_symlink_escape_rejected(self, root, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (root / "env.d" / "link").symlink_to(outside)

        with pytest.raises(InvalidPath):
            envfiles.resolve_env_path(root, "env.d/link/evil.env")


class TestWrite:
    def test_write_many(self, root):
        written = envfiles.write_many(root, {"api.env": "A=1\n", "new.env": "B=2\n"})

        assert [p.name for p in written] == ["api.env", "new.env"]
        assert envfiles.read(root)["new.env"] == "B=2\n"

    def test_nothing_written_on_invalid_path(self, root):
        with pytest.raises(InvalidPath):
            envfiles.write_many(root, {"api.env": "A=1\n", "../escape.env": "B=2\n"})

        assert (root / "env.d" / "api.env").read_text() == "DB_NAME=edited\n"
        assert not (root.parent / "escape.env").exists()

    def test_read_entries(self, root):
        assert envfiles.read_entries(root) == {
            "api.env": {"DB_NAME": "edited"},
            "worker.env": {"QUEUE": "edited"},
        }


class TestResetToTemplate:
    def test_partial_reset(self, root, settings):
        variables = build_variables("featurex", "feature/x", settings)

        names = envfiles.reset_to_template(root, settings.server.templates_dir, variables, ["worker.env"])

        assert names == ["worker.env"]
        assert (root / "env.d" / "worker.env").read_text() == "QUEUE=featurex-jobs\n"
        assert (root / "env.d" / "api.env").read_text() == "DB_NAME=edited\n"

    def test_reset_all(self, root, settings):
        variables = build_variables("featurex", "feature/x", settings)

        names = envfiles.reset_to_template(root, settings.server.templates_dir, variables)

        assert names == ["api.env", "worker.env"]
        assert "DB_NAME=scratch_featurex" in (root / "env.d" / "api.env").read_text()

    def test_unknown_template(self, root, settings):
        variables = build_variables("featurex", "feature/x", settings)

        with pytest.raises(NotFound, match="missing.env"):
            envfiles.reset_to_template(root, settings.server.templates_dir, variables, ["missing.env"])
        assert (root / "env.d" / "api.env").read_text() == "DB_NAME=edited\n"


def test_dependent_services(settings):
    assert envfiles.dependent_services(settings.fragments, ["api.env"]) == ["api"]
    assert envfiles.dependent_services(settings.fragments, ["env.d/worker.env", "api.env"]) == ["api", "worker"]
    assert envfiles.dependent_services(settings.fragments, ["other.env"]) == []

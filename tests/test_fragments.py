"""
Service fragment loading tests.
"""

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from scratchpad.errors import ConfigError  # noqa: E402
from scratchpad.fragments import (  # noqa: E402
    ServiceFragment,
    load_fragments,
    per_scratch,
    select_fragments,
    shared,
)


class TestServiceFragment:
    def test_from_dict(self):
        fragment = ServiceFragment.from_dict("api", {
            "image": "example/api",
            "ports": [8080],
            "env": {"DEBUG": True, "EMPTY": None},
            "sockets": {"api": "3000"},
        })

        assert fragment.ports == ("8080",)
        assert fragment.environment == {"DEBUG": "true", "EMPTY": ""}
        assert fragment.sockets == {"api": 3000}
        assert fragment.required is True
        assert fragment.shared is False

    def test_unknown_keys(self):
        with pytest.raises(ConfigError, match="imag"):
            ServiceFragment.from_dict("api", {"image": "x", "imag": "y"})

    def test_image_required(self):
        with pytest.raises(ConfigError, match="image"):
            ServiceFragment.from_dict("api", {})

    def test_provision_requires_shared(self):
        with pytest.raises(ConfigError, match="not shared"):
            ServiceFragment.from_dict("db", {"image": "x", "provision": {"create": "createdb"}})


class TestLoadFragments:
    def test_config_then_services_dir(self, tmp_path):
        services_dir = tmp_path / "services.d"
        services_dir.mkdir()
        (services_dir / "20-worker.toml").write_text('name = "worker"\nimage = "w"\n')
        (services_dir / "10-cache.toml").write_text('image = "redis"\n')

        fragments = load_fragments({"api": {"image": "a"}}, services_dir)

        assert [f.name for f in fragments] == ["api", "10-cache", "worker"]

    def test_duplicate_names(self, tmp_path):
        services_dir = tmp_path / "services.d"
        services_dir.mkdir()
        (services_dir / "api.toml").write_text('image = "a"\n')

        with pytest.raises(ConfigError, match="more than once"):
            load_fragments({"api": {"image": "a"}}, services_dir)

    def test_reserved_names(self):
        with pytest.raises(ConfigError, match="reserved"):
            load_fragments({"sockets": {"image": "a"}})

    def test_malformed_file(self, tmp_path):
        services_dir = tmp_path / "services.d"
        services_dir.mkdir()
        (services_dir / "bad.toml").write_text("image = \n")

        with pytest.raises(ConfigError, match="bad.toml"):
            load_fragments({}, services_dir)


class TestSelection:
    def _fragments(self):
        return load_fragments({
            "postgres": {"image": "postgres", "shared": True},
            "api": {"image": "a"},
            "db": {"image": "d"},
        })

    def test_empty_selection_is_everything(self):
        assert [f.name for f in select_fragments(self._fragments(), [])] == ["postgres", "api", "db"]

    def test_keeps_declaration_order(self):
        assert [f.name for f in select_fragments(self._fragments(), ["db", "api"])] == ["api", "db"]

    def test_unknown_service(self):
        with pytest.raises(ConfigError, match="nope"):
            select_fragments(self._fragments(), ["api", "nope"])

    def test_shared_split(self):
        fragments = self._fragments()

        assert [f.name for f in shared(fragments)] == ["postgres"]
        assert [f.name for f in per_scratch(fragments)] == ["api", "db"]

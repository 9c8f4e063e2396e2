"""
Routing bridge tests: ingress rule, dispatch and fallback.
"""

from pathlib import Path
import re
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from scratchpad.config import build_settings  # noqa: E402
from scratchpad.errors import ConfigError  # noqa: E402
from scratchpad.fragments import load_fragments  # noqa: E402
from scratchpad.routing import (  # noqa: E402
    bridge_endpoints,
    fallback_page,
    reap_bridges,
    render_ingress_config,
    resolve_dispatch,
    write_ingress_config,
)
from scratchpad.state import ScratchEnvironment, ScratchState, save_metadata  # noqa: E402

from conftest import base_raw_config  # noqa: E402


@pytest.fixture
def path_settings(tmp_path, templates_dir):
    raw = base_raw_config(tmp_path)
    raw["ingress"]["mode"] = "path"
    return build_settings(raw, tmp_path)


def _scratch(settings, identity, state=ScratchState.RUNNING, sockets=("api", "logs")):
    root = settings.server.releases_dir / identity
    (root / "sockets").mkdir(parents=True)
    for name in sockets:
        (root / "sockets" / f"{name}.sock").touch()
    save_metadata(ScratchEnvironment(identity, identity, root, state))
    return root


class TestBridgeEndpoints:
    def test_endpoints(self, settings):
        endpoints = bridge_endpoints(settings.fragments)

        assert [(e.service, e.socket, e.port) for e in endpoints] == [
            ("api", "api", 3000),
            ("logs", "logs", 9001),
        ]

    def test_duplicate_socket(self):
        fragments = load_fragments({
            "api": {"image": "a", "sockets": {"web": 3000}},
            "admin": {"image": "b", "sockets": {"web": 4000}},
        })

        with pytest.raises(ConfigError, match="web"):
            bridge_endpoints(fragments)


class TestReapBridges:
    def test_only_sockets_removed(self, tmp_path):
        sockets = tmp_path / "sockets"
        sockets.mkdir()
        (sockets / "api.sock").touch()
        (sockets / "notes.txt").touch()

        removed = reap_bridges(tmp_path)

        assert removed == [sockets / "api.sock"]
        assert (sockets / "notes.txt").exists()

    def test_no_sockets_dir(self, tmp_path):
        assert reap_bridges(tmp_path) == []


class TestSubdomainDispatch:
    def test_control_label_bypasses_scratch_routing(self, settings):
        dispatch = resolve_dispatch("controller.scratches.test", "/scratches", settings.server.releases_dir, settings)

        assert dispatch.kind == "control"
        assert dispatch.upstream == "http://controller:3456"
        assert dispatch.path == "/scratches"

    def test_running_scratch(self, settings):
        _scratch(settings, "featurex")

        dispatch = resolve_dispatch("featurex.scratches.test:443", "/api/v1", settings.server.releases_dir, settings)

        assert dispatch.kind == "scratch"
        assert dispatch.identity == "featurex"
        assert dispatch.service == "api"
        assert dispatch.path == "/api/v1"
        assert dispatch.upstream == "unix:/srv/releases/featurex/sockets/api.sock"

    def test_route_prefix(self, settings):
        _scratch(settings, "featurex")

        dispatch = resolve_dispatch("featurex.scratches.test", "/logs/stream", settings.server.releases_dir, settings)

        assert dispatch.service == "logs"
        assert dispatch.path == "/stream"
        assert dispatch.upstream == "unix:/srv/releases/featurex/sockets/logs.sock"

    def test_absent_scratch_falls_back(self, settings):
        dispatch = resolve_dispatch("ghost.scratches.test", "/", settings.server.releases_dir, settings)

        assert dispatch.kind == "fallback"
        assert dispatch.identity == "ghost"
        assert "ghost" in dispatch.reason

    def test_stopped_scratch_falls_back(self, settings):
        _scratch(settings, "featurex", state=ScratchState.STOPPED)

        dispatch = resolve_dispatch("featurex.scratches.test", "/", settings.server.releases_dir, settings)

        assert dispatch.kind == "fallback"
        assert "stopped" in dispatch.reason

    def test_missing_socket_falls_back(self, settings):
        _scratch(settings, "featurex", sockets=("logs",))

        dispatch = resolve_dispatch("featurex.scratches.test", "/", settings.server.releases_dir, settings)

        assert dispatch.kind == "fallback"
        assert "api.sock" in dispatch.reason

    def test_nested_subdomain_falls_back(self, settings):
        _scratch(settings, "featurex")

        dispatch = resolve_dispatch("a.featurex.scratches.test", "/", settings.server.releases_dir, settings)

        assert dispatch.kind == "fallback"
        assert dispatch.identity is None

    def test_foreign_host(self, settings):
        dispatch = resolve_dispatch("example.com", "/", settings.server.releases_dir, settings)

        assert dispatch.kind == "fallback"
        assert dispatch.identity is None


class TestPathDispatch:
    def test_control_prefix(self, path_settings):
        dispatch = resolve_dispatch("scratches.test", "/_controller/scratches", path_settings.server.releases_dir,
                                    path_settings)

        assert dispatch.kind == "control"
        assert dispatch.path == "/scratches"

    def test_running_scratch(self, path_settings):
        _scratch(path_settings, "featurex")

        dispatch = resolve_dispatch("scratches.test", "/featurex/logs", path_settings.server.releases_dir,
                                    path_settings)

        assert dispatch.kind == "scratch"
        assert dispatch.service == "logs"
        assert dispatch.path == "/"

    def test_absent_scratch_falls_back(self, path_settings):
        dispatch = resolve_dispatch("scratches.test", "/ghost/", path_settings.server.releases_dir, path_settings)

        assert dispatch.kind == "fallback"
        assert dispatch.identity == "ghost"


class TestIngressConfig:
    def test_subdomain_rule(self, settings):
        config = render_ingress_config(settings)

        assert "server_name controller.scratches.test;" in config
        assert r"server_name ~^(?<scratch>[a-z0-9_-]+)\.scratches\.test$;" in config
        assert "proxy_pass http://unix:/srv/releases/$scratch/sockets/api.sock:$scratch_uri$is_args$args;" in config
        assert "proxy_pass http://unix:/srv/releases/$scratch/sockets/logs.sock:$scratch_uri$is_args$args;" in config
        assert "error_page 502 503 504 /__scratchpad_unavailable.html;" in config
        assert f"alias {settings.ingress.fallback_page};" in config

    def test_path_rule(self, path_settings):
        config = render_ingress_config(path_settings)

        assert "location ^~ /_controller/ {" in config
        assert "location ~ ^/(?<scratch>[a-z0-9_-]+)/logs(?<rest>/.*)?$ {" in config
        assert "location ~ ^/(?<scratch>[a-z0-9_-]+)(?<rest>/.*)?$ {" in config

    def test_control_prefix_wins_over_scratch_regex(self, path_settings):
        config = render_ingress_config(path_settings)

        # nginx checks regex locations before plain prefixes unless ^~ is set
        regexes = [
            re.compile(pattern.replace("(?<", "(?P<"))
            for pattern in re.findall(r"location ~ (\S+) \{", config)
        ]
        assert any(regex.match("/_controller/scratches") for regex in regexes)
        control = re.search(r"location (\S*)\s*/_controller/ \{", config)
        assert control.group(1) == "^~"

    def test_rule_never_names_a_scratch(self, settings):
        _scratch(settings, "featurex")

        assert "featurex" not in render_ingress_config(settings)

    def test_write(self, settings):
        written = write_ingress_config(settings)

        assert [p.name for p in written] == ["scratches.conf", "proxy_params_scratchpad", "unavailable.html"]
        assert all(p.exists() for p in written)
        assert "proxy_http_version 1.1;" in written[1].read_text()


class TestFallbackPage:
    def test_escapes_identity(self):
        page = fallback_page("<script>")

        assert "&lt;script&gt;" in page
        assert "<script>" not in page

    def test_generic(self):
        assert "This scratch environment is not running" in fallback_page()

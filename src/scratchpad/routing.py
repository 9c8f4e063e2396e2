#!/usr/bin/env python3
"""
Routing bridge: socket endpoints per scratch + one static ingress rule.

Every running scratch exposes its routable services as unix sockets under
``<root>/sockets/<name>.sock``, created by the scratch's own ``sockets``
compose service. The ingress never learns about individual scratches: one
rule derives the identity from the request and proxies to
``unix:<sockets_root>/<identity>/sockets/<name>.sock``. A missing socket
makes the upstream fail and nginx answers with the fallback page, so adding
or removing a scratch never requires a proxy reload.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from jinja2 import Environment, select_autoescape

from .config_constants import LOGS_SERVICE, SOCKET_SUFFIX, SOCKETS_DIR, socket_filename
from .errors import ConfigError, RoutingUnavailable
from .fragments import ServiceFragment, per_scratch
from .identity import is_valid_identity
from .state import load_metadata

logger = logging.getLogger(__name__)

FALLBACK_LOCATION = "/__scratchpad_unavailable.html"
ROUTABLE_STATES = ("running", "degraded")


@dataclass(frozen=True)
class BridgeEndpoint:
    service: str
    socket: str
    port: int

    @property
    def filename(self) -> str:
        return socket_filename(self.socket)


@dataclass(frozen=True)
class Dispatch:
    """Where the ingress sends one request."""

    kind: str  # control | scratch | fallback
    path: str
    identity: Optional[str] = None
    service: Optional[str] = None
    upstream: Optional[str] = None
    reason: Optional[str] = None


def bridge_endpoints(fragments: Iterable[ServiceFragment], logs_port: int = 9001) -> list[BridgeEndpoint]:
    """
    Endpoints bridged for one scratch: every per-scratch fragment socket,
    then the logs viewer.
    """
    endpoints = []
    for fragment in per_scratch(fragments):
        for socket_name, port in fragment.sockets.items():
            endpoints.append(BridgeEndpoint(fragment.name, socket_name, port))
    endpoints.append(BridgeEndpoint(LOGS_SERVICE, LOGS_SERVICE, logs_port))

    seen = set()
    for endpoint in endpoints:
        if endpoint.socket in seen:
            raise ConfigError(f"Socket '{endpoint.socket}' is exposed by more than one service")
        seen.add(endpoint.socket)
    return endpoints


def build_sockets_command(endpoints: Iterable[BridgeEndpoint]) -> str:
    """
    Shell script run by the sockets service: one socat listener per endpoint.
    """
    lines = []
    for endpoint in endpoints:
        sock = shlex.quote(f"/{SOCKETS_DIR}/{endpoint.filename}")
        lines.append(f"rm -f {sock}")
        lines.append(
            f"socat UNIX-LISTEN:{sock},reuseaddr,fork TCP:{endpoint.service}:{endpoint.port} &"
        )
    lines.append(f"sleep 3; chmod 666 /{SOCKETS_DIR}/*{SOCKET_SUFFIX}")
    lines.append("wait")
    return "\n".join(lines)


def reap_bridges(root: Path) -> list[Path]:
    """Remove left-over socket files of a scratch."""
    sockets_dir = root / SOCKETS_DIR
    if not sockets_dir.is_dir():
        return []

    removed = []
    for path in sorted(sockets_dir.glob(f"*{SOCKET_SUFFIX}")):
        try:
            path.unlink()
            removed.append(path)
        except FileNotFoundError:
            continue
    if removed:
        logger.info(f"Reaped {len(removed)} bridge socket(s) in {sockets_dir}")
    return removed


INGRESS_TEMPLATE = """\
# Scratchpad ingress rule
# Auto-generated - do not edit manually. Scratches come and go without reload.

{%- macro scratch_locations(identity_var) %}
    error_page 502 503 504 {{ fallback_location }};
    location = {{ fallback_location }} {
        internal;
        alias {{ fallback_page }};
    }
{%- for prefix, service in prefixes %}
    location ~ ^{{ path_head }}{{ prefix }}(?<rest>/.*)?$ {
        set $scratch_uri $rest;
        if ($scratch_uri = "") { set $scratch_uri /; }
        proxy_pass http://unix:{{ sockets_root }}/{{ identity_var }}/{{ sockets_dir }}/{{ service }}{{ suffix }}:$scratch_uri$is_args$args;
        include /etc/nginx/proxy_params_scratchpad;
    }
{%- endfor %}
    location ~ ^{{ path_head }}(?<rest>/.*)?$ {
        set $scratch_uri $rest;
        if ($scratch_uri = "") { set $scratch_uri /; }
        proxy_pass http://unix:{{ sockets_root }}/{{ identity_var }}/{{ sockets_dir }}/{{ default_service }}{{ suffix }}:$scratch_uri$is_args$args;
        include /etc/nginx/proxy_params_scratchpad;
    }
{%- endmacro %}
{% if mode == "subdomain" %}
server {
    listen {{ listen }};
    server_name {{ control_label }}.{{ domain }};

    location / {
        proxy_pass {{ control_upstream }};
        include /etc/nginx/proxy_params_scratchpad;
    }
}

server {
    listen {{ listen }};
    server_name ~^(?<scratch>[a-z0-9_-]+)\\.{{ domain_re }}$;
{{ scratch_locations("$scratch") }}
}
{% else %}
server {
    listen {{ listen }};
    server_name {{ domain }};

    location ^~ {{ control_prefix }}/ {
        proxy_pass {{ control_upstream }}/;
        include /etc/nginx/proxy_params_scratchpad;
    }
{{ scratch_locations("$scratch") }}
}
{% endif %}
"""

PROXY_PARAMS = """\
proxy_http_version 1.1;
proxy_set_header Upgrade $http_upgrade;
proxy_set_header Connection 'upgrade';
proxy_set_header Host $host;
proxy_set_header X-Real-IP $remote_addr;
proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
proxy_set_header X-Forwarded-Proto $scheme;
proxy_cache_bypass $http_upgrade;
"""


def render_ingress_config(settings) -> str:
    """Render the single static nginx rule for every scratch."""
    ingress = settings.ingress
    # Longest prefix first so /logs/raw never loses to /logs
    prefixes = sorted(ingress.route_prefixes.items(), key=lambda item: (-len(item[0]), item[0]))
    path_head = "/(?<scratch>[a-z0-9_-]+)" if ingress.mode == "path" else ""

    env = Environment(autoescape=False, keep_trailing_newline=True)
    rendered = env.from_string(INGRESS_TEMPLATE).render(
        mode=ingress.mode,
        listen=ingress.listen,
        domain=ingress.domain,
        domain_re=ingress.domain.replace(".", "\\."),
        control_label=ingress.control_label,
        control_prefix=ingress.control_prefix,
        control_upstream=ingress.control_upstream.rstrip("/"),
        default_service=ingress.default_service,
        prefixes=prefixes,
        path_head=path_head,
        sockets_root=str(ingress.sockets_root).rstrip("/"),
        sockets_dir=SOCKETS_DIR,
        suffix=SOCKET_SUFFIX,
        fallback_location=FALLBACK_LOCATION,
        fallback_page=ingress.fallback_page,
    )
    return rendered


FALLBACK_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Environment unavailable</title>
</head>
<body>
  <h1>Environment unavailable</h1>
{%- if identity %}
  <p>The scratch environment <code>{{ identity }}</code> is not running right now.</p>
{%- else %}
  <p>This scratch environment is not running right now.</p>
{%- endif %}
  <p>It may be starting, stopped or deleted. Try again in a moment.</p>
</body>
</html>
"""


def fallback_page(identity: Optional[str] = None) -> str:
    env = Environment(autoescape=select_autoescape(default_for_string=True), keep_trailing_newline=True)
    return env.from_string(FALLBACK_TEMPLATE).render(identity=identity)


def write_ingress_config(settings) -> list[Path]:
    """
    Write the ingress rule, its proxy params and the fallback page.

    Done once at install time; scratch changes never rewrite these files.
    """
    config_path = settings.ingress.config_path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(render_ingress_config(settings), encoding='utf-8')

    params_path = config_path.parent / "proxy_params_scratchpad"
    params_path.write_text(PROXY_PARAMS, encoding='utf-8')

    page_path = settings.ingress.fallback_page
    page_path.parent.mkdir(parents=True, exist_ok=True)
    page_path.write_text(fallback_page(), encoding='utf-8')

    logger.info(f"Wrote ingress config: {config_path}")
    return [config_path, params_path, page_path]


def _split_service(path: str, route_prefixes: dict[str, str], default_service: str) -> tuple[str, str]:
    for prefix, service in sorted(route_prefixes.items(), key=lambda item: -len(item[0])):
        if path == prefix or path.startswith(prefix + "/"):
            return service, path[len(prefix):] or "/"
    return default_service, path or "/"


def _bind(identity: str, service: str, releases_dir: Path, settings) -> str:
    root = releases_dir / identity
    if not root.is_dir():
        raise RoutingUnavailable(f"No scratch '{identity}'")

    metadata = load_metadata(root)
    state = metadata.state.value if metadata else None
    if state not in ROUTABLE_STATES:
        raise RoutingUnavailable(f"Scratch '{identity}' is {state or 'not materialized'}")

    sock = root / SOCKETS_DIR / socket_filename(service)
    if not sock.exists():
        raise RoutingUnavailable(f"Endpoint {sock} does not exist")

    return f"unix:{Path(settings.ingress.sockets_root) / identity / SOCKETS_DIR / socket_filename(service)}"


def resolve_dispatch(host: str, path: str, releases_dir: Path, settings) -> Dispatch:
    """
    Apply the ingress rule to one request.

    Never raises RoutingUnavailable: an unresolvable scratch endpoint
    becomes the fallback dispatch.
    """
    ingress = settings.ingress
    host = (host or "").split(":", 1)[0].lower().rstrip(".")
    path = path or "/"
    if not path.startswith("/"):
        path = "/" + path

    if ingress.mode == "subdomain":
        if host == f"{ingress.control_label}.{ingress.domain}":
            return Dispatch("control", path, upstream=ingress.control_upstream)
        suffix = f".{ingress.domain}"
        # server_name only matches a single label in front of the domain
        label = host[:-len(suffix)] if host.endswith(suffix) else ""
        identity = label if "." not in label else None
        rest = path
    else:
        if path == ingress.control_prefix or path.startswith(ingress.control_prefix + "/"):
            return Dispatch("control", path[len(ingress.control_prefix):] or "/",
                            upstream=ingress.control_upstream)
        segment, _, remainder = path[1:].partition("/")
        identity = segment or None
        rest = "/" + remainder

    if not is_valid_identity(identity):
        return Dispatch("fallback", path, reason="no scratch identity in request")

    service, forwarded = _split_service(rest, ingress.route_prefixes, ingress.default_service)
    try:
        upstream = _bind(identity, service, releases_dir, settings)
    except RoutingUnavailable as e:
        logger.debug(f"Dispatch fallback for {identity}/{service}: {e}")
        return Dispatch("fallback", path, identity=identity, service=service, reason=str(e))

    return Dispatch("scratch", forwarded, identity=identity, service=service, upstream=upstream)

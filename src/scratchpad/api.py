"""
Control API for the lifecycle controller.

Served behind the ingress control label / prefix. Lifecycle endpoints run
synchronously by default (FastAPI executes plain ``def`` handlers in its
threadpool); ``?wait=false`` queues the operation on the controller's
worker pool and answers 202 right away.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from . import __version__
from .errors import (
    Busy,
    ConfigError,
    Degraded,
    InvalidIdentity,
    InvalidPath,
    NotFound,
    ScratchError,
    ScriptFailure,
)
from .identity import resolve_identity
from .lifecycle import LifecycleController, LifecycleResult
from .routing import fallback_page, resolve_dispatch
from .webhooks import submit_payload

logger = logging.getLogger(__name__)

STATUS_CODES = (
    (InvalidIdentity, 400),
    (InvalidPath, 400),
    (ConfigError, 400),
    (NotFound, 404),
    (Busy, 409),
    (ScriptFailure, 502),
    (Degraded, 503),
)

OPERATION_PATHS = {
    "start": "start",
    "stop": "stop",
    "restart": "restart",
    "update": "update",
    "rebuild": "rebuild",
    "wipe-database": "wipe_database",
}


class CreateRequest(BaseModel):
    branch: str
    name: Optional[str] = None
    profile: Optional[str] = None


class EnvWriteRequest(BaseModel):
    files: dict[str, str]


class EnvResetRequest(BaseModel):
    files: Optional[list[str]] = None


def status_code_for(error: ScratchError) -> int:
    for error_type, code in STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return 500


def _result(result: LifecycleResult) -> dict:
    result.raise_for_degraded()
    return result.to_summary()


def _accepted(identity: str, operation: str) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={"identity": identity, "operation": operation, "status": "accepted"},
    )


def create_app(controller: LifecycleController) -> FastAPI:
    """Build the control API around one controller instance."""
    app = FastAPI(title="scratchpad", version=__version__)
    app.state.controller = controller

    @app.exception_handler(ScratchError)
    async def scratch_error_handler(request: Request, exc: ScratchError) -> JSONResponse:
        code = status_code_for(exc)
        body: dict[str, Any] = {"error": exc.kind, "detail": str(exc)}
        if isinstance(exc, Degraded):
            body["failures"] = exc.failures
        if isinstance(exc, ScriptFailure):
            body["exit_code"] = exc.exit_code
        logger.warning(f"{request.method} {request.url.path} -> {code}: {exc}")
        return JSONResponse(status_code=code, content=body)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/scratches")
    def list_scratches() -> list[dict]:
        return [entry.to_summary() for entry in controller.list()]

    @app.post("/scratches")
    def create_scratch(body: CreateRequest, wait: bool = True):
        if not wait:
            identity = resolve_identity(body.name or body.branch)
            controller.submit("create", body.branch, name=body.name, profile=body.profile)
            return _accepted(identity, "create")
        return _result(controller.create(body.branch, name=body.name, profile=body.profile))

    @app.get("/scratches/{identity}")
    def get_scratch(identity: str) -> dict:
        return controller.status(identity).to_summary()

    @app.delete("/scratches/{identity}")
    def delete_scratch(identity: str, wait: bool = True):
        if not wait:
            controller.get(identity)
            controller.submit("delete", identity)
            return _accepted(identity, "delete")
        return controller.delete(identity).to_summary()

    @app.post("/scratches/{identity}/{operation}")
    def run_operation(identity: str, operation: str, wait: bool = True):
        method = OPERATION_PATHS.get(operation)
        if method is None:
            raise NotFound(f"Unknown operation: {operation}")
        if not wait:
            controller.get(identity)
            controller.submit(method, identity)
            return _accepted(identity, method)
        return _result(getattr(controller, method)(identity))

    @app.get("/scratches/{identity}/env")
    def read_env(identity: str, structured: bool = False) -> dict:
        return controller.read_env(identity, structured=structured)

    @app.put("/scratches/{identity}/env")
    def write_env(identity: str, body: EnvWriteRequest) -> dict:
        return _result(controller.write_env(identity, body.files))

    @app.post("/scratches/{identity}/env/reset")
    def reset_env(identity: str, body: Optional[EnvResetRequest] = None) -> dict:
        return _result(controller.reset_env(identity, body.files if body else None))

    @app.get("/scratches/{identity}/logs")
    def logs(identity: str, service: Optional[str] = None, tail: int = 100) -> dict:
        return {"identity": identity, "logs": controller.logs(identity, service, tail)}

    @app.post("/webhook")
    def webhook(payload: dict):
        identity, operation, _ = submit_payload(controller, payload)
        return _accepted(identity, operation)

    @app.get("/route")
    def route(host: str, path: str = "/") -> dict:
        settings = controller.settings
        return resolve_dispatch(host, path, settings.server.releases_dir, settings).__dict__

    @app.get("/unavailable", response_class=HTMLResponse)
    def unavailable(identity: Optional[str] = None) -> str:
        return fallback_page(identity)

    @app.get("/shared")
    def shared_status() -> list[dict]:
        states = controller.shared.status() or []
        return [{"service": s.name, "state": s.state, "health": s.health or None} for s in states]

    @app.post("/shared/{action}")
    def shared_action(action: str) -> dict:
        if action == "start":
            failures = controller.shared.ensure_running()
        elif action == "restart":
            failures = controller.shared.restart()
        elif action == "stop":
            controller.shared.stop()
            failures = {}
        else:
            raise NotFound(f"Unknown shared services action: {action}")
        if failures:
            raise Degraded("shared", [f"{name}: {status}" for name, status in failures.items()])
        return {"action": action, "status": "ok"}

    return app

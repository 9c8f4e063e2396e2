"""
Webhook intake: source-control events -> lifecycle operations.

A push (or pull request) for a branch creates its scratch, which is an
idempotent update when the scratch already exists. A push reporting the
branch as deleted deletes the scratch.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from typing import Optional

from .errors import InvalidIdentity
from .identity import branch_from_ref, resolve_identity

logger = logging.getLogger(__name__)


def branch_from_payload(payload: dict) -> Optional[str]:
    """Branch named by a push (``ref``) or pull request (``pull_request.head.ref``) payload."""
    ref = payload.get("ref")
    if ref:
        return branch_from_ref(ref)
    head = (payload.get("pull_request") or {}).get("head") or {}
    if head.get("ref"):
        return branch_from_ref(head["ref"])
    return None


def handle_branch_ref(controller, ref: str):
    """Create (or update) the scratch for a git ref, synchronously."""
    branch = branch_from_ref(ref)
    logger.info(f"Webhook triggered for branch: {branch}")
    return controller.create(branch)


def submit_payload(controller, payload: dict) -> tuple[str, str, Future]:
    """
    Queue the lifecycle operation a webhook payload asks for.

    Returns:
        (identity, operation, future)

    Raises:
        InvalidIdentity: if the payload names no usable branch
    """
    branch = branch_from_payload(payload)
    if not branch:
        raise InvalidIdentity("No branch found in webhook payload")
    identity = resolve_identity(branch)

    if payload.get("deleted"):
        logger.info(f"Webhook: branch {branch} deleted, removing scratch {identity}")
        return identity, "delete", controller.submit("delete", identity)

    logger.info(f"Webhook: branch {branch} pushed, creating/updating scratch {identity}")
    return identity, "create", controller.submit("create", branch)

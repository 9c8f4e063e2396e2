"""
Identity resolution: branch name -> canonical, directory-safe identity.

The identity is lower-cased and restricted to ``[a-z0-9_-]``; every other
character is stripped, not replaced. Distinct branches can collapse to the
same identity (``feature/a.b`` and ``featureab``); callers treat an existing
identity as "already materialized, update it".
"""

from __future__ import annotations

import re

from .errors import InvalidIdentity

DISALLOWED_CHARS = re.compile(r"[^a-z0-9_-]")
BRANCH_REF_PREFIXES = ("refs/heads/", "heads/")


def sanitize_branch(branch: str | None) -> str:
    """Lower-case the branch and strip everything outside the allow-list."""
    return DISALLOWED_CHARS.sub("", (branch or "").lower())


def resolve_identity(branch: str | None) -> str:
    """
    Resolve a branch name to its identity.

    Raises:
        InvalidIdentity: if nothing survives sanitization
    """
    identity = sanitize_branch(branch)
    if not identity:
        raise InvalidIdentity(f"Branch name {branch!r} yields an empty identity")
    return identity


def is_valid_identity(value: str | None) -> bool:
    """True if value is non-empty and already canonical."""
    return bool(value) and sanitize_branch(value) == value


def branch_from_ref(ref: str) -> str:
    """Strip a git ref prefix (``refs/heads/feature/x`` -> ``feature/x``)."""
    ref = (ref or "").strip()
    for prefix in BRANCH_REF_PREFIXES:
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref

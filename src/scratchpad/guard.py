"""
Per-identity operation guard.

Acquisition never blocks on another operation: a second operation on an
identity that already has one in flight fails fast with Busy. Distinct
identities never contend.

Registry reads go through the same guard. A read is refused with Busy while
a mutation is in flight; a mutation waits only for reads already in
progress, which are short.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import Busy

logger = logging.getLogger(__name__)


class OperationGuard:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._held: dict[str, str] = {}
        self._readers: dict[str, int] = {}

    def acquire(self, identity: str, operation: str) -> None:
        with self._cond:
            current = self._held.get(identity)
            if current is not None:
                logger.warning(f"[{identity}] {operation} rejected: {current} in progress")
                raise Busy(identity, current)
            self._held[identity] = operation
            while self._readers.get(identity):
                self._cond.wait()

    def release(self, identity: str) -> None:
        with self._cond:
            self._held.pop(identity, None)
            self._cond.notify_all()

    @contextmanager
    def hold(self, identity: str, operation: str) -> Iterator[None]:
        self.acquire(identity, operation)
        try:
            yield
        finally:
            self.release(identity)

    @contextmanager
    def reading(self, identity: str) -> Iterator[None]:
        with self._cond:
            current = self._held.get(identity)
            if current is not None:
                raise Busy(identity, current)
            self._readers[identity] = self._readers.get(identity, 0) + 1
        try:
            yield
        finally:
            with self._cond:
                remaining = self._readers[identity] - 1
                if remaining:
                    self._readers[identity] = remaining
                else:
                    del self._readers[identity]
                self._cond.notify_all()

    def current(self, identity: str) -> Optional[str]:
        with self._cond:
            return self._held.get(identity)

    def active(self) -> dict[str, str]:
        with self._cond:
            return dict(self._held)

"""Per-owner mutual exclusion for reconciliation runs and rollbacks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from salesrecon.config import Settings
from salesrecon.errors import ContentionError
from salesrecon.models.reconciliation_lock import ReconciliationLock
from salesrecon.timeutils import utcnow

logger = logging.getLogger(__name__)

CONTENTION_MESSAGE = "Reconciliation already in progress for this owner"


class LockCoordinator(Protocol):
    def try_acquire(self, owner_id: str) -> bool: ...

    def release(self, owner_id: str) -> None: ...

    def hold(self, owner_id: str): ...


class _HoldMixin:
    @contextmanager
    def hold(self, owner_id: str) -> Iterator[None]:
        """Hold the owner's lock for the body of a ``with`` block.

        Never waits: a held lock raises ``ContentionError`` immediately.
        """

        if not self.try_acquire(owner_id):
            logger.info("lock.contention owner_id=%s", owner_id)
            raise ContentionError(CONTENTION_MESSAGE, details={"owner_id": owner_id})
        try:
            yield
        finally:
            self.release(owner_id)


class InProcessLockCoordinator(_HoldMixin):
    """Lock table for a single worker process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[str] = set()

    def try_acquire(self, owner_id: str) -> bool:
        with self._guard:
            if owner_id in self._held:
                return False
            self._held.add(owner_id)
            return True

    def release(self, owner_id: str) -> None:
        with self._guard:
            self._held.discard(owner_id)

    def is_held(self, owner_id: str) -> bool:
        with self._guard:
            return owner_id in self._held


class DatabaseLockCoordinator(_HoldMixin):
    """Lock rows shared by every process that talks to the same database.

    A row in ``reconciliation_locks`` marks the owner as busy. Rows older than the
    TTL belong to crashed workers and are reclaimed on the next acquire.
    """

    def __init__(self, session_factory: Callable[[], Session], *, ttl_seconds: int = 900) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)

    def try_acquire(self, owner_id: str) -> bool:
        now = utcnow()
        with self._session_factory() as db:
            db.execute(
                delete(ReconciliationLock).where(
                    ReconciliationLock.owner_id == owner_id,
                    ReconciliationLock.expires_at < now,
                )
            )
            db.add(ReconciliationLock(owner_id=owner_id, acquired_at=now, expires_at=now + self._ttl))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def release(self, owner_id: str) -> None:
        with self._session_factory() as db:
            db.execute(delete(ReconciliationLock).where(ReconciliationLock.owner_id == owner_id))
            db.commit()


def build_lock_coordinator(
    settings: Settings,
    session_factory: Callable[[], Session] | None = None,
) -> InProcessLockCoordinator | DatabaseLockCoordinator:
    if settings.lock_backend == "database":
        if session_factory is None:
            raise ValueError("database lock backend requires a session factory")
        return DatabaseLockCoordinator(session_factory, ttl_seconds=settings.lock_ttl_seconds)
    return InProcessLockCoordinator()

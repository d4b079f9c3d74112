"""Transaction boundaries for reconciliation writes."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from salesrecon.errors import PartialRecordError, PersistenceError, ReconciliationError

logger = logging.getLogger(__name__)


class TransactionCoordinator:
    """One outer transaction per batch, one SAVEPOINT per action.

    Failures inside a savepoint only discard that action. Failures of the outer
    transaction discard the whole batch and surface as ``PersistenceError``.
    """

    @contextmanager
    def unit_of_work(self, db: Session, *, dry_run: bool = False) -> Iterator[Session]:
        try:
            yield db
            if dry_run:
                db.rollback()
            else:
                db.commit()
        except ReconciliationError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("transaction.unit_of_work_failed")
            raise PersistenceError("Reconciliation transaction failed and was rolled back") from exc
        except Exception:
            db.rollback()
            raise

    @contextmanager
    def savepoint(self, db: Session) -> Iterator[Session]:
        """Run one action in a nested transaction.

        Record-level rejections (``IntegrityError``, ``DataError``) become
        ``PartialRecordError`` so the caller can count the action as failed and continue.
        Timeouts and connection failures propagate to ``unit_of_work``.
        """

        nested = db.begin_nested()
        try:
            yield db
            db.flush()
        except PartialRecordError:
            nested.rollback()
            raise
        except (IntegrityError, DataError) as exc:
            nested.rollback()
            raise PartialRecordError(f"Database rejected reconciliation action: {exc.__class__.__name__}") from exc
        except Exception:
            nested.rollback()
            raise
        else:
            nested.commit()

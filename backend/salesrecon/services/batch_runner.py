"""Repeat execution batches for one owner and persist run progress."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy.orm import Session

from salesrecon.config import Settings, get_settings
from salesrecon.errors import ReconciliationError, ValidationError
from salesrecon.models.reconciliation_run import ReconciliationRun
from salesrecon.schemas.execution import BatchRunResult, ExecutionSummary
from salesrecon.services.execution import ExecutionEngine, validate_batch_size, validate_mode
from salesrecon.timeutils import utcnow

logger = logging.getLogger(__name__)

STOP_MAX_BATCHES = "max_batches_reached"
STOP_EXHAUSTED = "no_more_records"
STOP_DRY_RUN = "dry_run_single_batch"
STOP_ERROR = "error"


class BatchRunner:
    """Drives the execution engine batch by batch.

    The rate limit is charged once, on the first batch. Progress counters are written
    to a ``ReconciliationRun`` row after every batch so other processes can poll it.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._settings = settings or get_settings()
        self._sleep = sleep

    def validate(self, mode: str, batch_size: int, max_batches: int, delay_seconds: float) -> None:
        validate_mode(mode)
        validate_batch_size(batch_size)
        limit = self._settings.max_batches_limit
        if isinstance(max_batches, bool) or not isinstance(max_batches, int) or not 1 <= max_batches <= limit:
            raise ValidationError(f"Max batches must be between 1 and {limit}")
        max_delay = self._settings.max_batch_delay_seconds
        if not 0 <= delay_seconds <= max_delay:
            raise ValidationError(f"Delay between batches must be between 0 and {max_delay:g} seconds")

    def run(
        self,
        db: Session,
        owner_id: str,
        mode: str,
        batch_size: int,
        *,
        max_batches: int,
        delay_seconds: float | None = None,
        origin: str | None = None,
    ) -> BatchRunResult:
        delay = self._settings.default_batch_delay_seconds if delay_seconds is None else delay_seconds
        self.validate(mode, batch_size, max_batches, delay)

        run = ReconciliationRun(
            owner_id=owner_id,
            mode=mode,
            batch_size=batch_size,
            max_batches=max_batches,
            status="running",
            started_at=utcnow(),
        )
        db.add(run)
        db.commit()
        run_id = run.id
        logger.info(
            "reconcile.run_started run_id=%s owner_id=%s mode=%s batch_size=%d max_batches=%d",
            run_id,
            owner_id,
            mode,
            batch_size,
            max_batches,
        )

        results: list[ExecutionSummary] = []
        stopped_reason = STOP_MAX_BATCHES
        started = time.perf_counter()
        for batch_number in range(1, max_batches + 1):
            try:
                summary = self._engine.execute(
                    db,
                    owner_id,
                    mode,
                    batch_size,
                    origin=origin,
                    enforce_rate_limit=batch_number == 1,
                    run_id=run_id,
                )
            except ReconciliationError as exc:
                self._record_failure(db, run_id, exc)
                if not results:
                    raise
                stopped_reason = STOP_ERROR
                break

            results.append(summary)
            self._record_batch(db, run_id, summary)
            if summary.total_processed == 0:
                stopped_reason = STOP_EXHAUSTED
                break
            if mode == "dry_run":
                stopped_reason = STOP_DRY_RUN
                break
            if batch_number < max_batches and delay > 0:
                self._sleep(delay)

        self._finish(db, run_id, failed=stopped_reason == STOP_ERROR)
        result = BatchRunResult(
            success=stopped_reason != STOP_ERROR,
            run_id=run_id,
            batches_executed=len(results),
            total_processed=sum(item.total_processed for item in results),
            total_linked=sum(item.linked for item in results),
            total_deals_created=sum(item.deals_created for item in results),
            total_activities_created=sum(item.activities_created for item in results),
            total_merged=sum(item.merged for item in results),
            total_errors=sum(item.errors for item in results),
            stopped_reason=stopped_reason,
            results=results,
        )
        logger.info(
            "reconcile.run_complete run_id=%s owner_id=%s batches=%d processed=%d errors=%d stopped=%s total_ms=%.2f",
            run_id,
            owner_id,
            result.batches_executed,
            result.total_processed,
            result.total_errors,
            stopped_reason,
            (time.perf_counter() - started) * 1000,
        )
        return result

    @staticmethod
    def _load(db: Session, run_id: int) -> ReconciliationRun:
        run = db.get(ReconciliationRun, run_id)
        if run is None:
            raise ReconciliationError(f"Reconciliation run {run_id} disappeared")
        return run

    def _record_batch(self, db: Session, run_id: int, summary: ExecutionSummary) -> None:
        run = self._load(db, run_id)
        run.batches_executed += 1
        run.total_processed += summary.total_processed
        run.linked += summary.linked
        run.deals_created += summary.deals_created
        run.activities_created += summary.activities_created
        run.merged += summary.merged
        run.errors += summary.errors
        db.commit()

    def _record_failure(self, db: Session, run_id: int, exc: ReconciliationError) -> None:
        logger.warning("reconcile.run_batch_failed run_id=%s code=%s error=%s", run_id, exc.code, exc.message)
        run = self._load(db, run_id)
        run.status = "failed"
        run.last_error = f"{exc.code}: {exc.message}"
        run.finished_at = utcnow()
        db.commit()

    def _finish(self, db: Session, run_id: int, *, failed: bool) -> None:
        run = self._load(db, run_id)
        run.status = "failed" if failed else "completed"
        run.finished_at = utcnow()
        db.commit()

"""Service-level tests for multi-batch reconciliation runs."""

from __future__ import annotations

import unittest
from datetime import date, datetime, timezone

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesrecon.config import Settings
from salesrecon.db.sqlite import enable_sqlite_savepoints
from salesrecon.errors import ContentionError, ValidationError
from salesrecon.models.base import Base
from salesrecon.models.deal import Deal
from salesrecon.models.reconciliation_audit_log import ReconciliationAuditLog
from salesrecon.models.reconciliation_run import ReconciliationRun
from salesrecon.models.sales_activity import SalesActivity
from salesrecon.services.batch_runner import STOP_DRY_RUN, STOP_EXHAUSTED, STOP_MAX_BATCHES
from salesrecon.services.container import build_services
from salesrecon.services.locks import InProcessLockCoordinator

OWNER_ID = "owner-1"


class BatchRunnerTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        enable_sqlite_savepoints(cls.engine)
        cls.SessionLocal = sessionmaker(bind=cls.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        Base.metadata.drop_all(cls.engine)
        cls.engine.dispose()

    def setUp(self) -> None:
        self.db: Session = self.SessionLocal()
        self._reset_tables()
        self.sleeps: list[float] = []
        self.services = build_services(
            Settings(rate_limit_bulk_per_hour=1, rate_limit_standard_per_minute=1),
            locks=InProcessLockCoordinator(),
            sleep=self.sleeps.append,
        )
        self._seed()

    def tearDown(self) -> None:
        self.db.close()

    def _reset_tables(self) -> None:
        self.db.execute(delete(ReconciliationAuditLog))
        self.db.execute(delete(ReconciliationRun))
        self.db.execute(delete(Deal))
        self.db.execute(delete(SalesActivity))
        self.db.commit()

    def _seed(self) -> None:
        self.db.add_all(
            [
                SalesActivity(
                    owner_id=OWNER_ID,
                    client_name="Viewpoint Construction",
                    amount=10000.0,
                    activity_date=date(2024, 1, 15),
                ),
                SalesActivity(
                    owner_id=OWNER_ID,
                    client_name="Acme Corporation",
                    amount=5000.0,
                    activity_date=date(2024, 1, 10),
                ),
                SalesActivity(
                    owner_id=OWNER_ID,
                    client_name="Northwind Traders",
                    amount=1200.0,
                    activity_date=date(2024, 2, 2),
                ),
                Deal(
                    owner_id=OWNER_ID,
                    company="Viewpoint Construction",
                    value=10500.0,
                    stage_changed_at=datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc),
                ),
                Deal(
                    owner_id=OWNER_ID,
                    company="Acme Corp",
                    value=5200.0,
                    stage_changed_at=datetime(2024, 1, 13, 16, 0, tzinfo=timezone.utc),
                ),
                Deal(
                    owner_id=OWNER_ID,
                    company="Globex Industries",
                    value=32000.0,
                    stage_changed_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
                ),
            ]
        )
        self.db.commit()

    def test_runs_batches_until_no_work_remains(self) -> None:
        result = self.services.batch_runner.run(
            self.db,
            OWNER_ID,
            "aggressive",
            1,
            max_batches=10,
            delay_seconds=0.5,
        )

        self.assertTrue(result.success)
        self.assertEqual(result.stopped_reason, STOP_EXHAUSTED)
        self.assertEqual(result.batches_executed, 5)
        self.assertEqual(result.total_processed, 4)
        self.assertEqual(result.total_linked, 2)
        self.assertEqual(result.total_deals_created, 1)
        self.assertEqual(result.total_activities_created, 1)
        self.assertEqual(result.results[-1].total_processed, 0)
        self.assertEqual(self.sleeps, [0.5, 0.5, 0.5, 0.5])

        run = self.db.get(ReconciliationRun, result.run_id)
        self.assertEqual(run.status, "completed")
        self.assertEqual(run.batches_executed, 5)
        self.assertEqual(run.total_processed, 4)
        self.assertEqual(run.linked, 2)
        self.assertIsNotNone(run.finished_at)

        run_ids = set(self.db.scalars(select(ReconciliationAuditLog.run_id)).all())
        self.assertEqual(run_ids, {result.run_id})

    def test_stops_at_max_batches(self) -> None:
        result = self.services.batch_runner.run(
            self.db,
            OWNER_ID,
            "aggressive",
            1,
            max_batches=2,
            delay_seconds=0,
        )

        self.assertEqual(result.stopped_reason, STOP_MAX_BATCHES)
        self.assertEqual(result.batches_executed, 2)
        self.assertEqual(result.total_linked, 2)
        self.assertEqual(self.sleeps, [])

    def test_dry_run_executes_a_single_batch(self) -> None:
        result = self.services.batch_runner.run(
            self.db,
            OWNER_ID,
            "dry_run",
            100,
            max_batches=5,
            delay_seconds=0,
        )

        self.assertEqual(result.stopped_reason, STOP_DRY_RUN)
        self.assertEqual(result.batches_executed, 1)
        self.assertEqual(result.total_processed, 4)
        self.assertTrue(result.results[0].changes_simulated)
        self.assertEqual(self.db.scalars(select(ReconciliationAuditLog)).all(), [])

    def test_invalid_run_parameters_are_rejected_before_any_run_row(self) -> None:
        runner = self.services.batch_runner
        with self.assertRaises(ValidationError) as ctx:
            runner.run(self.db, OWNER_ID, "safe", 10, max_batches=0)
        self.assertEqual(ctx.exception.message, "Max batches must be between 1 and 50")
        with self.assertRaises(ValidationError):
            runner.run(self.db, OWNER_ID, "safe", 10, max_batches=51)
        with self.assertRaises(ValidationError):
            runner.run(self.db, OWNER_ID, "safe", 10, max_batches=2, delay_seconds=61)
        with self.assertRaises(ValidationError):
            runner.run(self.db, OWNER_ID, "safe", 1500, max_batches=2)

        self.assertEqual(self.db.scalars(select(ReconciliationRun)).all(), [])

    def test_first_batch_failure_marks_run_failed_and_propagates(self) -> None:
        self.services.locks.try_acquire(OWNER_ID)
        try:
            with self.assertRaises(ContentionError):
                self.services.batch_runner.run(self.db, OWNER_ID, "safe", 10, max_batches=3, delay_seconds=0)
        finally:
            self.services.locks.release(OWNER_ID)

        run = self.db.scalars(select(ReconciliationRun)).one()
        self.assertEqual(run.status, "failed")
        self.assertIn("run_in_progress", run.last_error)


if __name__ == "__main__":
    unittest.main()

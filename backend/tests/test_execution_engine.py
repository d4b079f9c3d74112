"""Service-level tests for planning and applying reconciliation batches."""

from __future__ import annotations

import unittest
from datetime import date, datetime, timezone

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesrecon.config import Settings
from salesrecon.db.sqlite import enable_sqlite_savepoints
from salesrecon.errors import ContentionError, PartialRecordError, PersistenceError, RateLimitError, ValidationError
from salesrecon.models.base import Base
from salesrecon.models.deal import Deal
from salesrecon.models.reconciliation_audit_log import ReconciliationAuditLog
from salesrecon.models.reconciliation_run import ReconciliationRun
from salesrecon.models.sales_activity import SalesActivity
from salesrecon.services.actions import ENGINE_SOURCE, LinkRecordsAction, build_action_registry
from salesrecon.services.analysis import AnalysisFilters
from salesrecon.services.container import ReconciliationServices, build_services
from salesrecon.services.execution import ExecutionEngine
from salesrecon.services.locks import InProcessLockCoordinator
from salesrecon.services.transactions import TransactionCoordinator

OWNER_ID = "owner-1"


class _RejectingLink(LinkRecordsAction):
    """Auto-link that refuses one activity, as a concurrent edit would."""

    def __init__(self, rejected_activity_id: int) -> None:
        super().__init__("auto_link")
        self.rejected_activity_id = rejected_activity_id

    def execute(self, db, params, context):
        if params["activity_id"] == self.rejected_activity_id:
            raise PartialRecordError("Simulated conflict")
        return super().execute(db, params, context)


class _FailingAfterWriteLink(LinkRecordsAction):
    """Auto-link whose statement fails after the audit entry was written."""

    def __init__(self) -> None:
        super().__init__("auto_link")

    def execute(self, db, params, context):
        super().execute(db, params, context)
        raise IntegrityError("UPDATE deals", {}, Exception("constraint failed"))


class _TimingOutLink(LinkRecordsAction):
    """Auto-link whose statement is cancelled by the server for one activity."""

    def __init__(self, slow_activity_id: int) -> None:
        super().__init__("auto_link")
        self.slow_activity_id = slow_activity_id

    def execute(self, db, params, context):
        outcome = super().execute(db, params, context)
        if params["activity_id"] == self.slow_activity_id:
            raise OperationalError("UPDATE deals", {}, Exception("canceling statement due to statement timeout"))
        return outcome


def _seed_reconcilable(db: Session, owner_id: str = OWNER_ID) -> dict[str, int]:
    """One high and one medium pair, plus one orphan on each side without candidates."""

    records = {
        "viewpoint": SalesActivity(
            owner_id=owner_id,
            client_name="Viewpoint Construction",
            amount=10000.0,
            activity_date=date(2024, 1, 15),
        ),
        "acme": SalesActivity(
            owner_id=owner_id,
            client_name="Acme Corporation",
            amount=5000.0,
            activity_date=date(2024, 1, 10),
        ),
        "northwind": SalesActivity(
            owner_id=owner_id,
            client_name="Northwind Traders",
            amount=1200.0,
            activity_date=date(2024, 2, 2),
        ),
        "viewpoint_deal": Deal(
            owner_id=owner_id,
            company="Viewpoint Construction",
            value=10500.0,
            stage_changed_at=datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc),
        ),
        "acme_deal": Deal(
            owner_id=owner_id,
            company="Acme Corp",
            value=5200.0,
            stage_changed_at=datetime(2024, 1, 13, 16, 0, tzinfo=timezone.utc),
        ),
        "globex_deal": Deal(
            owner_id=owner_id,
            company="Globex Industries",
            value=32000.0,
            stage_changed_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        ),
    }
    db.add_all(records.values())
    db.commit()
    return {key: record.id for key, record in records.items()}


class ExecutionEngineTests(unittest.TestCase):
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
        self.services = self._services()

    def tearDown(self) -> None:
        self.db.close()

    def _reset_tables(self) -> None:
        self.db.execute(delete(ReconciliationAuditLog))
        self.db.execute(delete(ReconciliationRun))
        self.db.execute(delete(Deal))
        self.db.execute(delete(SalesActivity))
        self.db.commit()

    @staticmethod
    def _services(**overrides) -> ReconciliationServices:
        return build_services(Settings(**overrides), locks=InProcessLockCoordinator())

    def _audit_entries(self) -> list[ReconciliationAuditLog]:
        return list(self.db.scalars(select(ReconciliationAuditLog).order_by(ReconciliationAuditLog.id)).all())

    def test_safe_mode_links_only_high_confidence_pairs(self) -> None:
        ids = _seed_reconcilable(self.db)

        summary = self.services.engine.execute(self.db, OWNER_ID, "safe", 100)

        self.assertEqual(summary.total_processed, 1)
        self.assertEqual(summary.linked, 1)
        self.assertEqual(summary.deals_created + summary.activities_created + summary.merged, 0)
        self.assertEqual(summary.success_rate, 100.0)
        self.assertEqual(summary.actual_changes_made, 1)
        self.assertEqual(summary.orphan_activities_found, 3)
        self.assertEqual(summary.orphan_deals_found, 3)

        activity = self.db.get(SalesActivity, ids["viewpoint"])
        deal = self.db.get(Deal, ids["viewpoint_deal"])
        self.assertEqual(activity.deal_id, deal.id)
        self.assertEqual(deal.activity_id, activity.id)
        self.assertIsNone(self.db.get(SalesActivity, ids["acme"]).deal_id)

        entries = self._audit_entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual(summary.audit_log_ids, [entries[0].id])
        self.assertEqual(entries[0].action_type, "auto_link")
        self.assertEqual((entries[0].source_id, entries[0].target_id), (ids["viewpoint"], ids["viewpoint_deal"]))
        self.assertEqual(entries[0].confidence_score, 100.0)
        self.assertIsNone(entries[0].metadata_json["before"]["activity"]["deal_id"])
        self.assertEqual(entries[0].metadata_json["match_details"]["confidence_level"], "high")

    def test_repeated_safe_run_is_idempotent(self) -> None:
        _seed_reconcilable(self.db)
        self.services.engine.execute(self.db, OWNER_ID, "safe", 100)

        again = self.services.engine.execute(self.db, OWNER_ID, "safe", 100)

        self.assertEqual(again.total_processed, 0)
        self.assertEqual(again.success_rate, 100.0)
        self.assertEqual(len(self._audit_entries()), 1)

    def test_aggressive_mode_links_medium_pairs_and_creates_missing_counterparts(self) -> None:
        ids = _seed_reconcilable(self.db)

        summary = self.services.engine.execute(self.db, OWNER_ID, "aggressive", 100)

        self.assertEqual(summary.total_processed, 4)
        self.assertEqual(summary.linked, 2)
        self.assertEqual(summary.high_confidence_links, 1)
        self.assertEqual(summary.medium_confidence_links, 1)
        self.assertEqual(summary.deals_created, 1)
        self.assertEqual(summary.activities_created, 1)
        self.assertEqual(summary.errors, 0)
        self.assertEqual(len(summary.audit_log_ids), 4)

        created_deal = self.db.scalar(select(Deal).where(Deal.company == "Northwind Traders"))
        self.assertEqual(created_deal.source, ENGINE_SOURCE)
        self.assertEqual(created_deal.status, "won")
        self.assertEqual(created_deal.value, 1200.0)
        self.assertEqual(created_deal.stage_changed_at.date(), date(2024, 2, 2))
        self.assertEqual(created_deal.activity_id, ids["northwind"])
        self.assertEqual(self.db.get(SalesActivity, ids["northwind"]).deal_id, created_deal.id)

        created_activity = self.db.scalar(select(SalesActivity).where(SalesActivity.client_name == "Globex Industries"))
        self.assertEqual(created_activity.amount, 32000.0)
        self.assertEqual(created_activity.activity_date, date(2024, 3, 1))
        self.assertEqual(created_activity.deal_id, ids["globex_deal"])

        overview = self.services.analysis.overview(self.db, AnalysisFilters(owner_id=OWNER_ID))
        self.assertEqual(overview.activity_linkage_rate, 100.0)
        self.assertEqual(overview.deal_linkage_rate, 100.0)

        again = self.services.engine.execute(self.db, OWNER_ID, "aggressive", 100)
        self.assertEqual(again.total_processed, 0)

    def test_aggressive_mode_merges_duplicate_activities_into_newest(self) -> None:
        older = SalesActivity(
            owner_id=OWNER_ID,
            client_name="TechCorp Inc",
            amount=7500.0,
            activity_date=date(2024, 1, 15),
            created_at=datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc),
        )
        newer = SalesActivity(
            owner_id=OWNER_ID,
            client_name="techcorp inc",
            amount=7500.0,
            activity_date=date(2024, 1, 15),
            created_at=datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc),
        )
        first_deal = Deal(
            owner_id=OWNER_ID,
            company="TechCorp Inc",
            value=7500.0,
            stage_changed_at=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
        )
        second_deal = Deal(
            owner_id=OWNER_ID,
            company="TechCorp Inc",
            value=7500.0,
            stage_changed_at=datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc),
        )
        self.db.add_all([older, newer, first_deal, second_deal])
        self.db.flush()
        older.deal_id, first_deal.activity_id = first_deal.id, older.id
        newer.deal_id, second_deal.activity_id = second_deal.id, newer.id
        self.db.commit()
        older_id, newer_id, first_deal_id = older.id, newer.id, first_deal.id

        summary = self.services.engine.execute(self.db, OWNER_ID, "aggressive", 100)

        self.assertEqual(summary.total_processed, 1)
        self.assertEqual(summary.merge_groups, 1)
        self.assertEqual(summary.merged, 1)
        merged = self.db.get(SalesActivity, older_id)
        self.assertEqual(merged.record_status, "merged")
        self.assertEqual(merged.merged_into_id, newer_id)
        self.assertIsNotNone(merged.merged_at)
        self.assertEqual(merged.deal_id, first_deal_id)
        self.assertEqual(self.db.get(SalesActivity, newer_id).record_status, "active")

        entry = self._audit_entries()[0]
        self.assertEqual(entry.action_type, "merge_duplicate")
        self.assertEqual(entry.metadata_json["survivor_id"], newer_id)
        self.assertEqual(entry.metadata_json["merged_ids"], [older_id])
        backup_ids = [snapshot["id"] for snapshot in entry.metadata_json["merge_backup"]["sales_activities"]]
        self.assertEqual(sorted(backup_ids), sorted([older_id, newer_id]))

        duplicates = self.services.analysis.duplicates(self.db, AnalysisFilters(owner_id=OWNER_ID))
        self.assertEqual(duplicates.summary.total_duplicate_groups, 0)
        again = self.services.engine.execute(self.db, OWNER_ID, "aggressive", 100)
        self.assertEqual(again.total_processed, 0)

    def test_dry_run_reports_aggressive_plan_without_writing(self) -> None:
        ids = _seed_reconcilable(self.db)

        summary = self.services.engine.execute(self.db, OWNER_ID, "dry_run", 100)

        self.assertTrue(summary.changes_simulated)
        self.assertEqual(summary.actual_changes_made, 0)
        self.assertEqual(summary.total_processed, 4)
        self.assertEqual(summary.linked, 2)
        self.assertEqual(summary.deals_created, 1)
        self.assertEqual(summary.activities_created, 1)
        self.assertEqual(summary.audit_log_ids, [])
        self.assertEqual(self._audit_entries(), [])
        self.assertIsNone(self.db.get(SalesActivity, ids["viewpoint"]).deal_id)
        self.assertEqual(self.db.scalar(select(func.count(Deal.id))), 3)

    def test_batch_size_caps_planned_actions(self) -> None:
        _seed_reconcilable(self.db)

        summary = self.services.engine.execute(self.db, OWNER_ID, "aggressive", 1)

        self.assertEqual(summary.total_processed, 1)
        self.assertEqual(summary.linked, 1)

    def test_invalid_mode_and_batch_size_are_rejected(self) -> None:
        with self.assertRaises(ValidationError) as mode_ctx:
            self.services.engine.execute(self.db, OWNER_ID, "turbo", 100)
        self.assertEqual(mode_ctx.exception.message, "Invalid mode. Must be safe, aggressive, or dry_run")

        for batch_size in (0, 1001, 1500):
            with self.assertRaises(ValidationError) as size_ctx:
                self.services.engine.execute(self.db, OWNER_ID, "safe", batch_size)
            self.assertEqual(size_ctx.exception.message, "Batch size must be between 1 and 1000")

    def test_held_lock_fails_fast_without_writes(self) -> None:
        _seed_reconcilable(self.db)
        self.assertTrue(self.services.locks.try_acquire(OWNER_ID))
        try:
            with self.assertRaises(ContentionError):
                self.services.engine.execute(self.db, OWNER_ID, "safe", 100)
        finally:
            self.services.locks.release(OWNER_ID)

        self.assertEqual(self._audit_entries(), [])

    def test_aggressive_runs_use_the_bulk_budget(self) -> None:
        services = self._services(rate_limit_bulk_per_hour=1)
        _seed_reconcilable(self.db)

        services.engine.execute(self.db, OWNER_ID, "aggressive", 1)
        with self.assertRaises(RateLimitError) as ctx:
            services.engine.execute(self.db, OWNER_ID, "aggressive", 1)
        self.assertEqual(ctx.exception.action_class, "bulk")

        services.engine.execute(self.db, OWNER_ID, "safe", 1)

    def test_lock_contention_leaves_budget_untouched(self) -> None:
        services = self._services(rate_limit_bulk_per_hour=1)
        _seed_reconcilable(self.db)

        self.assertTrue(services.locks.try_acquire(OWNER_ID))
        try:
            with self.assertRaises(ContentionError):
                services.engine.execute(self.db, OWNER_ID, "aggressive", 1)
        finally:
            services.locks.release(OWNER_ID)

        summary = services.engine.execute(self.db, OWNER_ID, "aggressive", 1)
        self.assertEqual(summary.total_processed, 1)

    def test_failed_action_is_counted_and_batch_continues(self) -> None:
        ids = _seed_reconcilable(self.db)
        self.db.add_all(
            [
                SalesActivity(owner_id=OWNER_ID, client_name="Initech", amount=3000.0, activity_date=date(2024, 1, 20)),
                Deal(
                    owner_id=OWNER_ID,
                    company="Initech",
                    value=3000.0,
                    stage_changed_at=datetime(2024, 1, 20, 15, 0, tzinfo=timezone.utc),
                ),
            ]
        )
        self.db.commit()
        actions = dict(build_action_registry())
        actions["auto_link"] = _RejectingLink(ids["viewpoint"])
        engine = ExecutionEngine(
            analysis=self.services.analysis,
            locks=InProcessLockCoordinator(),
            rate_limiter=self.services.rate_limiter,
            transactions=TransactionCoordinator(),
            audit_log=self.services.audit_log,
            actions=actions,
        )

        summary = engine.execute(self.db, OWNER_ID, "safe", 100)

        self.assertEqual(summary.total_processed, 2)
        self.assertEqual(summary.linked, 1)
        self.assertEqual(summary.errors, 1)
        self.assertEqual(summary.success_rate, 50.0)
        self.assertEqual(summary.actual_changes_made, 1)
        self.assertEqual(summary.error_details[0].message, "Simulated conflict")
        self.assertEqual(len(self._audit_entries()), 1)
        self.assertIsNone(self.db.get(SalesActivity, ids["viewpoint"]).deal_id)

    def test_database_error_inside_action_discards_only_that_action(self) -> None:
        ids = _seed_reconcilable(self.db)
        actions = dict(build_action_registry())
        actions["auto_link"] = _FailingAfterWriteLink()
        engine = ExecutionEngine(
            analysis=self.services.analysis,
            locks=InProcessLockCoordinator(),
            rate_limiter=self.services.rate_limiter,
            transactions=TransactionCoordinator(),
            audit_log=self.services.audit_log,
            actions=actions,
        )

        summary = engine.execute(self.db, OWNER_ID, "safe", 100)

        self.assertEqual(summary.errors, 1)
        self.assertIn("IntegrityError", summary.error_details[0].message)
        self.assertEqual(self._audit_entries(), [])
        self.assertIsNone(self.db.get(SalesActivity, ids["viewpoint"]).deal_id)
        self.assertIsNone(self.db.get(Deal, ids["viewpoint_deal"]).activity_id)


    def test_statement_timeout_aborts_the_whole_batch(self) -> None:
        ids = _seed_reconcilable(self.db)
        actions = dict(build_action_registry())
        actions["auto_link"] = _TimingOutLink(ids["acme"])
        engine = ExecutionEngine(
            analysis=self.services.analysis,
            locks=InProcessLockCoordinator(),
            rate_limiter=self.services.rate_limiter,
            transactions=TransactionCoordinator(),
            audit_log=self.services.audit_log,
            actions=actions,
        )

        with self.assertRaises(PersistenceError):
            engine.execute(self.db, OWNER_ID, "aggressive", 100)

        self.assertEqual(self._audit_entries(), [])
        self.assertIsNone(self.db.get(SalesActivity, ids["viewpoint"]).deal_id)
        self.assertIsNone(self.db.get(SalesActivity, ids["acme"]).deal_id)
        self.assertEqual(self.db.scalar(select(func.count(Deal.id))), 3)
        self.assertEqual(self.db.scalar(select(func.count(SalesActivity.id))), 3)

class TransactionCoordinatorTests(unittest.TestCase):
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
        self.db.execute(delete(SalesActivity))
        self.db.commit()
        self.transactions = TransactionCoordinator()

    def tearDown(self) -> None:
        self.db.close()

    def _activity_count(self) -> int:
        return int(self.db.scalar(select(func.count(SalesActivity.id))) or 0)

    def test_storage_failure_rolls_back_whole_unit_of_work(self) -> None:
        with self.assertRaises(PersistenceError):
            with self.transactions.unit_of_work(self.db):
                self.db.add(
                    SalesActivity(owner_id=OWNER_ID, client_name="Umbrella", amount=1.0, activity_date=date(2024, 1, 1))
                )
                self.db.flush()
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        self.assertEqual(self._activity_count(), 0)

    def test_dry_run_unit_of_work_discards_changes(self) -> None:
        with self.transactions.unit_of_work(self.db, dry_run=True):
            self.db.add(
                SalesActivity(owner_id=OWNER_ID, client_name="Umbrella", amount=1.0, activity_date=date(2024, 1, 1))
            )
            self.db.flush()

        self.assertEqual(self._activity_count(), 0)

    def test_savepoint_failure_keeps_earlier_work(self) -> None:
        with self.transactions.unit_of_work(self.db):
            self.db.add(
                SalesActivity(owner_id=OWNER_ID, client_name="Kept", amount=1.0, activity_date=date(2024, 1, 1))
            )
            self.db.flush()
            with self.assertRaises(PartialRecordError):
                with self.transactions.savepoint(self.db):
                    self.db.add(
                        SalesActivity(
                            owner_id=OWNER_ID,
                            client_name="Discarded",
                            amount=1.0,
                            activity_date=date(2024, 1, 1),
                        )
                    )
                    self.db.flush()
                    raise IntegrityError("INSERT", {}, Exception("constraint failed"))

        names = list(self.db.scalars(select(SalesActivity.client_name)).all())
        self.assertEqual(names, ["Kept"])

    def test_timeout_inside_savepoint_discards_whole_unit_of_work(self) -> None:
        with self.assertRaises(PersistenceError):
            with self.transactions.unit_of_work(self.db):
                self.db.add(
                    SalesActivity(owner_id=OWNER_ID, client_name="Kept", amount=1.0, activity_date=date(2024, 1, 1))
                )
                self.db.flush()
                with self.transactions.savepoint(self.db):
                    raise OperationalError("UPDATE", {}, Exception("canceling statement due to statement timeout"))

        self.assertEqual(self._activity_count(), 0)


if __name__ == "__main__":
    unittest.main()

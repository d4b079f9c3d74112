"""Seed demo activities and deals for one owner and print the reconciliation overview.

Usage (from repository root):
    python backend/scripts/seed_demo.py

Usage (from backend directory):
    python scripts/seed_demo.py
    # or
    python -m scripts.seed_demo
"""

from __future__ import annotations

import argparse
import sys
from datetime import date, datetime, timezone
from pathlib import Path

from sqlalchemy import delete, update

# Make `salesrecon` imports work whether the script is run from repo root or backend/.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from salesrecon.config import get_settings
from salesrecon.db.session import SessionLocal
from salesrecon.models.deal import Deal
from salesrecon.models.reconciliation_audit_log import ReconciliationAuditLog
from salesrecon.models.reconciliation_run import ReconciliationRun
from salesrecon.models.sales_activity import SalesActivity
from salesrecon.services.analysis import AnalysisFilters, AnalysisService


DEFAULT_OWNER_ID = "demo-owner"


def build_demo_records(owner_id: str) -> tuple[list[SalesActivity], list[Deal]]:
    """Return a deterministic mix of matchable, orphan and duplicate records."""

    activity_rows = [
        ("Viewpoint Construction", 10000.0, date(2024, 1, 15)),
        ("Acme Corporation", 5000.0, date(2024, 1, 10)),
        ("TechCorp Inc", 7500.0, date(2024, 1, 15)),
        ("techcorp inc", 7500.0, date(2024, 1, 15)),
        ("Northwind Traders", 1200.0, date(2024, 2, 2)),
    ]
    activities = [
        SalesActivity(owner_id=owner_id, client_name=name, amount=amount, activity_date=day)
        for name, amount, day in activity_rows
    ]
    deals = [
        Deal(
            owner_id=owner_id,
            company="Viewpoint Construction",
            value=10500.0,
            stage_changed_at=datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc),
        ),
        Deal(
            owner_id=owner_id,
            company="Acme Corp",
            value=5200.0,
            stage_changed_at=datetime(2024, 1, 13, 16, 0, tzinfo=timezone.utc),
        ),
        Deal(
            owner_id=owner_id,
            company="Globex Industries",
            value=32000.0,
            stage_changed_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        ),
    ]
    return activities, deals


def reset_owner(db, owner_id: str) -> None:
    """Remove existing records and reconciliation history for the demo owner."""

    db.execute(
        update(SalesActivity)
        .where(SalesActivity.owner_id == owner_id)
        .values(deal_id=None, merged_into_id=None)
    )
    db.execute(update(Deal).where(Deal.owner_id == owner_id).values(activity_id=None, merged_into_id=None))
    db.execute(delete(ReconciliationAuditLog).where(ReconciliationAuditLog.owner_id == owner_id))
    db.execute(delete(ReconciliationRun).where(ReconciliationRun.owner_id == owner_id))
    db.execute(delete(Deal).where(Deal.owner_id == owner_id))
    db.execute(delete(SalesActivity).where(SalesActivity.owner_id == owner_id))
    db.commit()


def parse_args() -> argparse.Namespace:
    """Parse script CLI arguments."""

    parser = argparse.ArgumentParser(description="Seed demo sales activities and deals.")
    parser.add_argument(
        "--owner-id",
        default=DEFAULT_OWNER_ID,
        help=f"Owner ID to seed (default: {DEFAULT_OWNER_ID})",
    )
    parser.add_argument(
        "--no-reset",
        action="store_true",
        help="Do not delete existing records for the owner before seeding.",
    )
    return parser.parse_args()


def main() -> None:
    """Seed demo data and print a short summary."""

    args = parse_args()
    owner_id: str = args.owner_id
    activities, deals = build_demo_records(owner_id)

    with SessionLocal() as db:
        if not args.no_reset:
            reset_owner(db, owner_id)
        db.add_all([*activities, *deals])
        db.commit()
        overview = AnalysisService(get_settings()).overview(db, AnalysisFilters(owner_id=owner_id))

    print("Seed complete")
    print(f"owner_id={owner_id}")
    print(f"activities_created={len(activities)}")
    print(f"deals_created={len(deals)}")
    print(f"orphan_activities={overview.orphan_activities}")
    print(f"orphan_deals={overview.orphan_deals}")
    print()
    print("Inspect (send X-Owner-Id header):")
    print("  GET /reconcile/analysis?analysisType=matching")
    print("  GET /reconcile/analysis?analysisType=duplicates")
    print('  POST /reconcile/execute {"mode": "dry_run"}')


if __name__ == "__main__":
    main()

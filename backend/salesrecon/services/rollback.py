"""Reverse audited reconciliation actions by audit-log id or time threshold."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from salesrecon.errors import AuthorizationError, NotFoundError, PartialRecordError, ValidationError
from salesrecon.models.deal import Deal
from salesrecon.models.reconciliation_audit_log import ReconciliationAuditLog
from salesrecon.models.sales_activity import SalesActivity
from salesrecon.schemas.execution import ActionError, RollbackSummary
from salesrecon.services.actions import ACTIVITIES_TABLE, DEALS_TABLE, ENGINE_SOURCE, MANUAL_SOURCE
from salesrecon.services.audit_log import REVERSIBLE_ACTIONS, ROLLBACK_ACTION, AuditLog
from salesrecon.services.locks import LockCoordinator
from salesrecon.services.rate_limiter import RateLimiter
from salesrecon.services.transactions import TransactionCoordinator
from salesrecon.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_ROLLBACK_IDS = 1000
ROLLBACK_RATE_CLASS = "heavy"
DELETABLE_SOURCES = frozenset({ENGINE_SOURCE, MANUAL_SOURCE})


@dataclass(slots=True)
class _Reversal:
    records_restored: int = 0
    links_removed: int = 0
    records_deleted: int = 0


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class RollbackManager:
    """Undo engine and manual actions from their audit snapshots."""

    def __init__(
        self,
        *,
        locks: LockCoordinator,
        rate_limiter: RateLimiter,
        transactions: TransactionCoordinator,
        audit_log: AuditLog,
    ) -> None:
        self._locks = locks
        self._rate_limiter = rate_limiter
        self._transactions = transactions
        self._audit_log = audit_log

    def rollback(
        self,
        db: Session,
        owner_id: str,
        *,
        audit_log_ids: list[int] | None = None,
        time_threshold: datetime | None = None,
        confirm: bool = False,
        is_admin: bool = False,
        origin: str | None = None,
        enforce_rate_limit: bool = True,
    ) -> RollbackSummary:
        self._validate(audit_log_ids, time_threshold, confirm)
        locked_owners = self._owners_to_lock(db, owner_id, audit_log_ids, is_admin)

        started = time.perf_counter()
        summary = RollbackSummary()
        with ExitStack() as held:
            for locked_owner in locked_owners:
                held.enter_context(self._locks.hold(locked_owner))
            if enforce_rate_limit:
                if origin:
                    self._rate_limiter.check_origin(origin)
                self._rate_limiter.check(owner_id, ROLLBACK_RATE_CLASS)
            with self._transactions.unit_of_work(db):
                reverted_by_owner: dict[str, list[int]] = defaultdict(list)
                entries = self._select_entries(db, owner_id, audit_log_ids, time_threshold, is_admin, summary)
                for entry in entries:
                    try:
                        with self._transactions.savepoint(db):
                            reversal = self._reverse(db, entry)
                    except PartialRecordError as exc:
                        summary.errors += 1
                        summary.error_details.append(
                            ActionError(
                                action_type=entry.action_type,
                                message=exc.message,
                                record_ids={"audit_log_id": entry.id},
                            )
                        )
                        logger.warning(
                            "reconcile.rollback_entry_failed owner_id=%s entry_id=%s error=%s",
                            owner_id,
                            entry.id,
                            exc.message,
                        )
                        continue
                    summary.entries_reverted += 1
                    summary.records_restored += reversal.records_restored
                    summary.links_removed += reversal.links_removed
                    summary.records_deleted += reversal.records_deleted
                    summary.reverted_entry_ids.append(entry.id)
                    reverted_by_owner[entry.owner_id].append(entry.id)

                for entry_owner, reverted_ids in sorted(reverted_by_owner.items()):
                    rollback_entry = self._audit_log.append(
                        db,
                        owner_id=entry_owner,
                        action_type=ROLLBACK_ACTION,
                        source_table=ReconciliationAuditLog.__tablename__,
                        source_id=None,
                        metadata={
                            "reverted_entry_ids": reverted_ids,
                            "requested_by": owner_id,
                            "requested_ids": list(audit_log_ids or []),
                            "time_threshold": time_threshold.isoformat() if time_threshold else None,
                            "records_restored": summary.records_restored,
                            "links_removed": summary.links_removed,
                            "records_deleted": summary.records_deleted,
                        },
                    )
                    summary.rollback_audit_log_ids.append(rollback_entry.id)
                summary.rollback_audit_log_id = next(iter(summary.rollback_audit_log_ids), None)

        logger.info(
            "reconcile.rollback_complete owner_id=%s reverted=%d denied=%d skipped=%d errors=%d total_ms=%.2f",
            owner_id,
            summary.entries_reverted,
            summary.entries_denied,
            summary.entries_skipped,
            summary.errors,
            (time.perf_counter() - started) * 1000,
        )
        return summary

    @staticmethod
    def _validate(audit_log_ids: list[int] | None, time_threshold: datetime | None, confirm: bool) -> None:
        if not confirm:
            raise ValidationError("Rollback requires explicit confirmation (confirmRollback: true)")
        if (audit_log_ids is None) == (time_threshold is None):
            raise ValidationError("Provide either auditLogIds or timeThreshold, not both")
        if audit_log_ids is not None and not 1 <= len(audit_log_ids) <= MAX_ROLLBACK_IDS:
            raise ValidationError(f"auditLogIds must contain between 1 and {MAX_ROLLBACK_IDS} ids")
        if time_threshold is not None and as_utc(time_threshold) > utcnow():
            raise ValidationError("timeThreshold cannot be in the future")

    def _owners_to_lock(
        self,
        db: Session,
        owner_id: str,
        audit_log_ids: list[int] | None,
        is_admin: bool,
    ) -> list[str]:
        """Owners whose records the request may touch, in a stable acquisition order."""

        if audit_log_ids is None or not is_admin:
            return [owner_id]
        owners = {entry.owner_id for entry in self._audit_log.get_by_ids(db, audit_log_ids)}
        return sorted(owners) or [owner_id]

    def _select_entries(
        self,
        db: Session,
        owner_id: str,
        audit_log_ids: list[int] | None,
        time_threshold: datetime | None,
        is_admin: bool,
        summary: RollbackSummary,
    ) -> list[ReconciliationAuditLog]:
        """Entries to reverse, newest first, after ownership and repeat filtering."""

        if audit_log_ids is not None:
            requested = set(audit_log_ids)
            found = self._audit_log.get_by_ids(db, requested)
            if not found:
                raise NotFoundError("No audit log entries found for the requested ids")
            summary.entries_skipped += len(requested) - len(found)
            allowed = [entry for entry in found if is_admin or entry.owner_id == owner_id]
            summary.entries_denied = len(found) - len(allowed)
            if not allowed:
                raise AuthorizationError(
                    "Not authorized to roll back the requested audit log entries",
                    details={"entries_denied": summary.entries_denied},
                )
        else:
            allowed = self._audit_log.created_since(db, owner_id, as_utc(time_threshold))

        already_reverted = self._audit_log.reverted_ids(db)
        entries: list[ReconciliationAuditLog] = []
        for entry in allowed:
            if entry.action_type not in REVERSIBLE_ACTIONS or entry.id in already_reverted:
                summary.entries_skipped += 1
                continue
            entries.append(entry)
        entries.sort(key=lambda entry: (as_utc(entry.created_at), entry.id), reverse=True)
        return entries

    def _reverse(self, db: Session, entry: ReconciliationAuditLog) -> _Reversal:
        if entry.action_type in ("auto_link", "manual_link"):
            return self._unlink(db, entry)
        if entry.action_type == "create_deal_from_activity":
            return self._delete_created(db, entry, created=Deal, counterpart=SalesActivity)
        if entry.action_type == "create_activity_from_deal":
            return self._delete_created(db, entry, created=SalesActivity, counterpart=Deal)
        if entry.action_type == "merge_duplicate":
            return self._restore_merged(db, entry)
        raise PartialRecordError(f"Audit action '{entry.action_type}' cannot be rolled back")

    def _unlink(self, db: Session, entry: ReconciliationAuditLog) -> _Reversal:
        activity = db.get(SalesActivity, entry.source_id)
        deal = db.get(Deal, entry.target_id)
        if activity is None or deal is None:
            raise PartialRecordError(f"Linked records for audit entry {entry.id} no longer exist")
        if activity.deal_id != deal.id and deal.activity_id != activity.id:
            raise PartialRecordError(f"Link recorded by audit entry {entry.id} is no longer present")
        if activity.deal_id == deal.id:
            activity.deal_id = None
        if deal.activity_id == activity.id:
            deal.activity_id = None
        return _Reversal(links_removed=1)

    def _delete_created(self, db: Session, entry: ReconciliationAuditLog, *, created, counterpart) -> _Reversal:
        record = db.get(created, entry.target_id)
        if record is None:
            raise PartialRecordError(f"Record created by audit entry {entry.id} no longer exists")
        if record.source not in DELETABLE_SOURCES:
            raise PartialRecordError(f"Record {record.id} was not created by reconciliation and will not be deleted")

        reversal = _Reversal(records_deleted=1)
        origin = db.get(counterpart, entry.source_id)
        link_field = "deal_id" if counterpart is SalesActivity else "activity_id"
        if origin is not None and getattr(origin, link_field) == record.id:
            setattr(origin, link_field, None)
            reversal.links_removed = 1
        db.flush()
        db.delete(record)
        return reversal

    def _restore_merged(self, db: Session, entry: ReconciliationAuditLog) -> _Reversal:
        backup = (entry.metadata_json or {}).get("merge_backup") or {}
        reversal = _Reversal()
        for table, model in ((ACTIVITIES_TABLE, SalesActivity), (DEALS_TABLE, Deal)):
            for snapshot in backup.get(table, []):
                record = db.get(model, snapshot["id"])
                if record is None:
                    raise PartialRecordError(f"Merged record {table}:{snapshot['id']} no longer exists")
                if record.record_status != snapshot["record_status"]:
                    reversal.records_restored += 1
                record.record_status = snapshot["record_status"]
                record.merged_into_id = snapshot.get("merged_into_id")
                record.merged_at = _parse_datetime(snapshot.get("merged_at"))
        return reversal

"""Execution engine: plan and apply one reconciliation batch for one owner."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from salesrecon.errors import PartialRecordError, ValidationError
from salesrecon.matching.scoring import MatchCandidate
from salesrecon.services.actions import ActionContext, ENGINE_SOURCE, ReconciliationAction
from salesrecon.services.analysis import AnalysisFilters, AnalysisService
from salesrecon.services.audit_log import AuditLog
from salesrecon.services.locks import LockCoordinator
from salesrecon.services.rate_limiter import RateLimiter
from salesrecon.services.transactions import TransactionCoordinator
from salesrecon.schemas.execution import ActionError, ExecutionSummary
from salesrecon.timeutils import utcnow

logger = logging.getLogger(__name__)

MODES = ("safe", "aggressive", "dry_run")
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000
_ACCEPTED_LEVELS = {
    "safe": frozenset({"high"}),
    "aggressive": frozenset({"high", "medium"}),
    "dry_run": frozenset({"high", "medium"}),
}


def validate_mode(mode: str) -> None:
    if mode not in MODES:
        raise ValidationError(
            "Invalid mode. Must be safe, aggressive, or dry_run",
            details={"mode": mode, "allowed": list(MODES)},
        )


def validate_batch_size(batch_size: int) -> None:
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or not (
        MIN_BATCH_SIZE <= batch_size <= MAX_BATCH_SIZE
    ):
        raise ValidationError(
            f"Batch size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}",
            details={"batch_size": batch_size, "min": MIN_BATCH_SIZE, "max": MAX_BATCH_SIZE},
        )


def rate_limit_class_for(mode: str) -> str:
    return "bulk" if mode == "aggressive" else "standard"


@dataclass(slots=True)
class PlannedAction:
    action_type: str
    params: dict[str, Any]
    merged_records: int = 0


@dataclass(slots=True)
class BatchPlan:
    actions: list[PlannedAction] = field(default_factory=list)
    orphan_activities_found: int = 0
    orphan_deals_found: int = 0


class ExecutionEngine:
    """Applies links, merges and creates for one owner under lock, rate limit and transaction."""

    def __init__(
        self,
        *,
        analysis: AnalysisService,
        locks: LockCoordinator,
        rate_limiter: RateLimiter,
        transactions: TransactionCoordinator,
        audit_log: AuditLog,
        actions: Mapping[str, ReconciliationAction],
    ) -> None:
        self._analysis = analysis
        self._locks = locks
        self._rate_limiter = rate_limiter
        self._transactions = transactions
        self._audit_log = audit_log
        self._actions = actions

    def execute(
        self,
        db: Session,
        owner_id: str,
        mode: str,
        batch_size: int,
        *,
        origin: str | None = None,
        enforce_rate_limit: bool = True,
        run_id: int | None = None,
    ) -> ExecutionSummary:
        validate_mode(mode)
        validate_batch_size(batch_size)

        started = time.perf_counter()
        summary = ExecutionSummary(
            mode=mode,
            owner_id=owner_id,
            changes_simulated=mode == "dry_run",
            run_id=run_id,
            started_at=utcnow(),
        )
        with self._locks.hold(owner_id):
            if enforce_rate_limit:
                if origin:
                    self._rate_limiter.check_origin(origin)
                self._rate_limiter.check(owner_id, rate_limit_class_for(mode))
            dry_run = mode == "dry_run"
            with self._transactions.unit_of_work(db, dry_run=dry_run):
                plan = self.plan(db, owner_id, mode, batch_size)
                summary.orphan_activities_found = plan.orphan_activities_found
                summary.orphan_deals_found = plan.orphan_deals_found
                if dry_run:
                    self._simulate(plan, summary)
                else:
                    context = ActionContext(
                        owner_id=owner_id,
                        audit_log=self._audit_log,
                        source=ENGINE_SOURCE,
                        run_id=run_id,
                    )
                    self._apply(db, plan, summary, context)

        summary.success_rate = _success_rate(summary.total_processed, summary.errors)
        summary.completed_at = utcnow()
        logger.info(
            "reconcile.batch_complete owner_id=%s mode=%s processed=%d linked=%d created=%d merged=%d errors=%d total_ms=%.2f",
            owner_id,
            mode,
            summary.total_processed,
            summary.linked,
            summary.deals_created + summary.activities_created,
            summary.merged,
            summary.errors,
            (time.perf_counter() - started) * 1000,
        )
        return summary

    def plan(self, db: Session, owner_id: str, mode: str, batch_size: int) -> BatchPlan:
        """Choose up to ``batch_size`` actions: links first, then merges, then creates."""

        filters = AnalysisFilters(owner_id=owner_id)
        orphan_activities = self._analysis.orphan_activities(db, filters)
        orphan_deals = self._analysis.orphan_deals(db, filters)
        plan = BatchPlan(
            orphan_activities_found=len(orphan_activities),
            orphan_deals_found=len(orphan_deals),
        )
        pool = self._analysis.score_candidates(orphan_activities, orphan_deals)

        used_activities: set[int] = set()
        used_deals: set[int] = set()
        accepted = _ACCEPTED_LEVELS[mode]
        for candidate in pool:
            if len(plan.actions) >= batch_size:
                return plan
            if candidate.confidence_level not in accepted:
                continue
            if candidate.activity_id in used_activities or candidate.deal_id in used_deals:
                continue
            used_activities.add(candidate.activity_id)
            used_deals.add(candidate.deal_id)
            plan.actions.append(
                PlannedAction(
                    action_type="auto_link",
                    params={
                        "activity_id": candidate.activity_id,
                        "deal_id": candidate.deal_id,
                        "confidence_score": candidate.total_score,
                        "match_details": _match_details(candidate),
                    },
                )
            )

        if mode == "safe":
            return plan

        merged_away: set[int] = set()
        for members in self._analysis.duplicate_activity_groups(db, filters):
            if len(plan.actions) >= batch_size:
                return plan
            member_ids = [member.id for member in members]
            if used_activities.intersection(member_ids):
                continue
            plan.actions.append(
                PlannedAction(
                    action_type="merge_duplicate",
                    params={"record_type": "sales_activities", "record_ids": member_ids, "survivor_id": None},
                    merged_records=len(member_ids) - 1,
                )
            )
            used_activities.update(member_ids)
            merged_away.update(member_ids)

        activity_candidates: dict[int, set[int]] = {}
        deal_candidates: dict[int, set[int]] = {}
        for candidate in pool:
            activity_candidates.setdefault(candidate.activity_id, set()).add(candidate.deal_id)
            deal_candidates.setdefault(candidate.deal_id, set()).add(candidate.activity_id)

        for activity in orphan_activities:
            if len(plan.actions) >= batch_size:
                return plan
            if activity.id in used_activities or activity.id in merged_away:
                continue
            if activity_candidates.get(activity.id, set()) <= used_deals:
                used_activities.add(activity.id)
                plan.actions.append(
                    PlannedAction(
                        action_type="create_deal_from_activity",
                        params={"activity_id": activity.id, "overrides": {}},
                    )
                )

        for deal in orphan_deals:
            if len(plan.actions) >= batch_size:
                return plan
            if deal.id in used_deals:
                continue
            if deal_candidates.get(deal.id, set()) <= used_activities:
                used_deals.add(deal.id)
                plan.actions.append(
                    PlannedAction(
                        action_type="create_activity_from_deal",
                        params={"deal_id": deal.id, "overrides": {}},
                    )
                )
        return plan

    def _simulate(self, plan: BatchPlan, summary: ExecutionSummary) -> None:
        for planned in plan.actions:
            summary.total_processed += 1
            if planned.action_type == "auto_link":
                summary.linked += 1
                _count_link_confidence(summary, planned)
            elif planned.action_type == "merge_duplicate":
                summary.merge_groups += 1
                summary.merged += planned.merged_records
            elif planned.action_type == "create_deal_from_activity":
                summary.deals_created += 1
            elif planned.action_type == "create_activity_from_deal":
                summary.activities_created += 1
        summary.actual_changes_made = 0

    def _apply(self, db: Session, plan: BatchPlan, summary: ExecutionSummary, context: ActionContext) -> None:
        for planned in plan.actions:
            action = self._actions[planned.action_type]
            summary.total_processed += 1
            try:
                params = action.validate(planned.params)
                with self._transactions.savepoint(db):
                    outcome = action.execute(db, params, context)
            except (PartialRecordError, ValidationError) as exc:
                summary.errors += 1
                summary.error_details.append(
                    ActionError(action_type=planned.action_type, message=exc.message, record_ids=planned.params)
                )
                logger.warning(
                    "reconcile.action_failed owner_id=%s action=%s error=%s",
                    context.owner_id,
                    planned.action_type,
                    exc.message,
                )
                continue
            summary.linked += outcome.linked
            if planned.action_type == "auto_link":
                _count_link_confidence(summary, planned)
            summary.deals_created += outcome.deals_created
            summary.activities_created += outcome.activities_created
            summary.merged += outcome.merged
            if planned.action_type == "merge_duplicate":
                summary.merge_groups += 1
            if outcome.audit_log_id is not None:
                summary.audit_log_ids.append(outcome.audit_log_id)
        summary.actual_changes_made = summary.total_processed - summary.errors


def _count_link_confidence(summary: ExecutionSummary, planned: PlannedAction) -> None:
    level = planned.params.get("match_details", {}).get("confidence_level")
    if level == "high":
        summary.high_confidence_links += 1
    elif level == "medium":
        summary.medium_confidence_links += 1


def _success_rate(processed: int, errors: int) -> float:
    if processed <= 0:
        return 100.0
    return round((processed - errors) * 100.0 / processed, 2)


def _match_details(candidate: MatchCandidate) -> dict[str, Any]:
    return {
        "name_similarity": candidate.name_similarity,
        "name_score": candidate.name_score,
        "date_score": candidate.date_score,
        "amount_score": candidate.amount_score,
        "days_difference": candidate.days_difference,
        "confidence_level": candidate.confidence_level,
    }

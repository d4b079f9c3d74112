"""Read-only reconciliation analysis: overview, orphans, duplicates, matching, statistics."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone

from pydantic import BaseModel
from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from salesrecon.config import Settings, get_settings
from salesrecon.errors import ValidationError
from salesrecon.matching.scoring import MatchCandidate, score_pair
from salesrecon.matching.similarity import normalize_counterparty_name
from salesrecon.models.deal import Deal
from salesrecon.models.sales_activity import SalesActivity
from salesrecon.schemas.analysis import (
    DuplicateGroup,
    DuplicatesData,
    DuplicatesSummary,
    MatchBuckets,
    MatchCandidateRead,
    MatchingData,
    MatchingSummary,
    OrphanActivityItem,
    OrphanDealItem,
    OrphansData,
    OrphanSummary,
    OverviewData,
    OwnerStatistics,
    StatisticsData,
    StatisticsSummary,
)
from salesrecon.timeutils import as_utc

logger = logging.getLogger(__name__)

ACTIVE = "active"
WON = "won"
ANALYSIS_TYPES = ("overview", "orphans", "duplicates", "matching", "statistics")


@dataclass(frozen=True, slots=True)
class AnalysisFilters:
    owner_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None

    def __post_init__(self) -> None:
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError("startDate must be on or before endDate")


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator * 100.0 / denominator, 2)


def _candidate_sort_key(candidate: MatchCandidate) -> tuple[int, int, int, int]:
    return (-candidate.total_score, candidate.days_difference, candidate.activity_id, candidate.deal_id)


class AnalysisService:
    """Reconciliation reports over active activities and active won deals."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def run(
        self,
        db: Session,
        analysis_type: str,
        filters: AnalysisFilters,
        *,
        confidence_threshold: int | None = None,
    ) -> BaseModel:
        """Dispatch one named analysis."""

        started = time.perf_counter()
        if analysis_type == "overview":
            result: BaseModel = self.overview(db, filters)
        elif analysis_type == "orphans":
            result = self.orphans(db, filters)
        elif analysis_type == "duplicates":
            result = self.duplicates(db, filters)
        elif analysis_type == "matching":
            result = self.matching(db, filters, confidence_threshold=confidence_threshold)
        elif analysis_type == "statistics":
            result = self.statistics(db, filters)
        else:
            raise ValidationError(
                "Invalid analysis type",
                details={"analysis_type": analysis_type, "allowed": list(ANALYSIS_TYPES)},
            )
        logger.info(
            "reconcile.analysis type=%s owner_id=%s total_ms=%.2f",
            analysis_type,
            filters.owner_id,
            (time.perf_counter() - started) * 1000,
        )
        return result

    # Record loading

    def activities(self, db: Session, filters: AnalysisFilters) -> list[SalesActivity]:
        stmt: Select = select(SalesActivity).where(SalesActivity.record_status == ACTIVE)
        if filters.owner_id is not None:
            stmt = stmt.where(SalesActivity.owner_id == filters.owner_id)
        if filters.start_date is not None:
            stmt = stmt.where(SalesActivity.activity_date >= filters.start_date)
        if filters.end_date is not None:
            stmt = stmt.where(SalesActivity.activity_date <= filters.end_date)
        return list(db.scalars(stmt.order_by(SalesActivity.id.asc())).all())

    def deals(self, db: Session, filters: AnalysisFilters) -> list[Deal]:
        stmt: Select = select(Deal).where(Deal.record_status == ACTIVE, Deal.status == WON)
        if filters.owner_id is not None:
            stmt = stmt.where(Deal.owner_id == filters.owner_id)
        if filters.start_date is not None:
            lower = datetime.combine(filters.start_date, dt_time.min, tzinfo=timezone.utc)
            stmt = stmt.where(Deal.stage_changed_at >= lower)
        if filters.end_date is not None:
            upper = datetime.combine(filters.end_date + timedelta(days=1), dt_time.min, tzinfo=timezone.utc)
            stmt = stmt.where(Deal.stage_changed_at < upper)
        return list(db.scalars(stmt.order_by(Deal.id.asc())).all())

    def orphan_activities(self, db: Session, filters: AnalysisFilters) -> list[SalesActivity]:
        return [activity for activity in self.activities(db, filters) if activity.deal_id is None]

    def orphan_deals(self, db: Session, filters: AnalysisFilters) -> list[Deal]:
        return [deal for deal in self.deals(db, filters) if deal.activity_id is None]

    # Reports

    def overview(self, db: Session, filters: AnalysisFilters) -> OverviewData:
        return self._overview_for(self.activities(db, filters), self.deals(db, filters))

    def _overview_for(self, activities: list[SalesActivity], deals: list[Deal]) -> OverviewData:
        linked_activities = sum(1 for activity in activities if activity.deal_id is not None)
        linked_deals = sum(1 for deal in deals if deal.activity_id is not None)
        return OverviewData(
            total_activities=len(activities),
            total_deals=len(deals),
            orphan_activities=len(activities) - linked_activities,
            orphan_deals=len(deals) - linked_deals,
            total_activity_revenue=round(sum(float(a.amount or 0.0) for a in activities), 2),
            total_deal_revenue=round(sum(float(d.value or 0.0) for d in deals), 2),
            activity_linkage_rate=_rate(linked_activities, len(activities)),
            deal_linkage_rate=_rate(linked_deals, len(deals)),
            overall_data_quality_score=_rate(linked_activities + linked_deals, len(activities) + len(deals)),
        )

    def orphans(self, db: Session, filters: AnalysisFilters) -> OrphansData:
        floor = self._settings.orphan_revenue_floor

        def priority(amount: float) -> str:
            return "revenue_risk" if amount > floor else "data_integrity"

        activity_items = [
            OrphanActivityItem(
                id=activity.id,
                owner_id=activity.owner_id,
                client_name=activity.client_name,
                amount=float(activity.amount or 0.0),
                activity_date=activity.activity_date,
                created_at=activity.created_at,
                priority=priority(float(activity.amount or 0.0)),
            )
            for activity in self.orphan_activities(db, filters)
        ]
        activity_items.sort(key=lambda item: (item.amount, item.activity_date), reverse=True)

        deal_items = [
            OrphanDealItem(
                id=deal.id,
                owner_id=deal.owner_id,
                company=deal.company,
                value=float(deal.value or 0.0),
                status=deal.status,
                stage_changed_at=deal.stage_changed_at,
                created_at=deal.created_at,
                priority=priority(float(deal.value or 0.0)),
            )
            for deal in self.orphan_deals(db, filters)
        ]
        deal_items.sort(key=lambda item: (item.value, item.stage_changed_at.timestamp()), reverse=True)

        return OrphansData(
            orphan_activities=activity_items,
            orphan_deals=deal_items,
            summary=OrphanSummary(
                total_orphan_activities=len(activity_items),
                total_orphan_deals=len(deal_items),
                total_orphan_activity_revenue=round(sum(item.amount for item in activity_items), 2),
                total_orphan_deal_revenue=round(sum(item.value for item in deal_items), 2),
            ),
        )

    def duplicate_activity_groups(self, db: Session, filters: AnalysisFilters) -> list[list[SalesActivity]]:
        """Active activities sharing owner, normalised client name and date, in creation order."""

        buckets: dict[tuple[str, str, date], list[SalesActivity]] = defaultdict(list)
        for activity in self.activities(db, filters):
            key = (activity.owner_id, normalize_counterparty_name(activity.client_name), activity.activity_date)
            buckets[key].append(activity)
        groups = [
            sorted(members, key=lambda item: (as_utc(item.created_at), item.id))
            for members in buckets.values()
            if len(members) >= 2
        ]
        groups.sort(
            key=lambda members: (len(members), sum(float(a.amount or 0.0) for a in members)),
            reverse=True,
        )
        return groups

    def duplicates(self, db: Session, filters: AnalysisFilters) -> DuplicatesData:
        groups: list[DuplicateGroup] = []
        for members in self.duplicate_activity_groups(db, filters):
            deal_ids = sorted({a.deal_id for a in members if a.deal_id is not None})
            amounts = [float(a.amount or 0.0) for a in members]
            groups.append(
                DuplicateGroup(
                    owner_id=members[0].owner_id,
                    client_name_clean=normalize_counterparty_name(members[0].client_name),
                    activity_date=members[0].activity_date,
                    activity_count=len(members),
                    unique_deals=len(deal_ids),
                    activity_ids=[a.id for a in members],
                    deal_ids=deal_ids,
                    amounts=amounts,
                    total_amount=round(sum(amounts), 2),
                )
            )
        return DuplicatesData(
            duplicates=groups,
            summary=DuplicatesSummary(
                total_duplicate_groups=len(groups),
                total_duplicate_activities=sum(group.activity_count for group in groups),
                total_revenue_affected=round(sum(group.total_amount for group in groups), 2),
            ),
        )

    def score_candidates(
        self,
        activities: list[SalesActivity],
        deals: list[Deal],
    ) -> list[MatchCandidate]:
        """Score every same-owner activity/deal pair inside the matching window."""

        deals_by_owner: dict[str, list[Deal]] = defaultdict(list)
        for deal in deals:
            deals_by_owner[deal.owner_id].append(deal)
        candidates: list[MatchCandidate] = []
        for activity in activities:
            for deal in deals_by_owner.get(activity.owner_id, []):
                candidate = score_pair(activity, deal)
                if candidate is not None:
                    candidates.append(candidate)
        candidates.sort(key=_candidate_sort_key)
        return candidates

    def candidate_pool(self, db: Session, owner_id: str) -> list[MatchCandidate]:
        filters = AnalysisFilters(owner_id=owner_id)
        return self.score_candidates(self.orphan_activities(db, filters), self.orphan_deals(db, filters))

    def matching(
        self,
        db: Session,
        filters: AnalysisFilters,
        *,
        confidence_threshold: int | None = None,
    ) -> MatchingData:
        threshold = self._settings.default_confidence_threshold if confidence_threshold is None else confidence_threshold
        if not 0 <= threshold <= 100:
            raise ValidationError("Confidence threshold must be between 0 and 100")

        candidates = [
            candidate
            for candidate in self.score_candidates(
                self.orphan_activities(db, filters),
                self.orphan_deals(db, filters),
            )
            if candidate.total_score >= threshold
        ][: self._settings.matching_result_limit]
        reads = [MatchCandidateRead.model_validate(candidate) for candidate in candidates]
        buckets = MatchBuckets(
            high=[item for item in reads if item.confidence_level == "high"],
            medium=[item for item in reads if item.confidence_level == "medium"],
            low=[item for item in reads if item.confidence_level == "low"],
        )
        return MatchingData(
            matches=buckets,
            all_matches=reads,
            summary=MatchingSummary(
                total_matches=len(reads),
                high_confidence_matches=len(buckets.high),
                medium_confidence_matches=len(buckets.medium),
                low_confidence_matches=len(buckets.low),
                confidence_threshold=threshold,
            ),
        )

    def statistics(self, db: Session, filters: AnalysisFilters) -> StatisticsData:
        activities_by_owner: dict[str, list[SalesActivity]] = defaultdict(list)
        deals_by_owner: dict[str, list[Deal]] = defaultdict(list)
        for activity in self.activities(db, filters):
            activities_by_owner[activity.owner_id].append(activity)
        for deal in self.deals(db, filters):
            deals_by_owner[deal.owner_id].append(deal)

        rows: list[OwnerStatistics] = []
        for owner_id in sorted(set(activities_by_owner) | set(deals_by_owner)):
            overview = self._overview_for(activities_by_owner[owner_id], deals_by_owner[owner_id])
            rows.append(OwnerStatistics(owner_id=owner_id, **overview.model_dump()))
        rows.sort(key=lambda row: row.total_activity_revenue, reverse=True)

        average = round(sum(row.activity_linkage_rate for row in rows) / len(rows), 2) if rows else 0.0
        return StatisticsData(
            owner_statistics=rows,
            summary=StatisticsSummary(
                total_owners=len(rows),
                total_combined_revenue=round(sum(row.total_activity_revenue for row in rows), 2),
                average_linkage_rate=average,
            ),
        )

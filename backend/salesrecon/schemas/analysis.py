"""Analysis response schemas."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict

AnalysisType = Literal["overview", "orphans", "duplicates", "matching", "statistics"]
PriorityLevel = Literal["revenue_risk", "data_integrity"]


class OverviewData(BaseModel):
    total_activities: int
    total_deals: int
    orphan_activities: int
    orphan_deals: int
    total_activity_revenue: float
    total_deal_revenue: float
    activity_linkage_rate: float
    deal_linkage_rate: float
    overall_data_quality_score: float


class OrphanActivityItem(BaseModel):
    id: int
    owner_id: str
    client_name: str
    amount: float
    activity_date: date
    created_at: datetime
    issue_type: Literal["orphan_activity"] = "orphan_activity"
    priority: PriorityLevel


class OrphanDealItem(BaseModel):
    id: int
    owner_id: str
    company: str
    value: float
    status: str
    stage_changed_at: datetime
    created_at: datetime
    issue_type: Literal["orphan_deal"] = "orphan_deal"
    priority: PriorityLevel


class OrphanSummary(BaseModel):
    total_orphan_activities: int
    total_orphan_deals: int
    total_orphan_activity_revenue: float
    total_orphan_deal_revenue: float


class OrphansData(BaseModel):
    orphan_activities: list[OrphanActivityItem]
    orphan_deals: list[OrphanDealItem]
    summary: OrphanSummary


class DuplicateGroup(BaseModel):
    owner_id: str
    client_name_clean: str
    activity_date: date
    activity_count: int
    unique_deals: int
    activity_ids: list[int]
    deal_ids: list[int]
    amounts: list[float]
    total_amount: float
    issue_type: Literal["same_day_multiple_activities"] = "same_day_multiple_activities"


class DuplicatesSummary(BaseModel):
    total_duplicate_groups: int
    total_duplicate_activities: int
    total_revenue_affected: float


class DuplicatesData(BaseModel):
    duplicates: list[DuplicateGroup]
    summary: DuplicatesSummary


class MatchCandidateRead(BaseModel):
    """Serialized match candidate (built from the scorer dataclass)."""

    model_config = ConfigDict(from_attributes=True)

    activity_id: int
    deal_id: int
    owner_id: str
    client_name: str
    company: str
    activity_amount: float
    deal_value: float
    activity_date: date
    stage_changed_at: datetime
    days_difference: int
    name_similarity: float
    name_score: int
    date_score: int
    amount_score: int
    total_score: int
    confidence_level: Literal["high", "medium", "low"]
    reasons: list[str]
    risks: list[str]


class MatchBuckets(BaseModel):
    high: list[MatchCandidateRead]
    medium: list[MatchCandidateRead]
    low: list[MatchCandidateRead]


class MatchingSummary(BaseModel):
    total_matches: int
    high_confidence_matches: int
    medium_confidence_matches: int
    low_confidence_matches: int
    confidence_threshold: int


class MatchingData(BaseModel):
    matches: MatchBuckets
    all_matches: list[MatchCandidateRead]
    summary: MatchingSummary


class OwnerStatistics(OverviewData):
    owner_id: str


class StatisticsSummary(BaseModel):
    total_owners: int
    total_combined_revenue: float
    average_linkage_rate: float


class StatisticsData(BaseModel):
    owner_statistics: list[OwnerStatistics]
    summary: StatisticsSummary

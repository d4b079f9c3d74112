"""Weighted confidence scoring for activity/deal candidate pairs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

from salesrecon.matching.similarity import name_similarity
from salesrecon.models.deal import Deal
from salesrecon.models.sales_activity import SalesActivity
from salesrecon.timeutils import as_utc

NAME_SIMILARITY_FLOOR = 0.70
MATCH_WINDOW_DAYS = 30
HIGH_CONFIDENCE_MIN = 80
MEDIUM_CONFIDENCE_MIN = 50

NAME_SCORE_MAX = 40
DATE_SCORE_MAX = 30
AMOUNT_SCORE_MAX = 30

_NAME_TIERS = ((0.95, 40), (0.85, 30), (0.75, 20), (NAME_SIMILARITY_FLOOR, 10))
_DATE_TIERS = ((0, 30), (1, 25), (3, 20), (7, 10))
_AMOUNT_TIERS = ((0.05, 30), (0.10, 20), (0.20, 10))


@dataclass(slots=True)
class MatchCandidate:
    """Scored pairing of one orphan activity with one orphan deal."""

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
    confidence_level: str
    reasons: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)


def score_name(ratio: float) -> int:
    """Map a name similarity ratio to 0-40 points."""

    for floor, points in _NAME_TIERS:
        if ratio >= floor:
            return points
    return 0


def score_date_proximity(days_difference: int) -> int:
    """Map an absolute day gap to 0-30 points."""

    gap = abs(days_difference)
    for ceiling, points in _DATE_TIERS:
        if gap <= ceiling:
            return points
    return 0


def score_amount(left: float | None, right: float | None) -> int:
    """Map the relative difference of two amounts to 0-30 points.

    Zero or missing amounts contribute nothing, including when both sides are zero.
    """

    left_value = float(left or 0.0)
    right_value = float(right or 0.0)
    if left_value <= 0 or right_value <= 0:
        return 0
    pct_diff = abs(left_value - right_value) / max(left_value, right_value)
    for ceiling, points in _AMOUNT_TIERS:
        if pct_diff <= ceiling:
            return points
    return 0


def confidence_level(total_score: int) -> str:
    if total_score >= HIGH_CONFIDENCE_MIN:
        return "high"
    if total_score >= MEDIUM_CONFIDENCE_MIN:
        return "medium"
    return "low"


def total_confidence(name_points: int, date_points: int, amount_points: int) -> int:
    return max(0, min(100, name_points + date_points + amount_points))


def days_between(activity_date: date, stage_changed_at: datetime | date) -> int:
    """Whole-day distance between an activity date and a deal stage change."""

    if isinstance(stage_changed_at, datetime):
        deal_date = as_utc(stage_changed_at).date()
    else:
        deal_date = stage_changed_at
    return abs((activity_date - deal_date).days)


def score_pair(activity: SalesActivity, deal: Deal) -> MatchCandidate | None:
    """Score one activity against one deal.

    Returns None when the pair is not a candidate at all: different owners, a gap
    beyond the matching window, or names below the similarity floor.
    """

    if activity.owner_id != deal.owner_id:
        return None
    days_difference = days_between(activity.activity_date, deal.stage_changed_at)
    if days_difference > MATCH_WINDOW_DAYS:
        return None
    ratio = name_similarity(activity.client_name, deal.company)
    if ratio < NAME_SIMILARITY_FLOOR:
        return None

    name_points = score_name(ratio)
    date_points = score_date_proximity(days_difference)
    amount_points = score_amount(activity.amount, deal.value)
    total = total_confidence(name_points, date_points, amount_points)
    reasons, risks = explain_match(
        ratio=ratio,
        days_difference=days_difference,
        activity_amount=activity.amount,
        deal_value=deal.value,
    )
    return MatchCandidate(
        activity_id=activity.id,
        deal_id=deal.id,
        owner_id=activity.owner_id,
        client_name=activity.client_name,
        company=deal.company,
        activity_amount=float(activity.amount or 0.0),
        deal_value=float(deal.value or 0.0),
        activity_date=activity.activity_date,
        stage_changed_at=deal.stage_changed_at,
        days_difference=days_difference,
        name_similarity=round(ratio, 4),
        name_score=name_points,
        date_score=date_points,
        amount_score=amount_points,
        total_score=total,
        confidence_level=confidence_level(total),
        reasons=reasons,
        risks=risks,
    )


def explain_match(
    *,
    ratio: float,
    days_difference: int,
    activity_amount: float | None,
    deal_value: float | None,
) -> tuple[list[str], list[str]]:
    """Human-readable reasons and risks behind a candidate score."""

    reasons: list[str] = []
    risks: list[str] = []

    percent = round(ratio * 100)
    if ratio >= 0.9:
        reasons.append(f"Strong name match ({percent}% similarity)")
    elif ratio >= NAME_SIMILARITY_FLOOR:
        reasons.append(f"Good name match ({percent}% similarity)")
        risks.append("Name similarity could be coincidental")
    else:
        risks.append(f"Low name similarity ({percent}%)")

    if days_difference == 0:
        reasons.append("Same date activity and deal")
    elif days_difference <= 3:
        reasons.append(f"Close dates ({days_difference} days apart)")
    elif days_difference <= 7:
        reasons.append(f"Recent dates ({days_difference} days apart)")
        risks.append("Date gap might indicate different transactions")
    else:
        risks.append(f"Large date gap ({days_difference} days apart)")

    left = float(activity_amount or 0.0)
    right = float(deal_value or 0.0)
    if left > 0 and right > 0:
        pct_diff = abs(left - right) / max(left, right) * 100
        if pct_diff <= 5:
            reasons.append("Very similar amounts")
        elif pct_diff <= 10:
            reasons.append(f"Similar amounts ({round(pct_diff)}% difference)")
        elif pct_diff <= 20:
            reasons.append(f"Moderate amount difference ({round(pct_diff)}%)")
            risks.append("Amount difference might indicate different deals")
        else:
            risks.append(f"Large amount difference ({round(pct_diff)}%)")
    else:
        risks.append("Missing amount data for comparison")

    return reasons, risks

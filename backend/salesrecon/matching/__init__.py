"""Counterparty matching package."""

from salesrecon.matching.scoring import (
    HIGH_CONFIDENCE_MIN,
    MATCH_WINDOW_DAYS,
    MEDIUM_CONFIDENCE_MIN,
    NAME_SIMILARITY_FLOOR,
    MatchCandidate,
    confidence_level,
    score_amount,
    score_date_proximity,
    score_name,
    score_pair,
)
from salesrecon.matching.similarity import name_similarity, normalize_counterparty_name

__all__ = [
    "HIGH_CONFIDENCE_MIN",
    "MATCH_WINDOW_DAYS",
    "MEDIUM_CONFIDENCE_MIN",
    "NAME_SIMILARITY_FLOOR",
    "MatchCandidate",
    "confidence_level",
    "name_similarity",
    "normalize_counterparty_name",
    "score_amount",
    "score_date_proximity",
    "score_name",
    "score_pair",
]

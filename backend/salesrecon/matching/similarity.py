"""Deterministic string similarity helpers for counterparty matching."""

from __future__ import annotations

import re
from difflib import SequenceMatcher


_MULTISPACE_RE = re.compile(r"\s+")


def normalize_counterparty_name(value: str | None) -> str:
    """Lowercase, trim and collapse internal whitespace."""

    if not value:
        return ""
    return _MULTISPACE_RE.sub(" ", value.strip().lower())


def name_similarity(left: str | None, right: str | None) -> float:
    """Return a similarity ratio in [0, 1] for two counterparty names."""

    norm_left = normalize_counterparty_name(left)
    norm_right = normalize_counterparty_name(right)
    if not norm_left or not norm_right:
        return 0.0
    if norm_left == norm_right:
        return 1.0
    return SequenceMatcher(a=norm_left, b=norm_right).ratio()

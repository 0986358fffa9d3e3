"""User-taught category corrections.

Patterns are keyed by :func:`normalize_description` and owned by the caller
(usually loaded through :mod:`statement_engine.persistence`). Nothing here
mutates the mapping it is given.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeAlias

from .models import UserCategoryPattern

UserPatterns: TypeAlias = Mapping[str, UserCategoryPattern]

# A description shorter than this is too generic to match inside a longer
# pattern text.
_MIN_REVERSE_MATCH_LEN: int = 6
_TOP_N: int = 10


def normalize_description(text: str | None) -> str:
    return (text or "").upper().strip()


def find_user_category_pattern(
    patterns: UserPatterns | None, description: str | None
) -> UserCategoryPattern | None:
    """Return the pattern that applies to ``description``, if any.

    Order: exact key; then a pattern key contained in the description; then
    the description contained in a pattern key when the description is longer
    than five characters. Among partial matches the longest key wins, ties
    broken alphabetically, so the answer does not depend on load order.
    """

    if not patterns:
        return None
    key = normalize_description(description)
    if not key:
        return None
    exact = patterns.get(key)
    if exact is not None:
        return exact

    candidates = sorted((k for k in patterns if k), key=lambda k: (-len(k), k))
    for pattern_key in candidates:
        if pattern_key in key:
            return patterns[pattern_key]
    if len(key) >= _MIN_REVERSE_MATCH_LEN:
        for pattern_key in candidates:
            if key in pattern_key:
                return patterns[pattern_key]
    return None


def remember_correction(
    patterns: UserPatterns,
    description: str,
    category: str,
    *,
    now: datetime | None = None,
) -> dict[str, UserCategoryPattern]:
    """Return a copy of ``patterns`` with ``description -> category`` recorded.

    An existing entry keeps its id, takes the new category and has
    ``times_used`` incremented.
    """

    key = normalize_description(description)
    if not key:
        raise ValueError("description must not be empty")
    stamp = now or datetime.now(UTC)
    updated = dict(patterns)
    existing = updated.get(key)
    if existing is None:
        updated[key] = UserCategoryPattern(
            category=category,
            times_used=1,
            last_updated=stamp,
            original_description=description,
        )
    else:
        updated[key] = existing.model_copy(
            update={
                "category": category,
                "times_used": existing.times_used + 1,
                "last_updated": stamp,
            }
        )
    return updated


@dataclass(frozen=True, slots=True)
class PatternStats:
    total_patterns: int
    by_category: Mapping[str, int]
    total_usage: int
    most_used: tuple[tuple[str, UserCategoryPattern], ...]


def pattern_stats(patterns: UserPatterns) -> PatternStats:
    by_category = Counter(p.category for p in patterns.values())
    ranked = sorted(patterns.items(), key=lambda kv: (-kv[1].times_used, kv[0]))
    return PatternStats(
        total_patterns=len(patterns),
        by_category=dict(by_category),
        total_usage=sum(p.times_used for p in patterns.values()),
        most_used=tuple(ranked[:_TOP_N]),
    )


__all__ = [
    "PatternStats",
    "UserPatterns",
    "find_user_category_pattern",
    "normalize_description",
    "pattern_stats",
    "remember_correction",
]

"""
Duplicate detection between a generated plan and a trip's existing activities.

Matching policy: two activities conflict when their titles are equal after
case folding and whitespace collapsing. With ``match_window_days`` set, the
dates must additionally lie within that many days of each other; an activity
without a known date still matches on title alone, since travel dates may
have shifted since it was created.
"""

import os
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from planning.plan import Plan, natural_key


@dataclass(frozen=True)
class ExistingActivity:
    title: str
    day: Optional[date] = None


@dataclass(frozen=True)
class ConflictPolicy:
    match_window_days: Optional[int] = None

    @classmethod
    def from_env(cls) -> "ConflictPolicy":
        raw = os.getenv("CONFLICT_MATCH_WINDOW_DAYS")
        return cls(match_window_days=int(raw) if raw not in (None, "") else None)

    def dates_match(self, planned: Optional[date], existing: Optional[date]) -> bool:
        if self.match_window_days is None or planned is None or existing is None:
            return True
        return abs((planned - existing).days) <= self.match_window_days


def find_conflicts(
    plan: Plan,
    existing: Iterable[ExistingActivity],
    policy: ConflictPolicy = ConflictPolicy(),
) -> list[str]:
    """Return the titles of existing activities the plan would duplicate.

    Order follows the plan's activity order; each existing title appears once.
    """
    by_key: dict[str, list[ExistingActivity]] = {}
    for activity in existing:
        by_key.setdefault(natural_key(activity.title), []).append(activity)

    conflicts: list[str] = []
    seen: set[str] = set()
    for day_date, activity in plan.iter_activities():
        key = natural_key(activity.title)
        for candidate in by_key.get(key, []):
            if not policy.dates_match(day_date, candidate.day):
                continue
            if key not in seen:
                seen.add(key)
                conflicts.append(candidate.title)
            break
    return conflicts


def conflict_keys(conflicts: Iterable[str]) -> set[str]:
    """Natural keys of a ConflictSet; the applier skips activities with these keys."""
    return {natural_key(title) for title in conflicts}

"""Progress steps reported while a plan is generated and applied."""

from enum import Enum
from typing import Optional


class ProgressStep(str, Enum):
    STRUCTURE = "structure"
    TRIP = "trip"
    DAYS = "days"
    ACTIVITIES = "activities"
    STOPS = "stops"
    BUDGET = "budget"
    DONE = "done"


PROGRESS_ORDER = list(ProgressStep)


def step_index(step: ProgressStep | str) -> int:
    return PROGRESS_ORDER.index(ProgressStep(step))


def is_advance(current: Optional[ProgressStep | str], new: ProgressStep | str) -> bool:
    """True if moving from current to new keeps the sequence non-decreasing and changes it."""
    if current is None:
        return True
    return step_index(new) > step_index(current)

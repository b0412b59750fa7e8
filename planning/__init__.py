"""
Travel Planner Planning Library

Plan models, validation of model-generated plan JSON, progress ordering
for background generation and duplicate detection against an existing
itinerary.

Everything here is deterministic — no AI calls and no I/O.
"""

from planning.plan import (
    VALID_CATEGORIES,
    Plan,
    PlanActivity,
    PlanBudgetCategory,
    PlanDay,
    PlanFormatError,
    PlanStop,
    PlanStructure,
    PlanTrip,
    extract_json,
    merge_structure,
    natural_key,
    parse_activity_batch,
    parse_plan,
    parse_structure,
)
from planning.progress import ProgressStep, PROGRESS_ORDER, is_advance
from planning.conflicts import ConflictPolicy, ExistingActivity, find_conflicts

__version__ = "0.1.0"

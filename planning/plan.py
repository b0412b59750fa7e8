"""
Plan models and validation of model-generated plan JSON.

The language model returns free text that should contain a JSON object.
This module extracts that object, validates it against the plan schema and
normalises it so that everything downstream can rely on:

- activities within a day ordered by ``sort_order``, renumbered from 0
- activity categories drawn from VALID_CATEGORIES (unknown -> "other")
- costs and budget limits that are finite and non-negative
- ISO dates everywhere a date is expected

Structural problems (missing titles, malformed dates, no usable content)
raise PlanFormatError. Nothing is partially accepted.
"""

from __future__ import annotations

import json
import re
from datetime import date
from enum import Enum
from typing import Iterable, Iterator, Optional

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)

VALID_CATEGORIES = [
    "sightseeing", "food", "activity", "transport", "hotel",
    "shopping", "relaxation", "stop", "other",
]

# Well-known budget category colours, keyed by lowercase name
DEFAULT_BUDGET_COLORS = {
    "transport": "#FF6B6B",
    "accommodation": "#4ECDC4",
    "hotel": "#4ECDC4",
    "food": "#FFD93D",
    "activities": "#6C5CE7",
    "shopping": "#74B9FF",
    "other": "#636E72",
}
FALLBACK_BUDGET_COLOR = "#636E72"

# Days per activity-generation batch
ACTIVITY_BATCH_SIZE = 5

# Rough wall-clock estimate used for the structure overview
STRUCTURE_BASE_SECONDS = 20
SECONDS_PER_BATCH = 45

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")
_CLOCK_TIME = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_WHITESPACE = re.compile(r"\s+")


class PlanFormatError(ValueError):
    """Model output could not be turned into a valid plan."""


def natural_key(text: str) -> str:
    """Case- and whitespace-insensitive key used for duplicate checks."""
    return _WHITESPACE.sub(" ", (text or "").strip()).casefold()


# --- Models ---

class ActivityCategory(str, Enum):
    SIGHTSEEING = "sightseeing"
    FOOD = "food"
    ACTIVITY = "activity"
    TRANSPORT = "transport"
    HOTEL = "hotel"
    SHOPPING = "shopping"
    RELAXATION = "relaxation"
    STOP = "stop"
    OTHER = "other"


class StopType(str, Enum):
    OVERNIGHT = "overnight"
    WAYPOINT = "waypoint"


class PlanTrip(BaseModel):
    """Trip header, present only for plans generated in create mode."""
    name: str = Field(..., min_length=1)
    destination: str = Field(..., min_length=1)
    destination_lat: Optional[float] = None
    destination_lng: Optional[float] = None
    start_date: date
    end_date: date
    currency: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _dates_in_order(self) -> "PlanTrip":
        if self.end_date < self.start_date:
            raise ValueError("trip end_date is before start_date")
        return self


class PlanActivity(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: ActivityCategory = ActivityCategory.OTHER
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location_name: Optional[str] = None
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    location_address: Optional[str] = None
    cost: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    sort_order: int = 0
    check_in_date: Optional[date] = None
    check_out_date: Optional[date] = None
    category_data: dict = Field(default_factory=dict)

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("category", mode="before")
    @classmethod
    def _known_category(cls, v):
        value = str(getattr(v, "value", v) or "").strip().lower()
        return value if value in VALID_CATEGORIES else ActivityCategory.OTHER.value

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _clock_time(cls, v):
        if isinstance(v, str) and _CLOCK_TIME.match(v.strip()):
            return v.strip()
        return None

    @field_validator("category_data", mode="before")
    @classmethod
    def _dict_or_empty(cls, v):
        return v if isinstance(v, dict) else {}


class PlanDay(BaseModel):
    date: date
    activities: list[PlanActivity] = Field(default_factory=list)

    @field_validator("activities", mode="after")
    @classmethod
    def _ordered_from_zero(cls, activities: list[PlanActivity]) -> list[PlanActivity]:
        ordered = sorted(activities, key=lambda a: a.sort_order)
        for index, activity in enumerate(ordered):
            activity.sort_order = index
        return ordered


class PlanStop(BaseModel):
    name: str = Field(..., min_length=1)
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    type: StopType = StopType.WAYPOINT
    nights: Optional[int] = Field(None, ge=0)
    arrival_date: Optional[date] = None
    departure_date: Optional[date] = None
    sort_order: int = 0

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, v):
        return v if v in (StopType.OVERNIGHT.value, StopType.WAYPOINT.value) else StopType.WAYPOINT.value


class PlanBudgetCategory(BaseModel):
    name: str = Field(..., min_length=1)
    color: Optional[str] = None
    budget_limit: Optional[float] = Field(None, ge=0, allow_inf_nan=False)

    @model_validator(mode="after")
    def _default_color(self) -> "PlanBudgetCategory":
        if not self.color or not _HEX_COLOR.match(self.color):
            self.color = DEFAULT_BUDGET_COLORS.get(natural_key(self.name), FALLBACK_BUDGET_COLOR)
        return self


def _sorted_stops(stops: list[PlanStop]) -> list[PlanStop]:
    return sorted(stops, key=lambda s: s.sort_order)


class Plan(BaseModel):
    """A fully detailed plan — the unit of user approval."""
    trip: Optional[PlanTrip] = None
    stops: list[PlanStop] = Field(default_factory=list)
    days: list[PlanDay] = Field(default_factory=list)
    budget_categories: list[PlanBudgetCategory] = Field(default_factory=list)

    @field_validator("stops", mode="after")
    @classmethod
    def _stops_in_route_order(cls, stops):
        return _sorted_stops(stops)

    @model_validator(mode="after")
    def _has_content(self) -> "Plan":
        if not self.days and not self.stops and not self.budget_categories:
            raise ValueError("plan contains no usable data")
        return self

    def iter_activities(self) -> Iterator[tuple[date, PlanActivity]]:
        for day in self.days:
            for activity in day.activities:
                yield day.date, activity

    @property
    def activity_count(self) -> int:
        return sum(len(d.activities) for d in self.days)


class PlanStructure(BaseModel):
    """Cheap skeleton: stops, day dates and budget categories, no activities."""
    trip: Optional[PlanTrip] = None
    stops: list[PlanStop] = Field(default_factory=list)
    days: list[PlanDay] = Field(default_factory=list)
    budget_categories: list[PlanBudgetCategory] = Field(default_factory=list)

    @field_validator("stops", mode="after")
    @classmethod
    def _stops_in_route_order(cls, stops):
        return _sorted_stops(stops)

    @model_validator(mode="after")
    def _has_days(self) -> "PlanStructure":
        if not self.days:
            raise ValueError("structure contains no days")
        for day in self.days:
            day.activities = []
        return self

    @computed_field
    @property
    def day_count(self) -> int:
        return len(self.days)

    @computed_field
    @property
    def budget_category_count(self) -> int:
        return len(self.budget_categories)

    @computed_field
    @property
    def estimated_seconds(self) -> int:
        return STRUCTURE_BASE_SECONDS + SECONDS_PER_BATCH * len(self.day_batches())

    def day_dates(self) -> list[date]:
        return [d.date for d in self.days]

    def day_batches(self, size: int = ACTIVITY_BATCH_SIZE) -> list[list[date]]:
        dates = self.day_dates()
        return [dates[i:i + size] for i in range(0, len(dates), size)]


# --- Parsing ---

def extract_json(content: str) -> dict:
    """Pull the JSON object out of a model reply (code fences, stray prose)."""
    cleaned = (content or "").strip()
    if "```" in cleaned:
        fence = _FENCED_JSON.search(cleaned)
        if fence:
            cleaned = fence.group(1)
    if not cleaned.startswith("{"):
        start = cleaned.find("{")
        if start != -1:
            cleaned = cleaned[start:]
    if not cleaned.endswith("}"):
        end = cleaned.rfind("}")
        if end != -1:
            cleaned = cleaned[:end + 1]

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise PlanFormatError(f"Model output is not valid JSON: {e.msg}") from e
    if not isinstance(parsed, dict):
        raise PlanFormatError("Model output is not a JSON object")
    return parsed


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"]) or "plan"
    return f"{location}: {first['msg']}"


def dedupe_budget_categories(
    categories: Iterable[PlanBudgetCategory],
    existing_names: Iterable[str] = (),
) -> list[PlanBudgetCategory]:
    """Drop categories whose name already exists (case-insensitive), keep order."""
    seen = {natural_key(n) for n in existing_names}
    kept = []
    for category in categories:
        key = natural_key(category.name)
        if key in seen:
            continue
        seen.add(key)
        kept.append(category)
    return kept


def parse_plan(
    content: str,
    existing_budget_names: Iterable[str] = (),
    require_trip: bool = False,
) -> Plan:
    """Validate a full plan reply. Enhance mode passes the trip's existing budget names."""
    data = extract_json(content)
    try:
        plan = Plan.model_validate(data)
    except ValidationError as e:
        raise PlanFormatError(f"Plan failed validation — {_describe(e)}") from e

    if require_trip and plan.trip is None:
        raise PlanFormatError("Plan is missing the trip header required to create a new trip")
    plan.budget_categories = dedupe_budget_categories(plan.budget_categories, existing_budget_names)
    return plan


def parse_structure(
    content: str,
    existing_budget_names: Iterable[str] = (),
    require_trip: bool = False,
) -> PlanStructure:
    data = extract_json(content)
    try:
        structure = PlanStructure.model_validate(data)
    except ValidationError as e:
        raise PlanFormatError(f"Structure failed validation — {_describe(e)}") from e

    if require_trip and structure.trip is None:
        raise PlanFormatError("Structure is missing the trip header required to create a new trip")
    structure.budget_categories = dedupe_budget_categories(structure.budget_categories, existing_budget_names)
    return structure


def parse_activity_batch(content: str, expected_dates: Iterable[date]) -> list[PlanDay]:
    """Validate one batch of generated days; days outside the batch are ignored."""
    data = extract_json(content)
    raw_days = data.get("days")
    if not isinstance(raw_days, list):
        raise PlanFormatError("Activity batch has no 'days' list")

    try:
        days = [PlanDay.model_validate(d) for d in raw_days]
    except ValidationError as e:
        raise PlanFormatError(f"Activity batch failed validation — {_describe(e)}") from e

    wanted = set(expected_dates)
    return [d for d in days if d.date in wanted]


def merge_structure(structure: PlanStructure, activity_days: Iterable[PlanDay]) -> Plan:
    """Attach generated activities to the structure's days by date."""
    by_date = {d.date: d.activities for d in activity_days}
    return Plan(
        trip=structure.trip,
        stops=[s.model_copy() for s in structure.stops],
        days=[PlanDay(date=d.date, activities=by_date.get(d.date, [])) for d in structure.days],
        budget_categories=[c.model_copy() for c in structure.budget_categories],
    )

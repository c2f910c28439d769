"""
Data types for meal records.

A meal record moves through a small state machine (see ``MealState``);
the analysis payload returned by the inference collaborator is held as a
structured ``MealAnalysis`` rather than an untyped dict.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import AnalysisFailure, ValidationError


# Bumped when the on-disk record or index format changes
SCHEMA_VERSION = 1

MAX_ID_LENGTH = 256

# Blocked: path separators, control chars, DEL, and characters that are
# awkward in filenames on common filesystems
_ID_BLOCKED_RE = re.compile(r'[\x00-\x1f\x7f/\\:*?"<>|]')

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def utc_now() -> str:
    """Current UTC timestamp as ISO-8601 with milliseconds and a Z suffix."""
    return to_iso(datetime.now(timezone.utc))


def to_iso(dt: datetime) -> str:
    """Format an aware datetime the way record timestamps are stored."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts 'Z' or '+HH:MM' suffixes and naive timestamps (treated as UTC).
    Raises ValueError for anything else.
    """
    if not isinstance(ts, str) or not ts:
        raise ValueError(f"Not a timestamp: {ts!r}")
    dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def sort_key(ts: str) -> datetime:
    """Sort key for timestamps; unparseable values sort as the oldest."""
    try:
        return parse_utc_timestamp(ts)
    except (ValueError, TypeError):
        return _EPOCH


def validate_id(id: str) -> None:
    """Validate a record id. It doubles as part of a filename."""
    if not isinstance(id, str) or not id or len(id) > MAX_ID_LENGTH:
        raise ValidationError(f"Meal id must be 1-{MAX_ID_LENGTH} characters")
    if id in (".", "..") or _ID_BLOCKED_RE.search(id):
        raise ValidationError(f"Meal id contains invalid characters: {id!r}")


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def _str_tuple(value: Any, name: str) -> tuple[str, ...]:
    if not value:
        return ()
    if not isinstance(value, (list, tuple)):
        raise AnalysisFailure(f"{name} must be a list, got {type(value).__name__}")
    return tuple(str(s) for s in value)


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {type(value).__name__}")
    return value or None


# ---------------------------------------------------------------------------
# Analysis payload
# ---------------------------------------------------------------------------

# UI nutrient name -> totals attribute
NUTRIENT_FIELDS = {
    "calories": "total_calories",
    "protein": "total_protein_g",
    "fats": "total_total_fat_g",
    "carbs": "total_total_carbohydrate_g",
}


@dataclass(frozen=True)
class NutritionTotals:
    """Whole-meal totals. Calories in kcal, the rest in grams."""
    total_calories: float = 0.0
    total_total_carbohydrate_g: float = 0.0
    total_protein_g: float = 0.0
    total_total_fat_g: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NutritionTotals":
        return cls(
            total_calories=_as_float(data.get("total_calories")),
            total_total_carbohydrate_g=_as_float(data.get("total_total_carbohydrate_g")),
            total_protein_g=_as_float(data.get("total_protein_g")),
            total_total_fat_g=_as_float(data.get("total_total_fat_g")),
        )

    def to_dict(self) -> dict:
        return {
            "total_calories": self.total_calories,
            "total_total_carbohydrate_g": self.total_total_carbohydrate_g,
            "total_protein_g": self.total_protein_g,
            "total_total_fat_g": self.total_total_fat_g,
        }

    def value(self, nutrient: str) -> float:
        """Look up a total by UI nutrient name (calories, protein, fats, carbs)."""
        try:
            return getattr(self, NUTRIENT_FIELDS[nutrient])
        except KeyError:
            raise ValidationError(
                f"Unknown nutrient {nutrient!r}; expected one of {', '.join(NUTRIENT_FIELDS)}"
            ) from None

    def __add__(self, other: "NutritionTotals") -> "NutritionTotals":
        return NutritionTotals(
            total_calories=self.total_calories + other.total_calories,
            total_total_carbohydrate_g=self.total_total_carbohydrate_g + other.total_total_carbohydrate_g,
            total_protein_g=self.total_protein_g + other.total_protein_g,
            total_total_fat_g=self.total_total_fat_g + other.total_total_fat_g,
        )


@dataclass(frozen=True)
class MealItem:
    """One identified food item with its estimated nutrition."""
    item_name: str
    estimated_serving_size: str = ""
    calories: float = 0.0
    total_carbohydrate_g: float = 0.0
    protein_g: float = 0.0
    total_fat_g: float = 0.0
    notes: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MealItem":
        return cls(
            item_name=str(data.get("item_name") or ""),
            estimated_serving_size=str(data.get("estimated_serving_size") or ""),
            calories=_as_float(data.get("calories")),
            total_carbohydrate_g=_as_float(data.get("total_carbohydrate_g")),
            protein_g=_as_float(data.get("protein_g")),
            total_fat_g=_as_float(data.get("total_fat_g")),
            notes=str(data.get("notes") or ""),
        )

    def to_dict(self) -> dict:
        return {
            "item_name": self.item_name,
            "estimated_serving_size": self.estimated_serving_size,
            "calories": self.calories,
            "total_carbohydrate_g": self.total_carbohydrate_g,
            "protein_g": self.protein_g,
            "total_fat_g": self.total_fat_g,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class MealInsights:
    health_benefits: tuple[str, ...] = ()
    health_concerns: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MealInsights":
        return cls(
            health_benefits=_str_tuple(data.get("health_benefits"), "health_benefits"),
            health_concerns=_str_tuple(data.get("health_concerns"), "health_concerns"),
        )

    def to_dict(self) -> dict:
        return {
            "health_benefits": list(self.health_benefits),
            "health_concerns": list(self.health_concerns),
        }


_ANALYSIS_KEYS = frozenset({"title", "meal_items", "total_meal_nutritional_values", "meal_insights"})


@dataclass(frozen=True)
class MealAnalysis:
    """
    Structured nutrition analysis for a meal.

    The totals are expected to equal the sum of the per-item values; the
    inference collaborator produces both. In-app edits change the totals
    only (see ``with_total``), never the item breakdown.

    Attributes:
        title: Short name for the whole meal
        meal_items: Per-item breakdown
        totals: Whole-meal nutrition totals
        insights: Health benefits and concerns
        extra: Any other keys from the collaborator, kept verbatim
    """
    title: str = ""
    meal_items: tuple[MealItem, ...] = ()
    totals: NutritionTotals = field(default_factory=NutritionTotals)
    insights: MealInsights = field(default_factory=MealInsights)
    extra: dict = field(default_factory=dict, compare=False)

    @classmethod
    def empty(cls) -> "MealAnalysis":
        return cls()

    @classmethod
    def from_dict(cls, data: Any) -> "MealAnalysis":
        """Build from the collaborator's JSON shape.

        Raises:
            AnalysisFailure: If the payload is not an object or has no totals
        """
        if not isinstance(data, Mapping):
            raise AnalysisFailure(f"Analysis must be a JSON object, got {type(data).__name__}")
        totals = data.get("total_meal_nutritional_values")
        if not isinstance(totals, Mapping):
            raise AnalysisFailure("Analysis is missing total_meal_nutritional_values")
        items = data.get("meal_items") or []
        if not isinstance(items, list):
            raise AnalysisFailure("meal_items must be a list")
        insights = data.get("meal_insights")
        return cls(
            title=str(data.get("title") or ""),
            meal_items=tuple(MealItem.from_dict(i) for i in items if isinstance(i, Mapping)),
            totals=NutritionTotals.from_dict(totals),
            insights=MealInsights.from_dict(insights if isinstance(insights, Mapping) else {}),
            extra={k: v for k, v in data.items() if k not in _ANALYSIS_KEYS},
        )

    def to_dict(self) -> dict:
        d = dict(self.extra)
        d.update({
            "title": self.title,
            "meal_items": [i.to_dict() for i in self.meal_items],
            "total_meal_nutritional_values": self.totals.to_dict(),
            "meal_insights": self.insights.to_dict(),
        })
        return d

    def with_total(self, nutrient: str, value: float) -> "MealAnalysis":
        """Return a copy with one total replaced; items are left alone."""
        attr = NUTRIENT_FIELDS.get(nutrient, nutrient)
        if attr not in NutritionTotals.__dataclass_fields__:
            raise ValidationError(
                f"Unknown nutrient {nutrient!r}; expected one of {', '.join(NUTRIENT_FIELDS)}"
            )
        return replace(self, totals=replace(self.totals, **{attr: float(value)}))

    def with_title(self, title: str) -> "MealAnalysis":
        return replace(self, title=title)


# ---------------------------------------------------------------------------
# Meal records
# ---------------------------------------------------------------------------

class MealState(str, Enum):
    """Lifecycle of a record's analysis."""
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    ERROR = "error"


# Error reasons attached to MealState.ERROR
ERROR_EXPIRED = "expired"
ERROR_ANALYSIS_FAILED = "analysis_failed"
ERROR_VALIDATION = "validation"


@dataclass(frozen=True)
class MealRecord:
    """
    A logged meal.

    ``state`` replaces the isLoading/hasError/analysis-is-null flag triple;
    the flags are still written to disk (derived) for readability.
    """
    id: str
    timestamp: str
    image_uri: Optional[str] = None
    after_image_uri: Optional[str] = None
    analysis: Optional[MealAnalysis] = None
    comment: str = ""
    state: MealState = MealState.PENDING
    error: Optional[str] = None

    def __post_init__(self):
        if self.state is MealState.COMPLETE and self.analysis is None:
            raise ValidationError(f"Complete meal {self.id!r} has no analysis")

    @property
    def is_loading(self) -> bool:
        return self.state in (MealState.PENDING, MealState.ANALYZING)

    @property
    def has_error(self) -> bool:
        return self.state is MealState.ERROR

    @property
    def has_image(self) -> bool:
        return bool(self.image_uri and self.image_uri.strip())

    @property
    def is_text_only(self) -> bool:
        return not self.has_image

    @property
    def has_comment(self) -> bool:
        return bool(self.comment and self.comment.strip())

    @property
    def timestamp_dt(self) -> datetime:
        return parse_utc_timestamp(self.timestamp)

    def age(self, now: datetime) -> timedelta:
        return now - self.timestamp_dt

    def to_dict(self) -> dict:
        return {
            "schemaVersion": SCHEMA_VERSION,
            "id": self.id,
            "timestamp": self.timestamp,
            "imageUri": self.image_uri or "",
            "afterImageUri": self.after_image_uri,
            "analysis": self.analysis.to_dict() if self.analysis is not None else None,
            "comment": self.comment,
            "state": self.state.value,
            "error": self.error,
            "isLoading": self.is_loading,
            "hasError": self.has_error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MealRecord":
        """Parse a record file. Legacy files without ``state`` are understood.

        Raises:
            ValueError: If the document is not a usable record
        """
        if not isinstance(data, Mapping):
            raise ValueError("Meal record must be a JSON object")
        version = data.get("schemaVersion", 0)
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise ValueError(f"Unsupported record schema version: {version!r}")
        if not data.get("id") or not data.get("timestamp"):
            raise ValueError("Meal record is missing id or timestamp")

        raw_analysis = data.get("analysis")
        analysis = None
        # Legacy in-progress payloads ({isAnalyzing: true, ...}) have no totals
        if raw_analysis is not None and not (
            isinstance(raw_analysis, Mapping)
            and "total_meal_nutritional_values" not in raw_analysis
        ):
            try:
                analysis = MealAnalysis.from_dict(raw_analysis)
            except AnalysisFailure as e:
                raise ValueError(f"Meal record has an unusable analysis: {e}") from e

        raw_state = data.get("state")
        if raw_state:
            state = MealState(raw_state)
        elif data.get("hasError"):
            state = MealState.ERROR
        elif data.get("isLoading") or analysis is None:
            state = MealState.PENDING
        else:
            state = MealState.COMPLETE
        if state is MealState.COMPLETE and analysis is None:
            state = MealState.PENDING

        return cls(
            id=str(data["id"]),
            timestamp=str(data["timestamp"]),
            image_uri=_optional_str(data, "imageUri"),
            after_image_uri=_optional_str(data, "afterImageUri"),
            analysis=analysis,
            comment=_optional_str(data, "comment") or "",
            state=state,
            error=_optional_str(data, "error") if state is MealState.ERROR else None,
        )

    def evolve(self, **changes) -> "MealRecord":
        """Return a copy with fields replaced."""
        return replace(self, **changes)


@dataclass
class IndexEntry:
    """Lightweight reference kept in the index file."""
    id: str
    timestamp: str
    filename: str

    def to_dict(self) -> dict:
        return {"id": self.id, "timestamp": self.timestamp, "filename": self.filename}


class TimeRange(str, Enum):
    """Windows for clearing recent history."""
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"

    @property
    def window(self) -> Optional[timedelta]:
        """Length of the window, or None for ALL."""
        return _RANGE_WINDOWS[self]

    @classmethod
    def parse(cls, value: "str | TimeRange") -> "TimeRange":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Invalid time range {value!r}; expected one of {', '.join(r.value for r in cls)}"
            ) from None


_RANGE_WINDOWS = {
    TimeRange.HOUR: timedelta(hours=1),
    TimeRange.DAY: timedelta(days=1),
    TimeRange.MONTH: timedelta(days=30),
    TimeRange.YEAR: timedelta(days=365),
    TimeRange.ALL: None,
}

"""
Shared pytest fixtures for openmeal tests.

Provides mock collaborators so no test talks to an inference API or a
health datastore.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from openmeal.errors import AnalysisFailure, SyncError
from openmeal.events import EventBus
from openmeal.record_store import RecordStore
from openmeal.types import MealAnalysis, MealRecord, to_iso


def sample_analysis_dict(title: str = "Grilled Chicken Salad", calories: float = 450) -> dict:
    """Analysis in the inference provider's JSON shape."""
    return {
        "title": title,
        "meal_items": [
            {
                "item_name": "Grilled chicken breast",
                "estimated_serving_size": "150g",
                "calories": calories - 100,
                "total_carbohydrate_g": 0,
                "protein_g": 45,
                "total_fat_g": 8,
                "notes": "",
            },
            {
                "item_name": "Mixed greens with vinaigrette",
                "estimated_serving_size": "2 cups",
                "calories": 100,
                "total_carbohydrate_g": 12,
                "protein_g": 3,
                "total_fat_g": 7,
                "notes": "Assumed oil-based dressing",
            },
        ],
        "total_meal_nutritional_values": {
            "total_calories": calories,
            "total_total_carbohydrate_g": 12,
            "total_protein_g": 48,
            "total_total_fat_g": 15,
        },
        "meal_insights": {
            "health_benefits": ["High in lean protein"],
            "health_concerns": [],
        },
        "overall_meal_notes": "Balanced lunch",
    }


def sample_analysis(title: str = "Grilled Chicken Salad", calories: float = 450) -> MealAnalysis:
    return MealAnalysis.from_dict(sample_analysis_dict(title, calories))


class MockInferenceProvider:
    """
    Inference provider that returns a canned analysis.

    Set ``fail = True`` to make every call raise AnalysisFailure. Calls are
    recorded as (method, args) tuples.
    """

    def __init__(self, analysis: MealAnalysis | None = None):
        self.analysis = analysis or sample_analysis()
        self.fail = False
        self.calls: list[tuple] = []

    async def _respond(self, method: str, *args) -> MealAnalysis:
        self.calls.append((method, args))
        if self.fail:
            raise AnalysisFailure(f"mock {method} failure")
        return self.analysis

    async def analyze_image(self, image, comment=None):
        return await self._respond("analyze_image", image, comment)

    async def analyze_before_after(self, before, after, comment=None):
        return await self._respond("analyze_before_after", before, after, comment)

    async def analyze_text(self, comment):
        return await self._respond("analyze_text", comment)

    async def correct_analysis(self, current, comment, image=None):
        return await self._respond("correct_analysis", current, comment, image)

    @property
    def methods(self) -> list[str]:
        return [c[0] for c in self.calls]


class MockHealthStore:
    """In-memory health datastore honouring client record versions."""

    def __init__(self, permission: bool = True):
        self.permission = permission
        self.grant_on_request = True
        self.fail_upserts = False
        self.fail_permission_check = False
        self.upserts: list = []
        self.records: dict[str, object] = {}

    async def has_write_permission(self) -> bool:
        if self.fail_permission_check:
            raise RuntimeError("permission service unavailable")
        return self.permission

    async def request_permission(self) -> bool:
        self.permission = self.grant_on_request
        return self.permission

    async def upsert(self, payload) -> None:
        if self.fail_upserts:
            raise SyncError("mock write failure")
        self.upserts.append(payload)
        current = self.records.get(payload.client_record_id)
        if current is None or payload.client_record_version > current.client_record_version:
            self.records[payload.client_record_id] = payload


def minutes_ago(minutes: float, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return to_iso(now - timedelta(minutes=minutes))


@pytest.fixture
def mock_inference():
    """Create a fresh MockInferenceProvider instance."""
    return MockInferenceProvider()


@pytest.fixture
def mock_health():
    """Create a MockHealthStore with write permission granted."""
    return MockHealthStore()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def store(tmp_path, events) -> RecordStore:
    """Empty record store in a temp directory."""
    s = RecordStore(tmp_path / "meals", events=events)
    s.initialize()
    return s


@pytest.fixture
def image_file(tmp_path) -> Path:
    """A photo outside managed storage."""
    path = tmp_path / "camera" / "lunch.jpg"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\xff\xd8\xff\xe0 fake jpeg before")
    return path


@pytest.fixture
def after_image_file(tmp_path) -> Path:
    path = tmp_path / "camera" / "leftovers.jpg"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\xff\xd8\xff\xe0 fake jpeg after")
    return path


def text_meal(id: str = "m1", comment: str = "two eggs on toast", timestamp: str | None = None) -> MealRecord:
    return MealRecord(id=id, timestamp=timestamp or minutes_ago(5), comment=comment)

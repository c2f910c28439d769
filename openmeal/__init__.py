"""
OpenMeal

A local meal log: photos and descriptions of meals, analyzed into
nutrition estimates by an AI model, with versioned sync to a health
datastore.

Quick Start:
    import asyncio
    from openmeal import MealTracker

    with MealTracker() as mt:  # uses ~/.openmeal/
        asyncio.run(mt.add_meal("lunch.jpg"))
        print(mt.today())

CLI Usage:
    openmeal add lunch.jpg
    openmeal add -c "two eggs on toast"
    openmeal list
    openmeal week protein

Default Store:
    ~/.openmeal/ (created automatically).
    Override with OPENMEAL_STORE_PATH or explicit path argument.

Environment Variables:
    OPENMEAL_STORE_PATH  - Override default store location
    OPENMEAL_VERBOSE     - Set to 1 for debug logging in the CLI
    GEMINI_API_KEY       - API key for the Gemini inference provider

Configuration is persisted in openmeal.toml within the store directory.
"""

from .api import MealTracker
from .errors import (
    AnalysisFailure,
    BlobCopyError,
    NotFoundError,
    OpenMealError,
    StoreWriteError,
    SyncError,
    ValidationError,
)
from .events import EventBus, EventKind, MealEvent
from .types import MealAnalysis, MealRecord, MealState, NutritionTotals, TimeRange

__version__ = "0.1.0"
__all__ = [
    "MealTracker",
    "MealRecord",
    "MealAnalysis",
    "MealState",
    "NutritionTotals",
    "TimeRange",
    "EventBus",
    "EventKind",
    "MealEvent",
    "OpenMealError",
    "ValidationError",
    "NotFoundError",
    "BlobCopyError",
    "StoreWriteError",
    "AnalysisFailure",
    "SyncError",
]

"""
Core API for meal tracking.

``MealTracker`` wires the stores, the analysis pipeline and the health
sync bridge together once, from the store's configuration. It covers:
- add_meal(): log a meal and analyze it in the background
- edit()/relog(): user changes to logged meals
- today()/week(): derived nutrition views
"""

import logging
import time
from datetime import date, datetime, timezone, tzinfo
from pathlib import Path
from typing import Optional

from .blob_store import BlobStore
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .events import EventBus
from .health_sync import HealthSyncBridge
from .pipeline import AnalysisPipeline
from .providers.base import HealthStore, InferenceProvider, get_registry
from .record_store import IMAGES_DIRNAME, RecordStore
from .types import MealAnalysis, MealRecord, NutritionTotals, utc_now
from .views import DailyGoals, DayValue, daily_totals, goal_progress, weekly_series

logger = logging.getLogger(__name__)


class MealTracker:
    """
    Meal log with background nutrition analysis.

    Example:
        with MealTracker() as mt:
            meal = asyncio.run(mt.add_meal(image="~/Pictures/lunch.jpg"))
            print(mt.today().total_calories)
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        inference: Optional[InferenceProvider] = None,
        health_store: Optional[HealthStore] = None,
        tz: Optional[tzinfo] = None,
    ):
        """
        Args:
            store_path: Store directory. Defaults to OPENMEAL_STORE_PATH or ~/.openmeal
            config: Pre-loaded StoreConfig (skips filesystem config discovery)
            inference: Inference provider (overrides [inference] in config)
            health_store: Health datastore (overrides [health] in config)
            tz: Zone for day boundaries in views (default: system local)
        """
        if config is not None:
            # Injected config, skip filesystem discovery
            self._config = config
        else:
            path = Path(store_path).expanduser() if store_path else get_default_store_path()
            self._config = load_or_create_config(path.resolve())
        self._store_path = self._config.path
        self._tz = tz

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        self._events = EventBus()
        meals_dir = self._config.meals_dir
        self._store = RecordStore(
            meals_dir,
            blob_store=BlobStore(meals_dir / IMAGES_DIRNAME),
            retention_cap=self._config.retention_cap,
            events=self._events,
        )
        self._store.initialize()

        # Providers are created on first use so read-only commands work
        # without credentials
        self._inference = inference
        self._health_store = health_store
        self._health_injected = health_store is not None
        self._health_sync: Optional[HealthSyncBridge] = None
        self._pipeline: Optional[AnalysisPipeline] = None

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def goals(self) -> DailyGoals:
        return self._config.goals

    @property
    def health_sync(self) -> HealthSyncBridge:
        if self._health_sync is None:
            if not self._health_injected:
                cfg = self._config.health
                self._health_store = get_registry().create_health(cfg.name, cfg.params)
            self._health_sync = HealthSyncBridge(
                self._health_store,
                self._config.health_state_path,
                list_records=self._store.list,
            )
        return self._health_sync

    @property
    def pipeline(self) -> AnalysisPipeline:
        if self._pipeline is None:
            if self._inference is None:
                cfg = self._config.inference
                self._inference = get_registry().create_inference(cfg.name, cfg.params)
            self._pipeline = AnalysisPipeline(
                self._store,
                self._inference,
                health_sync=self.health_sync,
                expiry=self._config.expiry,
                resume_delay=self._config.resume_delay_seconds,
            )
        return self._pipeline

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def new_meal_id(self) -> str:
        """A fresh ``meal_<epoch millis>`` id not used in this store."""
        millis = int(time.time() * 1000)
        while self._store.get(f"meal_{millis}") is not None:
            millis += 1
        return f"meal_{millis}"

    async def add_meal(
        self,
        image: Optional[str] = None,
        *,
        after_image: Optional[str] = None,
        comment: str = "",
        id: Optional[str] = None,
        timestamp: Optional[str] = None,
        analyze: bool = True,
    ) -> MealRecord:
        """
        Log a meal, then analyze it.

        The meal is saved as pending before analysis starts, so it survives
        an analysis failure (or a crash) and can be retried later.

        Args:
            image: Path of the meal photo (omit for a text-only meal)
            after_image: Path of a photo of the leftovers
            comment: Description or note; required without a photo
            id: Meal id (default: generated)
            timestamp: ISO-8601 time the meal was eaten (default: now)
            analyze: Run the analysis now (False leaves it pending)

        Returns:
            The stored meal (complete, or pending/error)
        """
        record = self._store.create_pending(MealRecord(
            id=id or self.new_meal_id(),
            timestamp=timestamp or utc_now(),
            image_uri=image,
            after_image_uri=after_image,
            comment=comment or "",
        ))
        if not analyze:
            return record
        return await self.pipeline.process(record) or record

    async def edit(
        self,
        id: str,
        *,
        title: Optional[str] = None,
        totals: Optional[dict[str, float]] = None,
        timestamp: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> Optional[MealRecord]:
        """
        Apply user edits to a meal and push the result to the health datastore.

        Nutrient edits change the meal totals only (keys: calories, protein,
        fats, carbs); the per-item breakdown is left as analyzed.
        """
        record = self._store.get(id)
        if record is None:
            return None

        changes: dict = {}
        if title is not None or totals:
            analysis = record.analysis or MealAnalysis.empty()
            if title is not None:
                analysis = analysis.with_title(title)
            for nutrient, value in (totals or {}).items():
                analysis = analysis.with_total(nutrient, value)
            changes["analysis"] = analysis
        if timestamp is not None:
            changes["timestamp"] = timestamp
        if comment is not None:
            changes["comment"] = comment

        updated = self._store.update(id, changes)
        if updated is not None:
            await self._sync_best_effort(updated)
        return updated

    async def relog(self, id: str) -> MealRecord:
        """Log an earlier meal again, now."""
        record = self._store.relog(id, self.new_meal_id(), utc_now())
        await self._sync_best_effort(record)
        return record

    async def _sync_best_effort(self, record: MealRecord) -> None:
        try:
            await self.health_sync.sync(record)
        except Exception as e:
            logger.warning("Health sync failed for %s: %s", record.id, e)

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def _today(self) -> date:
        return datetime.now(timezone.utc).astimezone(self._tz).date()

    def today(self, day: Optional[date] = None) -> NutritionTotals:
        """Nutrition totals for a day (default: today)."""
        return daily_totals(self._store.list(), day or self._today(), self._tz)

    def progress(self, day: Optional[date] = None) -> dict[str, float]:
        """Fraction of each daily goal reached."""
        return goal_progress(self.today(day), self.goals)

    def week(self, nutrient: str = "calories", today: Optional[date] = None) -> list[DayValue]:
        """Seven days of one nutrient, oldest first."""
        return weekly_series(self._store.list(), nutrient, today or self._today(), self._tz)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close network clients, then local resources."""
        if self._health_store is not None and hasattr(self._health_store, "aclose"):
            await self._health_store.aclose()
        self.close()

    def close(self) -> None:
        """Close local resources."""
        # Remove ops log handler to avoid handler accumulation
        if getattr(self, "_ops_log_handler", None):
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False

    def __del__(self):
        """Cleanup on deletion."""
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection

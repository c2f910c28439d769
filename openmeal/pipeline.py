"""
Background analysis of logged meals.

A meal is saved first (pending) and analyzed afterwards, so logging never
waits on the network. Each attempt ends with the record either complete
or flagged with an error reason; nothing raised by the inference provider
escapes ``process``. Errored and still-pending meals are picked up again
by ``resume_pending`` (typically at startup) or an explicit ``retry``.

Meals older than the expiry window are not sent for analysis at all; they
are flagged ``expired`` instead.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from .errors import NotFoundError, ValidationError
from .health_sync import HealthSyncBridge
from .providers.base import InferenceProvider
from .record_store import RecordStore
from .types import (
    ERROR_ANALYSIS_FAILED,
    ERROR_EXPIRED,
    ERROR_VALIDATION,
    MealAnalysis,
    MealRecord,
    MealState,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY = timedelta(hours=24)
DEFAULT_RESUME_DELAY = 1.0  # seconds between meals in resume_pending


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ResumeResult:
    """Counts from one resume_pending pass."""
    processed: int = 0
    completed: int = 0
    failed: int = 0


class AnalysisPipeline:
    """
    Drives meal records from pending to complete (or error).

    Store notifications (the record store's event bus) carry every state
    change, so listeners see pending, analyzing, complete and error
    transitions without the pipeline publishing anything itself.
    """

    def __init__(
        self,
        store: RecordStore,
        inference: InferenceProvider,
        *,
        health_sync: Optional[HealthSyncBridge] = None,
        expiry: timedelta = DEFAULT_EXPIRY,
        resume_delay: float = DEFAULT_RESUME_DELAY,
        clock: Callable[[], datetime] = _now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._inference = inference
        self._health_sync = health_sync
        self._expiry = expiry
        self._resume_delay = resume_delay
        self._clock = clock
        self._sleep = sleep

    @property
    def store(self) -> RecordStore:
        return self._store

    def is_expired(self, record: MealRecord) -> bool:
        return record.age(self._clock()) > self._expiry

    async def process(self, record: MealRecord) -> Optional[MealRecord]:
        """
        Run one analysis attempt for a meal.

        Never raises. Failures are recorded on the meal as an error state.

        Returns:
            The meal as stored afterwards, or None if it was deleted in the
            meantime (or its error state could not be recorded)
        """
        id = record.id
        try:
            if self.is_expired(record):
                logger.info("Meal %s is older than %s, marking as expired", id, self._expiry)
                return self._store.mark_error(id, ERROR_EXPIRED)

            if record.has_error:
                self._store.mark_analyzing(id)

            analysis = await self._analyze(record)
            updated = self._store.update(id, {"analysis": analysis})
            if updated is None:
                logger.info("Meal %s was deleted during analysis, result dropped", id)
                return None
            logger.info("Analyzed %s: %s", id, analysis.title or "(untitled)")

            await self._sync(updated)
            return updated

        except Exception as e:
            logger.warning("Analysis failed for %s: %s", id, e)
            reason = ERROR_VALIDATION if isinstance(e, ValidationError) else ERROR_ANALYSIS_FAILED
            try:
                return self._store.mark_error(id, reason)
            except Exception as mark_error:
                logger.error("Failed to record error state for %s: %s", id, mark_error)
                return None

    async def _analyze(self, record: MealRecord) -> MealAnalysis:
        """Pick the analysis mode from what the meal carries."""
        comment = record.comment if record.has_comment else None

        if record.is_text_only:
            if comment is None:
                raise ValidationError(f"Meal {record.id} has no image or comment to analyze")
            logger.debug("Analyzing %s from text", record.id)
            result = await self._inference.analyze_text(comment)
        else:
            before = self._store.blob_store.read_blob(record.image_uri)
            if record.after_image_uri:
                after = self._store.blob_store.read_blob(record.after_image_uri)
                logger.debug("Analyzing %s from before/after images", record.id)
                result = await self._inference.analyze_before_after(before, after, comment)
            else:
                logger.debug("Analyzing %s from image", record.id)
                result = await self._inference.analyze_image(before, comment)

        if not isinstance(result, MealAnalysis):
            result = MealAnalysis.from_dict(result)
        return result

    async def _sync(self, record: MealRecord) -> None:
        """Best-effort push to the health datastore."""
        if self._health_sync is None:
            return
        try:
            await self._health_sync.sync(record)
        except Exception as e:
            logger.warning("Health sync failed for %s: %s", record.id, e)

    async def retry(self, id: str) -> Optional[MealRecord]:
        """Re-run analysis for a meal.

        Raises:
            NotFoundError: If the meal does not exist
        """
        record = self._store.get(id)
        if record is None:
            raise NotFoundError(f"Meal {id} not found")
        return await self.process(record)

    async def resume_pending(self) -> ResumeResult:
        """
        Process every pending or errored meal, one at a time.

        Waits ``resume_delay`` seconds between meals to stay under provider
        rate limits. One meal failing never stops the rest.
        """
        todo = [m for m in self._store.list() if m.is_loading or m.has_error]
        result = ResumeResult()
        if not todo:
            return result
        logger.info("Found %d meals to analyze", len(todo))

        for i, meal in enumerate(todo):
            if i and self._resume_delay > 0:
                await self._sleep(self._resume_delay)
            try:
                updated = await self.process(meal)
            except Exception as e:
                logger.warning("Failed to process meal %s: %s", meal.id, e)
                updated = None
            result.processed += 1
            if updated is not None and updated.state is MealState.COMPLETE:
                result.completed += 1
            else:
                result.failed += 1

        logger.info(
            "Resumed %d meals: %d complete, %d failed",
            result.processed, result.completed, result.failed,
        )
        return result

    async def correct(
        self,
        id: str,
        comment: str,
        after_image: Optional[str] = None,
    ) -> Optional[MealRecord]:
        """
        Re-analyze a meal from user feedback ("fix it").

        With both a before photo and an after photo (newly supplied or
        already stored), the meal is re-analyzed as before/after and a new
        after photo is copied into managed storage. Otherwise the current
        analysis is revised from the comment, with the photo as context.

        Unlike background analysis this is a foreground action: on failure
        the meal is put back exactly as it was and the error is raised.

        Returns:
            The corrected meal, or None if it was deleted meanwhile

        Raises:
            NotFoundError: If the meal does not exist
            ValidationError: Blank comment and no after photo
            AnalysisFailure: The inference provider failed
        """
        original = self._store.get(id)
        if original is None:
            raise NotFoundError(f"Meal {id} not found")

        comment = (comment or "").strip()
        after_source = after_image or original.after_image_uri
        if not comment and not after_source:
            raise ValidationError("Describe the correction or add an after photo")

        blobs = self._store.blob_store
        self._store.mark_analyzing(id)
        try:
            before = blobs.read_blob(original.image_uri) if blobs.exists(original.image_uri) else None
            after = blobs.read_blob(after_source) if blobs.exists(after_source) else None

            after_uri = original.after_image_uri
            if before is not None and after is not None:
                analysis = await self._inference.analyze_before_after(before, after, comment or None)
                if after_image and after_image != original.after_image_uri:
                    after_uri = blobs.copy_blob(after_image, id, "after")
            else:
                if not comment:
                    raise ValidationError("An after photo needs a before photo; describe the correction instead")
                current = original.analysis or MealAnalysis.empty()
                analysis = await self._inference.correct_analysis(current, comment, before)
            if not isinstance(analysis, MealAnalysis):
                analysis = MealAnalysis.from_dict(analysis)

            changes = {"analysis": analysis, "after_image_uri": after_uri}
            if comment:
                changes["comment"] = comment
            updated = self._store.update(id, changes)
        except Exception:
            logger.warning("Correction failed for %s, restoring previous state", id)
            self._store.restore(original)
            raise

        if updated is not None:
            logger.info("Corrected %s: %s", id, analysis.title or "(untitled)")
            await self._sync(updated)
        return updated

"""
Meal record store using JSON files.

One pretty-printed JSON document per meal plus a single index file that
lists every meal id, timestamp and filename. The index is the source of
truth for which meals exist and in what order they are listed:

- ``create`` writes the record file, then puts its entry at the front of
  the index (insertion order, not timestamp order).
- ``update`` rewrites the record file and re-sorts the whole index by
  timestamp, newest first.
- Retention keeps at most ``retention_cap`` entries. Evicted records lose
  their index entry and file; their images stay on disk.

Every file is replaced atomically (write to a temp file, then rename), and
the index is always written before record files are removed, so a crash
leaves at worst an orphaned record file, never a dangling index entry.

There is no locking. ``update`` is a read-merge-write; two writers racing
on the same meal lose one of the updates (last writer wins).
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

from .blob_store import BlobStore
from .errors import AnalysisFailure, NotFoundError, StoreWriteError, ValidationError
from .events import EventBus, EventKind, MealEvent
from .types import (
    ERROR_ANALYSIS_FAILED,
    SCHEMA_VERSION,
    IndexEntry,
    MealAnalysis,
    MealRecord,
    MealState,
    TimeRange,
    parse_utc_timestamp,
    sort_key,
    utc_now,
    validate_id,
)

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"
IMAGES_DIRNAME = "images"
DEFAULT_RETENTION_CAP = 50

# Fields a caller may change through update()
_UPDATABLE_FIELDS = frozenset({"timestamp", "image_uri", "after_image_uri", "analysis", "comment"})
# Fields update() manages itself and silently ignores
_MANAGED_FIELDS = frozenset({"id", "state", "error"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def record_filename(id: str) -> str:
    return f"meal_{id}.json"


class RecordStore:
    """
    File-backed store for meal records.

    Example:
        store = RecordStore(Path("~/.openmeal/meals").expanduser())
        store.create_pending(MealRecord(id="1718000000000", timestamp=utc_now(),
                                        comment="two eggs on toast"))
        for meal in store.list():
            print(meal.id, meal.state)
    """

    def __init__(
        self,
        meals_dir: Path,
        *,
        blob_store: Optional[BlobStore] = None,
        retention_cap: int = DEFAULT_RETENTION_CAP,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = _now,
    ):
        """
        Args:
            meals_dir: Directory holding the index and record files
            blob_store: Image store (defaults to ``meals_dir/images``)
            retention_cap: Maximum number of meals kept in the index
            events: Bus that receives add/update/delete notifications
            clock: Returns the current aware datetime (for time-range clears)
        """
        if retention_cap < 1:
            raise ValueError("retention_cap must be at least 1")
        self._meals_dir = Path(meals_dir)
        self._index_path = self._meals_dir / INDEX_FILENAME
        self._blobs = blob_store or BlobStore(self._meals_dir / IMAGES_DIRNAME)
        self._retention_cap = retention_cap
        self._events = events
        self._clock = clock

    @property
    def meals_dir(self) -> Path:
        return self._meals_dir

    @property
    def blob_store(self) -> BlobStore:
        return self._blobs

    @property
    def retention_cap(self) -> int:
        return self._retention_cap

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the directory layout and an empty index. Idempotent."""
        try:
            self._meals_dir.mkdir(parents=True, exist_ok=True)
            self._blobs.ensure_dir()
            if not self._index_path.exists():
                self._write_index([])
        except OSError as e:
            if isinstance(e, StoreWriteError):
                raise
            raise StoreWriteError(f"Failed to initialize store at {self._meals_dir}: {e}") from e

    def _atomic_write(self, path: Path, data: Any) -> None:
        text = json.dumps(data, indent=2, ensure_ascii=False)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StoreWriteError(f"Failed to write {path.name}: {e}") from e

    def _read_index(self) -> list[IndexEntry]:
        """Read the index. Missing or corrupt reads as empty, never fatal."""
        try:
            raw = json.loads(self._index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning("Index unreadable, treating as empty: %s", e)
            return []

        if not isinstance(raw, dict) or not isinstance(raw.get("meals"), list):
            logger.warning("Index has unexpected shape, treating as empty")
            return []

        entries = []
        for item in raw["meals"]:
            if not isinstance(item, dict) or not item.get("id"):
                logger.warning("Skipping malformed index entry: %r", item)
                continue
            id = str(item["id"])
            entries.append(IndexEntry(
                id=id,
                timestamp=str(item.get("timestamp") or ""),
                filename=str(item.get("filename") or record_filename(id)),
            ))
        return entries

    def _write_index(self, entries: list[IndexEntry]) -> None:
        self._atomic_write(self._index_path, {
            "schemaVersion": SCHEMA_VERSION,
            "meals": [e.to_dict() for e in entries],
            "lastUpdated": utc_now(),
        })

    def _record_path(self, id: str) -> Path:
        return self._meals_dir / record_filename(id)

    def _entry_path(self, entry: IndexEntry) -> Path:
        # Index filenames are never allowed to escape the meals directory
        return self._meals_dir / Path(entry.filename).name

    def _write_record(self, record: MealRecord) -> None:
        self._atomic_write(self._record_path(record.id), record.to_dict())

    @staticmethod
    def _read_record_file(path: Path) -> MealRecord:
        return MealRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def _load(self, id: str) -> Optional[MealRecord]:
        try:
            return self._read_record_file(self._record_path(id))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Meal %s unreadable: %s", id, e)
            return None

    def _remove_file(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            # The index no longer references it; an orphan file is harmless
            logger.warning("Failed to delete %s: %s", path.name, e)

    def _publish(self, kind: EventKind, id: str, record: Optional[MealRecord] = None) -> None:
        if self._events is not None:
            self._events.publish(MealEvent(kind=kind, meal_id=id, record=record))

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate(record: MealRecord) -> None:
        if not isinstance(record, MealRecord):
            raise ValidationError(f"Expected a MealRecord, got {type(record).__name__}")
        validate_id(record.id)
        if not record.timestamp:
            raise ValidationError(f"Meal {record.id!r} is missing a timestamp")
        try:
            parse_utc_timestamp(record.timestamp)
        except ValueError:
            raise ValidationError(f"Meal {record.id!r} has an invalid timestamp: {record.timestamp!r}") from None
        if not record.has_image and not record.has_comment:
            raise ValidationError(f"Meal {record.id!r} needs an image or a comment")

    def _adopt_images(self, record: MealRecord) -> MealRecord:
        """Copy any images not yet in managed storage."""
        image_uri = record.image_uri if record.has_image else None
        after_uri = record.after_image_uri or None
        if image_uri and not self._blobs.is_managed(image_uri):
            image_uri = self._blobs.copy_blob(image_uri, record.id)
        if after_uri and not self._blobs.is_managed(after_uri):
            after_uri = self._blobs.copy_blob(after_uri, record.id, "after")
        return record.evolve(image_uri=image_uri, after_image_uri=after_uri)

    def _register(self, record: MealRecord) -> None:
        """Put the record at the front of the index and apply retention."""
        entries = [e for e in self._read_index() if e.id != record.id]
        entries.insert(0, IndexEntry(
            id=record.id, timestamp=record.timestamp, filename=record_filename(record.id),
        ))
        evicted = entries[self._retention_cap:]
        entries = entries[:self._retention_cap]
        self._write_index(entries)

        for old in evicted:
            # Images are left alone: they may be shared with a relogged meal
            self._remove_file(self._entry_path(old))
            logger.info("Evicted meal %s (retention cap %d)", old.id, self._retention_cap)
            self._publish(EventKind.DELETED, old.id)

    def create(self, record: MealRecord) -> MealRecord:
        """
        Store a new meal (or replace one with the same id).

        Images outside managed storage are copied in first. The entry goes
        to the front of the index regardless of its timestamp.

        Args:
            record: The meal to store

        Returns:
            The stored record, with managed image paths

        Raises:
            ValidationError: Missing id/timestamp, or neither image nor comment
            BlobCopyError: An image could not be copied
            StoreWriteError: The record or index could not be written
        """
        self._validate(record)
        self.initialize()
        stored = self._adopt_images(record)
        self._write_record(stored)
        self._register(stored)
        logger.info("Saved meal %s (%s)", stored.id, stored.state.value)
        self._publish(EventKind.ADDED, stored.id, stored)
        return stored

    def create_pending(self, record: MealRecord) -> MealRecord:
        """
        Store a meal that has not been analyzed yet.

        The record is visible in listings immediately, in the pending state
        with no analysis. A text-only meal (no image) is fine as long as it
        has a comment.
        """
        self._validate(record)
        pending = record.evolve(state=MealState.PENDING, analysis=None, error=None)
        return self.create(pending)

    def update(
        self,
        id: str,
        changes: Union[Mapping[str, Any], MealRecord],
    ) -> Optional[MealRecord]:
        """
        Merge changes into an existing meal.

        Any update clears the transient state: the result is always
        COMPLETE, with an empty analysis if none exists yet. The index entry
        picks up the new timestamp and the index is re-sorted newest first.

        Args:
            id: Meal id
            changes: Field mapping (timestamp, image_uri, after_image_uri,
                analysis, comment) or a full MealRecord

        Returns:
            The updated record, or None if the meal no longer exists

        Raises:
            ValidationError: Unknown fields or an invalid timestamp/analysis
            StoreWriteError: The record or index could not be written
        """
        fields = self._normalize_changes(changes)
        self.initialize()

        existing = self._load(id)
        if existing is None:
            logger.warning("Update skipped, meal %s not found", id)
            return None

        merged = existing.evolve(state=MealState.PENDING, error=None, **fields)
        merged = self._adopt_images(merged)
        merged = merged.evolve(
            analysis=merged.analysis if merged.analysis is not None else MealAnalysis.empty(),
            state=MealState.COMPLETE,
            error=None,
        )
        self._write_record(merged)

        entries = self._read_index()
        for entry in entries:
            if entry.id == id:
                entry.timestamp = merged.timestamp
                break
        else:
            # Meal file exists but the index lost it: add it back
            entries.insert(0, IndexEntry(id=id, timestamp=merged.timestamp, filename=record_filename(id)))
        entries.sort(key=lambda e: sort_key(e.timestamp), reverse=True)
        self._write_index(entries)

        logger.info("Updated meal %s", id)
        self._publish(EventKind.UPDATED, id, merged)
        return merged

    @staticmethod
    def _normalize_changes(changes: Union[Mapping[str, Any], MealRecord]) -> dict:
        if isinstance(changes, MealRecord):
            return {
                "timestamp": changes.timestamp,
                "image_uri": changes.image_uri,
                "after_image_uri": changes.after_image_uri,
                "analysis": changes.analysis,
                "comment": changes.comment,
            }
        if not isinstance(changes, Mapping):
            raise ValidationError(f"Changes must be a mapping or MealRecord, got {type(changes).__name__}")

        unknown = set(changes) - _UPDATABLE_FIELDS - _MANAGED_FIELDS
        if unknown:
            raise ValidationError(f"Unknown meal fields: {', '.join(sorted(unknown))}")

        fields = {k: v for k, v in changes.items() if k in _UPDATABLE_FIELDS}
        if "timestamp" in fields:
            try:
                parse_utc_timestamp(fields["timestamp"])
            except (ValueError, TypeError):
                raise ValidationError(f"Invalid timestamp: {fields['timestamp']!r}") from None
        analysis = fields.get("analysis")
        if analysis is not None and not isinstance(analysis, MealAnalysis):
            try:
                fields["analysis"] = MealAnalysis.from_dict(analysis)
            except AnalysisFailure as e:
                raise ValidationError(f"Invalid analysis: {e}") from e
        if "comment" in fields and fields["comment"] is None:
            fields["comment"] = ""
        return fields

    def _set_state(self, id: str, state: MealState, error: Optional[str]) -> Optional[MealRecord]:
        self.initialize()
        existing = self._load(id)
        if existing is None:
            logger.warning("Cannot mark meal %s as %s, not found", id, state.value)
            return None
        updated = existing.evolve(state=state, error=error)
        self._write_record(updated)
        self._publish(EventKind.UPDATED, id, updated)
        return updated

    def mark_error(self, id: str, reason: str = ERROR_ANALYSIS_FAILED) -> Optional[MealRecord]:
        """Flag the meal's last analysis attempt as failed.

        Any existing analysis is kept. The index is not touched.
        """
        return self._set_state(id, MealState.ERROR, reason)

    def mark_analyzing(self, id: str) -> Optional[MealRecord]:
        """Flag the meal as being (re)analyzed. The index is not touched."""
        return self._set_state(id, MealState.ANALYZING, None)

    def restore(self, record: MealRecord) -> Optional[MealRecord]:
        """Write back a previously read record as-is (rollback of a failed edit).

        The index is not touched. A meal deleted in the meantime stays deleted.
        """
        self.initialize()
        if not self._record_path(record.id).exists():
            logger.warning("Restore skipped, meal %s was deleted", record.id)
            return None
        self._write_record(record)
        self._publish(EventKind.UPDATED, record.id, record)
        return record

    def delete(self, id: str) -> bool:
        """
        Delete a meal. Deleting a meal that is already gone is not an error.

        Images are left on disk.

        Returns:
            True if an index entry or record file was removed
        """
        self.initialize()
        entries = self._read_index()
        remaining = [e for e in entries if e.id != id]
        removed = [e for e in entries if e.id == id]
        if removed:
            self._write_index(remaining)

        paths = {self._entry_path(e) for e in removed}
        try:
            validate_id(id)
            paths.add(self._record_path(id))
        except ValidationError:
            pass
        existed = any(p.exists() for p in paths)
        for path in paths:
            self._remove_file(path)

        if removed or existed:
            logger.info("Deleted meal %s", id)
            self._publish(EventKind.DELETED, id)
            return True
        return False

    def clear(self) -> int:
        """Delete every meal. Images are left on disk. Returns count removed."""
        self.initialize()
        entries = self._read_index()
        self._write_index([])
        for entry in entries:
            self._remove_file(self._entry_path(entry))
            self._publish(EventKind.DELETED, entry.id)
        logger.info("Cleared %d meals", len(entries))
        return len(entries)

    def clear_by_time_range(self, time_range: Union[str, TimeRange]) -> int:
        """
        Delete the most recent meals: everything logged within the window.

        ``day`` removes meals from the last 24 hours and keeps anything
        older. ``all`` removes everything. Meals with unparseable timestamps
        are kept.

        Returns:
            Number of meals removed

        Raises:
            ValidationError: Unknown range name
        """
        rng = TimeRange.parse(time_range)
        if rng is TimeRange.ALL:
            return self.clear()

        self.initialize()
        cutoff = self._clock() - rng.window
        to_delete: list[IndexEntry] = []
        to_keep: list[IndexEntry] = []
        for entry in self._read_index():
            try:
                in_window = parse_utc_timestamp(entry.timestamp) >= cutoff
            except ValueError:
                in_window = False
            (to_delete if in_window else to_keep).append(entry)

        self._write_index(to_keep)
        for entry in to_delete:
            self._remove_file(self._entry_path(entry))
            self._publish(EventKind.DELETED, entry.id)
        logger.info("Cleared %d meals from the last %s", len(to_delete), rng.value)
        return len(to_delete)

    def relog(self, id: str, new_id: str, timestamp: Optional[str] = None) -> MealRecord:
        """
        Log an existing meal again under a new id.

        Photos are copied (never shared) and the analysis is carried over.

        Raises:
            NotFoundError: If the source meal does not exist
        """
        source = self.get(id)
        if source is None:
            raise NotFoundError(f"Meal {id} not found")
        validate_id(new_id)

        image_uri = None
        after_uri = None
        if source.has_image:
            image_uri = self._blobs.copy_blob(source.image_uri, new_id, "before")
        if source.after_image_uri:
            after_uri = self._blobs.copy_blob(source.after_image_uri, new_id, "after")

        state = MealState.COMPLETE if source.analysis is not None else MealState.PENDING
        return self.create(MealRecord(
            id=new_id,
            timestamp=timestamp or utc_now(),
            image_uri=image_uri,
            after_image_uri=after_uri,
            analysis=source.analysis,
            comment=source.comment,
            state=state,
        ))

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[MealRecord]:
        """Read one meal. Returns None if it is missing or unreadable."""
        try:
            validate_id(id)
        except ValidationError:
            return None
        return self._load(id)

    def exists(self, id: str) -> bool:
        return any(e.id == id for e in self._read_index())

    def list(self) -> list[MealRecord]:
        """
        All meals in index order.

        Never raises: unreadable record files are logged and skipped so one
        bad file cannot hide the rest of the history.
        """
        try:
            self.initialize()
        except OSError as e:
            logger.warning("Store unavailable, listing nothing: %s", e)
            return []

        meals = []
        for entry in self._read_index():
            path = self._entry_path(entry)
            try:
                meals.append(self._read_record_file(path))
            except (OSError, ValueError, TypeError) as e:
                logger.warning("Skipping unreadable meal file %s: %s", path.name, e)
        return meals

    def list_chronological(self) -> list[MealRecord]:
        """All meals, newest timestamp first (independent of index order)."""
        return sorted(self.list(), key=lambda m: sort_key(m.timestamp), reverse=True)

    def list_ids(self) -> list[str]:
        return [e.id for e in self._read_index()]

    def count(self) -> int:
        return len(self._read_index())

"""
Bridge from meal records to an external health datastore.

Each meal is written as one nutrition entry keyed by the meal id. Every
write carries a client record version that increases by one per
successful write of that meal, so the datastore replaces the previous
entry instead of duplicating it. The last successful version per meal is
kept in a small JSON file next to the store (mode 0600).
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional

from .errors import SyncError
from .providers.base import HealthStore, NutritionPayload
from .types import SCHEMA_VERSION, MealRecord, parse_utc_timestamp, to_iso

logger = logging.getLogger(__name__)

STATE_FILENAME = "health_sync.json"

# Nutrition entries span one minute from the meal timestamp
ENTRY_DURATION = timedelta(minutes=1)


class VersionMap:
    """
    Persistent ``meal id -> last written version`` map plus the last known
    permission state.

    A missing or unreadable file reads as empty; the map never goes
    backwards (``commit`` rejects a version that is not newer).
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._versions: dict[str, int] = {}
        self._permission_granted = False
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning("Health sync state unreadable, starting empty: %s", e)
            return
        if not isinstance(raw, dict):
            logger.warning("Health sync state has unexpected shape, starting empty")
            return
        versions = raw.get("versions")
        if isinstance(versions, dict):
            self._versions = {
                str(k): int(v) for k, v in versions.items()
                if isinstance(v, int) and not isinstance(v, bool) and v > 0
            }
        self._permission_granted = raw.get("permissionGranted") is True

    def _save(self) -> None:
        data = json.dumps({
            "schemaVersion": SCHEMA_VERSION,
            "versions": self._versions,
            "permissionGranted": self._permission_granted,
        }, indent=2)
        tmp = self._path.with_name(f".{self._path.name}.{os.getpid()}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, self._path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            logger.warning("Failed to persist health sync state: %s", e)

    def get(self, id: str) -> int:
        """Last successfully written version, 0 if never written."""
        return self._versions.get(id, 0)

    def next_version(self, id: str) -> int:
        return self.get(id) + 1

    def commit(self, id: str, version: int) -> None:
        """Record a successful write.

        Raises:
            ValueError: If ``version`` is not greater than the stored one
        """
        current = self.get(id)
        if version <= current:
            raise ValueError(
                f"Version for {id} must increase (stored {current}, got {version})"
            )
        self._versions[id] = version
        self._save()

    @property
    def permission_granted(self) -> bool:
        return self._permission_granted

    def set_permission(self, granted: bool) -> None:
        if granted != self._permission_granted:
            self._permission_granted = granted
            self._save()

    def __len__(self) -> int:
        return len(self._versions)


@dataclass
class SyncResult:
    """Outcome of a full sync."""
    synced: int = 0
    failed: int = 0
    skipped: int = 0


def build_payload(record: MealRecord, version: int) -> NutritionPayload:
    """Map a meal with analysis to a nutrition entry.

    Raises:
        ValueError: If the record has no analysis or an unparseable timestamp
    """
    if record.analysis is None:
        raise ValueError(f"Meal {record.id} has no analysis")
    start = parse_utc_timestamp(record.timestamp)
    totals = record.analysis.totals
    return NutritionPayload(
        client_record_id=record.id,
        client_record_version=version,
        start_time=to_iso(start),
        end_time=to_iso(start + ENTRY_DURATION),
        name=record.analysis.title or "Meal",
        energy_kcal=totals.total_calories,
        protein_g=totals.total_protein_g,
        carbs_g=totals.total_total_carbohydrate_g,
        fat_g=totals.total_total_fat_g,
    )


class HealthSyncBridge:
    """
    Writes meal nutrition to a ``HealthStore`` with monotonic versions.

    With no health store (platform integration unavailable) every operation
    is a quiet no-op.
    """

    def __init__(
        self,
        health_store: Optional[HealthStore],
        state_path: Path,
        *,
        list_records: Optional[Callable[[], Iterable[MealRecord]]] = None,
    ):
        """
        Args:
            health_store: Datastore collaborator, or None when unavailable
            state_path: Path of the version map file
            list_records: Source of existing meals for the post-grant sync
        """
        self._health = health_store
        self._versions = VersionMap(state_path)
        self._list_records = list_records
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def available(self) -> bool:
        return self._health is not None

    @property
    def versions(self) -> VersionMap:
        return self._versions

    async def has_permission(self) -> bool:
        """
        Live permission check, remembered for when the live check fails.

        A revocation is picked up by the next successful live check.
        """
        if self._health is None:
            return False
        try:
            granted = bool(await self._health.has_write_permission())
        except Exception as e:
            logger.warning("Permission check failed, using last known state: %s", e)
            return self._versions.permission_granted
        self._versions.set_permission(granted)
        return granted

    async def request_permission(self) -> bool:
        """
        Ask for write permission. On grant, sync every existing meal once.

        Returns:
            True if permission was granted
        """
        if self._health is None:
            logger.info("Health datastore not available")
            return False
        try:
            granted = bool(await self._health.request_permission())
        except Exception as e:
            logger.warning("Permission request failed: %s", e)
            return False
        self._versions.set_permission(granted)
        if not granted:
            logger.info("Nutrition write permission declined")
            return False

        if self._list_records is not None:
            try:
                result = await self.sync_all(self._list_records())
                logger.info("Initial sync: %d synced, %d failed", result.synced, result.failed)
            except Exception as e:
                logger.warning("Initial full sync failed: %s", e)
        return True

    def _lock_for(self, id: str) -> asyncio.Lock:
        lock = self._locks.get(id)
        if lock is None:
            lock = self._locks[id] = asyncio.Lock()
        return lock

    async def _write(self, record: MealRecord) -> int:
        # Version read, upsert and commit happen under the meal's lock;
        # concurrent writes for one meal go out as N+1, N+2, ...
        async with self._lock_for(record.id):
            version = self._versions.next_version(record.id)
            try:
                payload = build_payload(record, version)
                await self._health.upsert(payload)
            except SyncError:
                raise
            except Exception as e:
                raise SyncError(f"Failed to sync meal {record.id}: {e}") from e
            try:
                self._versions.commit(record.id, version)
            except ValueError as e:
                raise SyncError(f"Failed to record version for meal {record.id}: {e}") from e
        logger.debug("Synced meal %s (version %d)", record.id, version)
        return version

    async def sync(self, record: MealRecord) -> Optional[int]:
        """
        Write one meal to the datastore.

        Returns:
            The version written, or None when skipped (no datastore, no
            permission, or no analysis yet)

        Raises:
            SyncError: The write failed; the stored version is unchanged
        """
        if self._health is None or record.analysis is None:
            return None
        if not await self.has_permission():
            return None
        return await self._write(record)

    async def sync_all(self, records: Iterable[MealRecord]) -> SyncResult:
        """Write every meal that has an analysis, counting outcomes."""
        result = SyncResult()
        if self._health is None or not await self.has_permission():
            return result
        for record in records:
            if record.analysis is None:
                result.skipped += 1
                continue
            try:
                await self._write(record)
                result.synced += 1
            except SyncError as e:
                logger.warning("%s", e)
                result.failed += 1
        return result

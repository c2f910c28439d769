"""Tests for the file-backed meal record store."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import minutes_ago, sample_analysis, sample_analysis_dict, text_meal
from openmeal.errors import NotFoundError, ValidationError
from openmeal.events import EventKind
from openmeal.record_store import INDEX_FILENAME, RecordStore
from openmeal.types import MealAnalysis, MealRecord, MealState, TimeRange, to_iso


def _index(store: RecordStore) -> dict:
    return json.loads((store.meals_dir / INDEX_FILENAME).read_text())


def _complete(id: str, timestamp: str, **kwargs) -> MealRecord:
    return MealRecord(
        id=id,
        timestamp=timestamp,
        analysis=sample_analysis(),
        state=MealState.COMPLETE,
        comment=kwargs.pop("comment", "lunch"),
        **kwargs,
    )


class TestCreateAndGet:
    """Round trip through create/get."""

    def test_create_then_get_returns_equal_record(self, store):
        record = _complete("m1", minutes_ago(10), comment="chicken salad")
        store.create(record)

        loaded = store.get("m1")
        assert loaded == record
        assert loaded.analysis.extra == {"overall_meal_notes": "Balanced lunch"}

    def test_create_pending_is_listed_in_pending_state(self, store):
        store.create_pending(text_meal("m1"))

        meals = store.list()
        assert [m.id for m in meals] == ["m1"]
        assert meals[0].state is MealState.PENDING
        assert meals[0].analysis is None
        assert meals[0].is_loading
        assert not meals[0].has_error

    def test_create_pending_discards_supplied_analysis(self, store):
        record = _complete("m1", minutes_ago(1))
        stored = store.create_pending(record)
        assert stored.state is MealState.PENDING
        assert stored.analysis is None

    def test_create_copies_image_into_managed_storage(self, store, image_file):
        stored = store.create(_complete("m1", minutes_ago(1), image_uri=str(image_file)))

        assert stored.image_uri != str(image_file)
        assert Path(stored.image_uri).parent == store.blob_store.images_dir
        assert Path(stored.image_uri).name.startswith("m1_")
        assert Path(stored.image_uri).read_bytes() == image_file.read_bytes()

    def test_after_image_gets_after_suffix(self, store, image_file, after_image_file):
        stored = store.create_pending(MealRecord(
            id="m1", timestamp=minutes_ago(1),
            image_uri=str(image_file), after_image_uri=str(after_image_file),
        ))
        assert Path(stored.after_image_uri).name.startswith("m1_after_")

    def test_missing_image_and_comment_is_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create_pending(MealRecord(id="m1", timestamp=minutes_ago(1), comment="   "))
        assert store.count() == 0

    def test_missing_timestamp_is_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create_pending(MealRecord(id="m1", timestamp="", comment="soup"))

    def test_invalid_timestamp_is_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create_pending(MealRecord(id="m1", timestamp="yesterday", comment="soup"))

    @pytest.mark.parametrize("bad_id", ["", "../escape", "a/b", "a\\b", "nul\x00"])
    def test_unsafe_ids_are_rejected(self, store, bad_id):
        with pytest.raises(ValidationError):
            store.create_pending(MealRecord(id=bad_id, timestamp=minutes_ago(1), comment="soup"))

    def test_get_missing_returns_none(self, store):
        assert store.get("nope") is None

    def test_get_unsafe_id_returns_none(self, store):
        assert store.get("../../etc/passwd") is None

    def test_recreate_same_id_replaces_entry(self, store):
        store.create_pending(text_meal("m1", comment="first"))
        store.create_pending(text_meal("m2"))
        store.create_pending(text_meal("m1", comment="second"))

        assert [e["id"] for e in _index(store)["meals"]] == ["m1", "m2"]
        assert store.get("m1").comment == "second"


class TestIndexOrdering:
    """Insertion order after create, timestamp order after update."""

    def test_create_inserts_at_front_regardless_of_timestamp(self, store):
        store.create_pending(text_meal("new", timestamp=minutes_ago(5)))
        store.create_pending(text_meal("old", timestamp=minutes_ago(500)))

        assert [m.id for m in store.list()] == ["old", "new"]
        assert [m.id for m in store.list_chronological()] == ["new", "old"]

    def test_update_resorts_index_by_timestamp(self, store):
        store.create_pending(text_meal("new", timestamp=minutes_ago(5)))
        store.create_pending(text_meal("old", timestamp=minutes_ago(500)))

        store.update("old", {"analysis": sample_analysis()})
        assert [m.id for m in store.list()] == ["new", "old"]

    def test_update_timestamp_moves_entry(self, store):
        store.create_pending(text_meal("b", timestamp=minutes_ago(20)))
        store.create_pending(text_meal("a", timestamp=minutes_ago(10)))

        store.update("b", {"timestamp": minutes_ago(1)})
        index = _index(store)["meals"]
        assert [e["id"] for e in index] == ["b", "a"]
        assert index[0]["timestamp"] == store.get("b").timestamp

    def test_every_index_entry_has_a_readable_file(self, store):
        for i in range(5):
            store.create_pending(text_meal(f"m{i}"))
        store.delete("m2")
        store.update("m3", {"comment": "edited"})

        index = _index(store)
        assert index["schemaVersion"] == 1
        for entry in index["meals"]:
            path = store.meals_dir / entry["filename"]
            assert path.exists()
            assert store.get(entry["id"]) is not None


class TestRetention:
    """Retention cap eviction."""

    def test_cap_keeps_most_recent_insertions(self, tmp_path):
        store = RecordStore(tmp_path / "meals", retention_cap=3)
        for i in range(5):
            store.create_pending(text_meal(f"m{i}"))

        assert store.count() == 3
        assert [m.id for m in store.list()] == ["m4", "m3", "m2"]
        assert not (store.meals_dir / "meal_m0.json").exists()
        assert not (store.meals_dir / "meal_m1.json").exists()

    def test_default_cap_is_fifty(self, store):
        for i in range(51):
            store.create_pending(text_meal(f"m{i:02d}"))
        assert store.count() == 50
        assert store.get("m00") is None

    def test_eviction_keeps_images(self, tmp_path, image_file):
        store = RecordStore(tmp_path / "meals", retention_cap=1)
        first = store.create_pending(MealRecord(id="m1", timestamp=minutes_ago(2), image_uri=str(image_file)))
        store.create_pending(text_meal("m2"))

        assert store.get("m1") is None
        assert Path(first.image_uri).exists()

    def test_eviction_publishes_delete(self, tmp_path, events):
        store = RecordStore(tmp_path / "meals", retention_cap=1, events=events)
        seen = []
        events.subscribe(seen.append)
        store.create_pending(text_meal("m1"))
        store.create_pending(text_meal("m2"))

        assert (EventKind.DELETED, "m1") in [(e.kind, e.meal_id) for e in seen]

    def test_zero_cap_is_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            RecordStore(tmp_path / "meals", retention_cap=0)


class TestUpdate:
    """Merging updates and transient state."""

    def test_update_clears_error_state(self, store):
        store.create_pending(text_meal("m1"))
        store.mark_error("m1")

        updated = store.update("m1", {"analysis": sample_analysis()})
        assert updated.state is MealState.COMPLETE
        assert not updated.is_loading
        assert not updated.has_error
        assert updated.error is None

    def test_update_without_analysis_uses_empty_analysis(self, store):
        store.create_pending(text_meal("m1"))
        updated = store.update("m1", {"comment": "added note"})

        assert updated.state is MealState.COMPLETE
        assert updated.analysis == MealAnalysis.empty()
        assert updated.comment == "added note"

    def test_update_accepts_analysis_dict(self, store):
        store.create_pending(text_meal("m1"))
        updated = store.update("m1", {"analysis": sample_analysis_dict(calories=600)})
        assert updated.analysis.totals.total_calories == 600

    def test_update_accepts_full_record(self, store):
        store.create_pending(text_meal("m1"))
        record = store.get("m1").evolve(comment="replaced")
        assert store.update("m1", record).comment == "replaced"

    def test_update_missing_record_returns_none(self, store):
        assert store.update("ghost", {"comment": "x"}) is None
        assert store.count() == 0

    def test_update_unknown_field_is_rejected(self, store):
        store.create_pending(text_meal("m1"))
        with pytest.raises(ValidationError):
            store.update("m1", {"calories": 100})

    def test_update_bad_analysis_is_rejected(self, store):
        store.create_pending(text_meal("m1"))
        with pytest.raises(ValidationError):
            store.update("m1", {"analysis": {"title": "no totals"}})

    def test_update_ignores_state_fields(self, store):
        store.create_pending(text_meal("m1"))
        updated = store.update("m1", {"state": "error", "id": "other", "comment": "ok"})
        assert updated.id == "m1"
        assert updated.state is MealState.COMPLETE

    def test_update_reinserts_lost_index_entry(self, store):
        store.create_pending(text_meal("m1"))
        (store.meals_dir / INDEX_FILENAME).write_text(json.dumps({"schemaVersion": 1, "meals": []}))

        store.update("m1", {"comment": "found again"})
        assert [m.id for m in store.list()] == ["m1"]

    def test_mark_error_keeps_analysis_and_index(self, store):
        store.create(_complete("m1", minutes_ago(3)))
        before = _index(store)["meals"]

        marked = store.mark_error("m1", "analysis_failed")
        assert marked.state is MealState.ERROR
        assert marked.error == "analysis_failed"
        assert marked.analysis == sample_analysis()
        assert _index(store)["meals"] == before

    def test_mark_error_missing_returns_none(self, store):
        assert store.mark_error("ghost") is None

    def test_mark_analyzing(self, store):
        store.create_pending(text_meal("m1"))
        store.mark_error("m1")
        marked = store.mark_analyzing("m1")
        assert marked.state is MealState.ANALYZING
        assert marked.is_loading
        assert not marked.has_error

    def test_restore_writes_record_back(self, store):
        original = store.create_pending(text_meal("m1"))
        store.update("m1", {"comment": "changed"})

        store.restore(original)
        assert store.get("m1") == original

    def test_restore_after_delete_does_nothing(self, store):
        original = store.create_pending(text_meal("m1"))
        store.delete("m1")
        assert store.restore(original) is None
        assert store.get("m1") is None


class TestDelete:
    """Delete and clear."""

    def test_delete_is_idempotent(self, store):
        store.create_pending(text_meal("m1"))
        store.create_pending(text_meal("m2"))

        assert store.delete("m1") is True
        assert store.delete("m1") is False
        assert [m.id for m in store.list()] == ["m2"]

    def test_delete_keeps_images(self, store, image_file):
        stored = store.create_pending(MealRecord(id="m1", timestamp=minutes_ago(1), image_uri=str(image_file)))
        store.delete("m1")
        assert Path(stored.image_uri).exists()

    def test_delete_removes_orphan_file(self, store):
        store.create_pending(text_meal("m1"))
        (store.meals_dir / INDEX_FILENAME).write_text(json.dumps({"schemaVersion": 1, "meals": []}))

        assert store.delete("m1") is True
        assert not (store.meals_dir / "meal_m1.json").exists()

    def test_clear_removes_everything(self, store):
        for i in range(3):
            store.create_pending(text_meal(f"m{i}"))
        assert store.clear() == 3
        assert store.list() == []
        assert list(store.meals_dir.glob("meal_*.json")) == []


class TestClearByTimeRange:
    """Clearing the most recent window of history."""

    NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)

    def _store(self, tmp_path) -> RecordStore:
        store = RecordStore(tmp_path / "meals", clock=lambda: self.NOW)
        for id, age in (("recent", timedelta(hours=2)), ("old", timedelta(hours=48)), ("ancient", timedelta(days=400))):
            store.create_pending(MealRecord(id=id, timestamp=to_iso(self.NOW - age), comment=id))
        return store

    def test_day_removes_last_24_hours_only(self, tmp_path):
        store = self._store(tmp_path)
        assert store.clear_by_time_range("day") == 1
        assert sorted(m.id for m in store.list()) == ["ancient", "old"]

    def test_hour_removes_nothing_older(self, tmp_path):
        store = self._store(tmp_path)
        assert store.clear_by_time_range(TimeRange.HOUR) == 0
        assert store.count() == 3

    def test_month_and_year(self, tmp_path):
        store = self._store(tmp_path)
        assert store.clear_by_time_range("month") == 2
        assert [m.id for m in store.list()] == ["ancient"]

        store = self._store(tmp_path / "again")
        assert store.clear_by_time_range("year") == 2

    def test_all_removes_everything(self, tmp_path):
        store = self._store(tmp_path)
        assert store.clear_by_time_range("all") == 3
        assert store.count() == 0

    def test_invalid_range_is_rejected(self, tmp_path):
        store = self._store(tmp_path)
        with pytest.raises(ValidationError):
            store.clear_by_time_range("week")
        assert store.count() == 3

    def test_unparseable_index_timestamp_is_kept(self, tmp_path):
        store = self._store(tmp_path)
        index = _index(store)
        recent = next(e for e in index["meals"] if e["id"] == "recent")
        recent["timestamp"] = "garbage"
        (store.meals_dir / INDEX_FILENAME).write_text(json.dumps(index))

        assert store.clear_by_time_range("day") == 0
        assert "recent" in store.list_ids()


class TestFailureSemantics:
    """Corrupt files never break listings."""

    def test_corrupt_index_reads_as_empty(self, store):
        store.create_pending(text_meal("m1"))
        (store.meals_dir / INDEX_FILENAME).write_text("{not json")

        assert store.list() == []
        assert store.count() == 0

    def test_unreadable_record_is_skipped(self, store):
        store.create_pending(text_meal("m1"))
        store.create_pending(text_meal("m2"))
        (store.meals_dir / "meal_m1.json").write_text("{broken")

        assert [m.id for m in store.list()] == ["m2"]
        assert store.get("m1") is None

    @pytest.mark.parametrize("field, value", [
        ("analysis", {"total_meal_nutritional_values": {}, "meal_insights": {"health_benefits": 5}}),
        ("analysis", {"total_meal_nutritional_values": {}, "meal_items": "soup"}),
        ("analysis", "soup"),
        ("imageUri", 42),
        ("comment", ["toast"]),
        ("state", "cooking"),
    ])
    def test_wrong_shape_record_is_skipped(self, store, field, value):
        store.create_pending(text_meal("m1"))
        store.create_pending(text_meal("m2"))
        path = store.meals_dir / "meal_m1.json"
        data = json.loads(path.read_text())
        data[field] = value
        path.write_text(json.dumps(data))

        assert [m.id for m in store.list()] == ["m2"]
        assert store.get("m1") is None

    def test_every_indexed_id_has_a_readable_file(self, store):
        for i in range(6):
            store.create_pending(text_meal(f"m{i}", timestamp=minutes_ago(10 - i)))
        store.update("m1", {"analysis": sample_analysis()})
        store.update("m3", {"timestamp": minutes_ago(30)})
        store.delete("m2")
        store.mark_error("m4")
        store.delete("m5")

        ids = store.list_ids()
        assert sorted(ids) == ["m0", "m1", "m3", "m4"]
        for id in ids:
            assert store.get(id) is not None
        assert {p.name for p in store.meals_dir.glob("meal_*.json")} == {f"meal_{id}.json" for id in ids}

    def test_missing_record_file_is_skipped(self, store):
        store.create_pending(text_meal("m1"))
        store.create_pending(text_meal("m2"))
        (store.meals_dir / "meal_m1.json").unlink()

        assert [m.id for m in store.list()] == ["m2"]
        assert store.get("m1") is None
        # The index still lists it until something removes it
        assert "m1" in store.list_ids()

    def test_newer_schema_version_is_unreadable(self, store):
        store.create_pending(text_meal("m1"))
        path = store.meals_dir / "meal_m1.json"
        data = json.loads(path.read_text())
        data["schemaVersion"] = 99
        path.write_text(json.dumps(data))

        assert store.list() == []

    def test_legacy_record_without_state(self, store):
        store.create_pending(text_meal("m1"))
        path = store.meals_dir / "meal_m1.json"
        path.write_text(json.dumps({
            "id": "m1",
            "timestamp": minutes_ago(1),
            "imageUri": "",
            "comment": "toast",
            "analysis": {"isAnalyzing": True, "title": "Analyzing meal..."},
            "isLoading": False,
            "hasError": True,
        }))

        meal = store.get("m1")
        assert meal.state is MealState.ERROR
        assert meal.analysis is None
        assert meal.is_text_only

    def test_record_file_is_pretty_json_with_derived_flags(self, store):
        store.create_pending(text_meal("m1"))
        store.mark_error("m1")
        text = (store.meals_dir / "meal_m1.json").read_text()
        data = json.loads(text)

        assert text.startswith("{\n  ")
        assert data["state"] == "error"
        assert data["hasError"] is True
        assert data["isLoading"] is False
        assert data["imageUri"] == ""

    def test_no_temp_files_left_behind(self, store):
        for i in range(3):
            store.create_pending(text_meal(f"m{i}"))
        store.update("m1", {"comment": "x"})
        assert list(store.meals_dir.glob(".*.tmp")) == []


class TestEventsAndRelog:
    """Notifications and relogging."""

    def test_mutations_publish_events(self, store, events):
        seen = []
        events.subscribe(seen.append)

        store.create_pending(text_meal("m1"))
        store.update("m1", {"comment": "x"})
        store.delete("m1")

        assert [(e.kind, e.meal_id) for e in seen] == [
            (EventKind.ADDED, "m1"),
            (EventKind.UPDATED, "m1"),
            (EventKind.DELETED, "m1"),
        ]
        assert seen[0].record.state is MealState.PENDING
        assert seen[2].record is None

    def test_relog_copies_images_and_analysis(self, store, image_file):
        source = store.create(_complete("m1", minutes_ago(600), image_uri=str(image_file)))

        copy = store.relog("m1", "m2", minutes_ago(0))
        assert copy.id == "m2"
        assert copy.analysis == source.analysis
        assert copy.state is MealState.COMPLETE
        assert copy.image_uri != source.image_uri
        assert Path(copy.image_uri).name.startswith("m2_before_")
        assert Path(copy.image_uri).read_bytes() == image_file.read_bytes()
        assert [m.id for m in store.list()] == ["m2", "m1"]

    def test_relog_unanalyzed_meal_is_pending(self, store):
        store.create_pending(text_meal("m1"))
        assert store.relog("m1", "m2").state is MealState.PENDING

    def test_relog_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            store.relog("ghost", "m2")

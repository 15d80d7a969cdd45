"""Tests for the StateStore — versioned records, serial, lineage, locking."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from strataform.core.state_store import StateStore
from strataform.errors import StateConflictError
from strataform.models.state import StateRecord


def _record(address: str = "test_thing.a", rid: str = "thing-1", **fields) -> StateRecord:
    defaults = {
        "address": address,
        "resource_type": "test_thing",
        "provider": "test",
        "resource_id": rid,
        "arguments": {"value": "x"},
        "attributes": {"arn": f"arn:test:{rid}"},
    }
    defaults.update(fields)
    return StateRecord(**defaults)


class TestRecords:
    def test_absent_record_is_none(self, store: StateStore):
        assert store.get("test_thing.a") is None
        assert store.list_records() == []

    def test_put_and_get_round_trip(self, store: StateStore):
        stored = store.put("test_thing.a", _record(dependencies=["test_thing.z"]))
        fetched = store.get("test_thing.a")
        assert fetched == stored
        assert fetched.version == 1
        assert fetched.arguments == {"value": "x"}
        assert fetched.dependencies == ["test_thing.z"]

    def test_put_bumps_version_and_serial(self, store: StateStore):
        assert store.serial == 0
        store.put("test_thing.a", _record())
        second = store.put("test_thing.a", _record(arguments={"value": "y"}))
        assert second.version == 2
        assert store.serial == 2

    def test_list_records_ordered_by_identity(self, store: StateStore):
        store.put("test_thing.b", _record("test_thing.b"))
        store.put("test_thing.a", _record("test_thing.a"))
        assert store.identities() == ["test_thing.a", "test_thing.b"]

    def test_delete(self, store: StateStore):
        store.put("test_thing.a", _record())
        assert store.delete("test_thing.a") is True
        assert store.get("test_thing.a") is None
        assert store.delete("test_thing.a") is False

    def test_values_merge_arguments_attributes_and_id(self):
        values = _record().values()
        assert values == {"value": "x", "arn": "arn:test:thing-1", "id": "thing-1"}

    def test_persisted_across_instances(self, tmp_path):
        first = StateStore(tmp_path / "s.db")
        first.put("test_thing.a", _record())
        second = StateStore(tmp_path / "s.db")
        assert second.get("test_thing.a") is not None
        assert second.lineage == first.lineage
        assert second.serial == 1


class TestCompareAndSwap:
    def test_expected_zero_means_absent(self, store: StateStore):
        store.put("test_thing.a", _record(), expected_version=0)
        with pytest.raises(StateConflictError):
            store.put("test_thing.a", _record(), expected_version=0)

    def test_stale_version_rejected(self, store: StateStore):
        store.put("test_thing.a", _record())
        store.put("test_thing.a", _record(), expected_version=1)
        with pytest.raises(StateConflictError) as excinfo:
            store.put("test_thing.a", _record(), expected_version=1)
        assert excinfo.value.address == "test_thing.a"

    def test_failed_write_leaves_old_record(self, store: StateStore):
        store.put("test_thing.a", _record())
        serial = store.serial
        with pytest.raises(StateConflictError):
            store.put("test_thing.a", _record(arguments={"value": "z"}), expected_version=7)
        assert store.get("test_thing.a").arguments == {"value": "x"}
        assert store.serial == serial

    def test_delete_with_stale_version(self, store: StateStore):
        store.put("test_thing.a", _record())
        with pytest.raises(StateConflictError):
            store.delete("test_thing.a", expected_version=3)
        assert store.get("test_thing.a") is not None


class TestPutReplacing:
    def test_original_kept_as_deposed(self, store: StateStore):
        store.put("test_thing.a", _record(rid="thing-old"))
        store.put_replacing(
            "test_thing.a",
            _record(rid="thing-new"),
            deposed_identity="test_thing.a#deposed",
            expected_version=1,
        )
        assert store.get("test_thing.a").resource_id == "thing-new"
        deposed = store.get("test_thing.a#deposed")
        assert deposed.resource_id == "thing-old"
        assert deposed.deposed is True

    def test_existing_deposed_record_conflicts(self, store: StateStore):
        store.put("test_thing.a", _record(rid="thing-1"))
        store.put("test_thing.a#deposed", _record("test_thing.a#deposed", rid="thing-0"))
        with pytest.raises(StateConflictError, match="deposed"):
            store.put_replacing(
                "test_thing.a", _record(rid="thing-2"), deposed_identity="test_thing.a#deposed"
            )
        assert store.get("test_thing.a").resource_id == "thing-1"


class TestIdentityLocks:
    def test_locks_released_after_writes(self, store: StateStore):
        def write(n: int) -> None:
            address = f"test_thing.n{n % 4}"
            store.put(address, _record(address, f"thing-{n}"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(write, range(32)))
        store.delete("test_thing.n0")

        assert store._locks == {}
        assert store.serial == 33
        assert len(store.list_records()) == 3

    def test_failed_write_releases_lock(self, store: StateStore):
        with pytest.raises(StateConflictError):
            store.put("test_thing.a", _record(), expected_version=5)
        assert store._locks == {}
        store.put("test_thing.a", _record(), expected_version=0)


class TestMetadata:
    def test_lineage_is_stable(self, store: StateStore):
        lineage = store.lineage
        store.put("test_thing.a", _record())
        assert store.lineage == lineage
        assert len(lineage) == 36

    def test_outputs(self, store: StateStore):
        assert store.get_outputs() == {}
        store.set_outputs({"ip": "10.0.0.1"})
        assert store.get_outputs() == {"ip": "10.0.0.1"}

    def test_export_document(self, store: StateStore):
        store.put("test_thing.a", _record())
        store.set_outputs({"x": 1})
        doc = store.export_document()
        assert doc.format_version == 1
        assert doc.serial == 1
        assert doc.lineage == store.lineage
        assert set(doc.resources) == {"test_thing.a"}
        assert doc.outputs == {"x": 1}


class TestImportDocument:
    def test_restore_earlier_export(self, store: StateStore):
        store.put("test_thing.a", _record())
        store.set_outputs({"x": 1})
        backup = store.export_document()
        store.delete("test_thing.a")
        store.set_outputs({})

        with pytest.raises(StateConflictError, match="older"):
            store.import_document(backup)

        current = store.export_document()
        restored = backup.model_copy(update={"serial": current.serial})
        assert store.import_document(restored) == current.serial + 1
        assert store.get("test_thing.a").resource_id == "thing-1"
        assert store.get_outputs() == {"x": 1}

    def test_empty_state_adopts_lineage(self, store: StateStore, tmp_path):
        other = StateStore(tmp_path / "other.db")
        other.put("test_thing.a", _record())
        other.put("test_thing.b", _record("test_thing.b", "thing-2"))
        assert store.import_document(other.export_document()) == 3
        assert store.lineage == other.lineage
        assert [r.address for r in store.list_records()] == ["test_thing.a", "test_thing.b"]

    def test_foreign_lineage_rejected(self, store: StateStore, tmp_path):
        store.put("test_thing.a", _record())
        other = StateStore(tmp_path / "other.db")
        other.put("test_thing.z", _record("test_thing.z"))
        with pytest.raises(StateConflictError, match="lineage"):
            store.import_document(other.export_document())
        assert store.get("test_thing.z") is None

    def test_unknown_format_version(self, store: StateStore):
        doc = store.export_document().model_copy(update={"format_version": 99})
        with pytest.raises(StateConflictError, match="format version"):
            store.import_document(doc)


class TestStateLock:
    def test_acquire_and_release(self, store: StateStore):
        lock_id = store.acquire_lock("alice")
        info = store.lock_info()
        assert info.owner == "alice"
        assert info.lock_id == lock_id
        store.release_lock(lock_id)
        assert store.lock_info() is None

    def test_second_acquire_conflicts(self, store: StateStore):
        store.acquire_lock("alice")
        with pytest.raises(StateConflictError, match="alice"):
            store.acquire_lock("bob")

    def test_release_unknown_lock(self, store: StateStore):
        with pytest.raises(StateConflictError):
            store.release_lock("nope")

    def test_locked_context_releases_on_error(self, store: StateStore):
        with pytest.raises(RuntimeError):
            with store.locked("alice"):
                raise RuntimeError("boom")
        assert store.lock_info() is None

    def test_force_unlock(self, store: StateStore):
        store.acquire_lock("crashed")
        assert store.force_unlock() is True
        assert store.force_unlock() is False
        store.acquire_lock("next")

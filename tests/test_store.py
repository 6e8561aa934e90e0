"""
Tests for the ordered key-value store — namespaces, atomic writes, range
scans, put-if-absent, and failure behaviour.
"""

from __future__ import annotations

import json
import os

import pytest

from patchnet import KEY_SEPARATOR, NS_PATCHES, NS_PROJECTS
from patchnet.store import KVStore, NotFound, StorageError, prefix_range


@pytest.fixture
def store(tmp_path):
    return KVStore(root=tmp_path / "store")


class TestCollection:

    def test_put_get(self, store):
        coll = store.namespace(NS_PROJECTS)
        coll.put("com.example.app", {"path": "/tmp/app"})
        assert coll.get("com.example.app") == {"path": "/tmp/app"}

    def test_get_missing_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.namespace(NS_PROJECTS).get("nope")

    def test_not_found_is_key_error(self, store):
        with pytest.raises(KeyError):
            store.namespace(NS_PROJECTS).get("nope")

    def test_get_returns_copy(self, store):
        coll = store.namespace(NS_PROJECTS)
        coll.put("a", {"items": [1]})
        value = coll.get("a")
        value["items"].append(2)
        assert coll.get("a") == {"items": [1]}

    def test_put_overwrites(self, store):
        coll = store.namespace(NS_PROJECTS)
        coll.put("a", 1)
        coll.put("a", 2)
        assert coll.get("a") == 2

    def test_has(self, store):
        coll = store.namespace(NS_PROJECTS)
        assert not coll.has("a")
        coll.put("a", 1)
        assert coll.has("a")

    def test_delete_is_idempotent(self, store):
        coll = store.namespace(NS_PROJECTS)
        coll.put("a", 1)
        coll.delete("a")
        coll.delete("a")
        assert not coll.has("a")

    def test_put_if_absent(self, store):
        coll = store.namespace(NS_PATCHES)
        assert coll.put_if_absent("k", "first") is True
        assert coll.put_if_absent("k", "second") is False
        assert coll.get("k") == "first"

    def test_empty_key_rejected(self, store):
        with pytest.raises(ValueError):
            store.namespace(NS_PROJECTS).put("", 1)

    def test_namespaces_are_isolated(self, store):
        store.namespace(NS_PROJECTS).put("a", 1)
        assert not store.namespace(NS_PATCHES).has("a")

    def test_invalid_namespace_name(self, store):
        with pytest.raises(ValueError):
            store.namespace("../escape")

    def test_batch(self, store):
        coll = store.namespace(NS_PATCHES)
        coll.put("gone", 0)
        coll.batch([
            {"type": "put", "key": "a", "value": 1},
            {"type": "put", "key": "b", "value": 2},
            {"type": "del", "key": "gone"},
        ])
        assert coll.read_all() == {"a": 1, "b": 2}

    def test_batch_unknown_op_writes_nothing(self, store):
        coll = store.namespace(NS_PATCHES)
        with pytest.raises(ValueError):
            coll.batch([
                {"type": "put", "key": "a", "value": 1},
                {"type": "bogus", "key": "b"},
            ])
        assert not coll.has("a")

    def test_count_and_drop(self, store):
        coll = store.namespace(NS_PATCHES)
        coll.put("a", 1)
        coll.put("b", 2)
        assert coll.count() == 2
        coll.drop()
        assert coll.count() == 0


class TestPersistence:

    def test_survives_reopen(self, tmp_path):
        KVStore(tmp_path).namespace(NS_PROJECTS).put("a", {"x": 1})
        assert KVStore(tmp_path).namespace(NS_PROJECTS).get("a") == {"x": 1}

    def test_file_is_json(self, tmp_path):
        KVStore(tmp_path).namespace(NS_PROJECTS).put("a", 1)
        data = json.loads((tmp_path / "projects.json").read_text())
        assert data == {"a": 1}

    def test_no_temp_files_left(self, tmp_path):
        coll = KVStore(tmp_path).namespace(NS_PROJECTS)
        for i in range(5):
            coll.put(f"k{i}", i)
        leftovers = [p for p in os.listdir(tmp_path) if p.endswith(".tmp")]
        assert leftovers == []

    def test_corrupt_file_raises_storage_error(self, tmp_path):
        (tmp_path / "projects.json").write_text("{not json")
        with pytest.raises(StorageError):
            KVStore(tmp_path).namespace(NS_PROJECTS).get("a")

    def test_non_object_file_raises_storage_error(self, tmp_path):
        (tmp_path / "projects.json").write_text("[1, 2]")
        with pytest.raises(StorageError):
            KVStore(tmp_path).namespace(NS_PROJECTS).has("a")

    def test_failed_write_leaves_file_unchanged(self, tmp_path, monkeypatch):
        coll = KVStore(tmp_path).namespace(NS_PROJECTS)
        coll.put("a", 1)

        def boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("patchnet.store.os.replace", boom)
        with pytest.raises(StorageError):
            coll.put("b", 2)
        assert not coll.has("b")
        assert coll.get("a") == 1


class TestReadRange:

    @pytest.fixture
    def coll(self, store):
        coll = store.namespace(NS_PATCHES)
        for key in ("a", "b", "c", "d"):
            coll.put(key, key.upper())
        return coll

    def test_all_in_order(self, coll):
        assert [k for k, _v in coll.read_range()] == ["a", "b", "c", "d"]

    def test_bounds(self, coll):
        assert [k for k, _v in coll.read_range(gt="a", lte="c")] == ["b", "c"]
        assert [k for k, _v in coll.read_range(gte="b", lt="d")] == ["b", "c"]

    def test_limit_and_reverse(self, coll):
        assert [k for k, _v in coll.read_range(limit=2)] == ["a", "b"]
        assert [k for k, _v in coll.read_range(reverse=True, limit=1)] == ["d"]

    def test_values(self, coll):
        assert dict(coll.read_range(gte="c")) == {"c": "C", "d": "D"}


class TestPrefixRange:

    def test_selects_only_that_project(self, store):
        coll = store.namespace(NS_PATCHES)
        coll.put(f"app{KEY_SEPARATOR}p1", 1)
        coll.put(f"app{KEY_SEPARATOR}p2", 2)
        coll.put(f"app.other{KEY_SEPARATOR}p3", 3)
        coll.put(f"apple{KEY_SEPARATOR}p4", 4)
        coll.put("app", 0)

        keys = [k for k, _v in coll.read_range(**prefix_range("app"))]
        assert keys == [f"app{KEY_SEPARATOR}p1", f"app{KEY_SEPARATOR}p2"]

    def test_bounds_shape(self):
        bounds = prefix_range("x")
        assert bounds == {"gte": "x\xff", "lt": "x\xff\xff"}


class TestSharedRoot:
    """Two store handles on one root, as with a running node and a CLI command."""

    def test_delete_from_other_handle_sticks(self, tmp_path):
        node = KVStore(tmp_path).namespace(NS_PATCHES)
        cli = KVStore(tmp_path).namespace(NS_PATCHES)
        p1 = "app" + KEY_SEPARATOR + "p1"
        p2 = "app" + KEY_SEPARATOR + "p2"

        node.put(p1, {"n": 1})
        cli.delete(p1)
        node.put(p2, {"n": 2})

        fresh = KVStore(tmp_path).namespace(NS_PATCHES)
        assert [k for k, _v in fresh.read_range()] == [p2]

    def test_sees_writes_from_other_handle(self, tmp_path):
        first = KVStore(tmp_path).namespace(NS_PROJECTS)
        second = KVStore(tmp_path).namespace(NS_PROJECTS)
        assert first.count() == 0

        second.put("app", {"x": 1})
        assert first.has("app")
        assert not first.put_if_absent("app", {"x": 2})
        assert first.get("app") == {"x": 1}

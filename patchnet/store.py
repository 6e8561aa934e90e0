"""
Ordered key-value store — durable, namespaced state for every other component.

Storage layout:
    ~/.patchnet/store/projects.json   — bundleId -> project record
    ~/.patchnet/store/patches.json    — bundleId \\xff patchId -> patch record
    ~/.patchnet/store/keys.json       — author identity -> trusted public key
    ~/.patchnet/store/state.json      — singleton keys (peer, user)

All writes are atomic (temp file + os.replace) for crash safety.
Keys are strings and iterate in code-point order, so a prefix scan over
``bundleId + "\\xff"`` visits exactly one project's patches.

Failures to read or write the backing files surface as StorageError and
are never retried here.
"""

from __future__ import annotations

import copy
import json
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Iterable, Iterator

from patchnet import KEY_SEPARATOR

# Namespace names double as file names
_NAMESPACE_RE = re.compile(r"^[a-z][a-z0-9_-]{0,63}$")

# Default store root
_DEFAULT_ROOT = Path.home() / ".patchnet" / "store"


class StorageError(Exception):
    """The backing store is unavailable or unreadable."""


class NotFound(KeyError):
    """A point lookup found no value for the key."""


def prefix_range(prefix: str) -> dict[str, str]:
    """Bounds covering every key of the form ``prefix + KEY_SEPARATOR + ...``."""
    return {
        "gte": prefix + KEY_SEPARATOR,
        "lt": prefix + KEY_SEPARATOR + KEY_SEPARATOR,
    }


def _in_bounds(
    key: str,
    gt: str | None,
    gte: str | None,
    lt: str | None,
    lte: str | None,
) -> bool:
    if gt is not None and not key > gt:
        return False
    if gte is not None and not key >= gte:
        return False
    if lt is not None and not key < lt:
        return False
    if lte is not None and not key <= lte:
        return False
    return True


class Collection:
    """One namespace of the store, backed by a single JSON file.

    Every operation re-reads the file under the lock, so several store
    handles on one root (a running node and a CLI command) see each
    other's writes. A failed write leaves the file unchanged.
    """

    def __init__(self, root: Path, name: str, lock: threading.RLock) -> None:
        self.root = root
        self.name = name
        self.path = root / f"{name}.json"
        self._lock = lock

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise ValueError(f"Invalid key: must be a non-empty string, got {key!r}")

    def _load(self) -> dict[str, Any]:
        """Read the namespace file. Missing file = empty namespace."""
        if not self.path.is_file():
            return {}
        try:
            raw = self.path.read_text(encoding="utf-8")
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read namespace {self.name!r}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Namespace {self.name!r} is not a JSON object")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        """Atomically write the namespace file (temp + rename)."""
        payload = json.dumps(data, indent=2, sort_keys=True)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.root), suffix=".tmp", prefix=f".{self.name}_"
            )
        except OSError as e:
            raise StorageError(f"Cannot write namespace {self.name!r}: {e}") from e
        try:
            os.write(fd, payload.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            os.replace(tmp_path, str(self.path))
        except OSError as e:
            try:
                os.close(fd)
            except OSError:
                pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StorageError(f"Cannot write namespace {self.name!r}: {e}") from e

    def get(self, key: str) -> Any:
        """Return the value for key. Raises NotFound if absent."""
        self._validate_key(key)
        with self._lock:
            data = self._load()
            if key not in data:
                raise NotFound(key)
            return copy.deepcopy(data[key])

    def has(self, key: str) -> bool:
        self._validate_key(key)
        with self._lock:
            return key in self._load()

    def put(self, key: str, value: Any) -> None:
        """Insert or overwrite unconditionally."""
        self._validate_key(key)
        with self._lock:
            data = self._load()
            data[key] = copy.deepcopy(value)
            self._write(data)

    def put_if_absent(self, key: str, value: Any) -> bool:
        """Insert only if the key is absent. Returns True if inserted.

        Check and insert happen under one lock hold, so two concurrent
        writers of the same key cannot both succeed.
        """
        self._validate_key(key)
        with self._lock:
            data = self._load()
            if key in data:
                return False
            data[key] = copy.deepcopy(value)
            self._write(data)
            return True

    def delete(self, key: str) -> None:
        """Delete key. Deleting a missing key is a no-op."""
        self._validate_key(key)
        with self._lock:
            data = self._load()
            if key not in data:
                return
            del data[key]
            self._write(data)

    def batch(self, ops: Iterable[dict[str, Any]]) -> None:
        """Apply a list of ``{"type": "put"|"del", "key", "value"}`` ops in one write."""
        with self._lock:
            data = self._load()
            for op in ops:
                key = op.get("key")
                self._validate_key(key)
                if op.get("type") == "put":
                    data[key] = copy.deepcopy(op.get("value"))
                elif op.get("type") == "del":
                    data.pop(key, None)
                else:
                    raise ValueError(f"Unknown batch op type: {op.get('type')!r}")
            self._write(data)

    def count(self) -> int:
        with self._lock:
            return len(self._load())

    def read_range(
        self,
        gt: str | None = None,
        gte: str | None = None,
        lt: str | None = None,
        lte: str | None = None,
        limit: int | None = None,
        reverse: bool = False,
    ) -> Iterator[tuple[str, Any]]:
        """Iterate ``(key, value)`` pairs in key order within the bounds.

        The iterator walks a snapshot taken on the first ``next()``; call
        again to restart. ``limit`` caps the number of rows yielded.
        """
        with self._lock:
            data = self._load()
            keys = sorted(
                (k for k in data if _in_bounds(k, gt, gte, lt, lte)),
                reverse=reverse,
            )
            if limit is not None:
                keys = keys[:max(0, limit)]
            rows = [(k, copy.deepcopy(data[k])) for k in keys]
        yield from rows

    def read_all(self) -> dict[str, Any]:
        """Return the whole namespace as an ordered dict copy."""
        return dict(self.read_range())

    def drop(self) -> None:
        """Delete every key in the namespace."""
        with self._lock:
            self._write({})


class KVStore:
    """File-based ordered key-value store, one JSON file per namespace.

    Usage:
        store = KVStore()
        store.namespace("projects").put("com.example.app", {...})
        for key, value in store.namespace("patches").read_range(**prefix_range(bid)):
            ...
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else _DEFAULT_ROOT
        self._lock = threading.RLock()
        self._collections: dict[str, Collection] = {}

    def namespace(self, name: str) -> Collection:
        """Return the collection for a namespace, creating the handle on first use."""
        if not isinstance(name, str) or not _NAMESPACE_RE.match(name):
            raise ValueError(f"Invalid namespace name: {name!r}")
        with self._lock:
            coll = self._collections.get(name)
            if coll is None:
                coll = Collection(self.root, name, self._lock)
                self._collections[name] = coll
            return coll

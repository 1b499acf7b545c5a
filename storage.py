"""
Key-value persistence port

Stands in for browser storage on the server: get / set / remove over JSON-able
values, with adapters for memory, a flat JSON file and MongoDB. Every write
is published on a ChangeFeed so long-lived readers can drop cached views.
"""
import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

_MISSING = object()


class StorageError(Exception):
    """Raised when the backing medium cannot be read or written."""


@dataclass(frozen=True)
class StorageChange:
    key: str
    removed: bool = False


class ChangeFeed:
    """Explicit publish/subscribe channel for storage changes."""

    def __init__(self):
        self._subscribers: List[Tuple[Optional[str], Callable[[StorageChange], None]]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[StorageChange], None], key: Optional[str] = None) -> Callable[[], None]:
        entry = (key, callback)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, change: StorageChange) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for key, callback in subscribers:
            if key is not None and key != change.key:
                continue
            try:
                callback(change)
            except Exception:
                logger.exception("Change subscriber failed for key %s", change.key)


class KeyValueStore(ABC):
    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed or ChangeFeed()

    @abstractmethod
    def _read(self, key: str) -> Any:
        """Return the stored value or _MISSING."""

    @abstractmethod
    def _write(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def _delete(self, key: str) -> None:
        ...

    @abstractmethod
    def _update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """Replace the value with fn(value or _MISSING) as one step; return the new value."""

    def full_key(self, key: str) -> str:
        return key

    def get(self, key: str, default: Any = None) -> Any:
        value = self._read(key)
        if value is _MISSING:
            return default
        return value

    def set(self, key: str, value: Any) -> None:
        self._write(key, value)
        self.feed.publish(StorageChange(self.full_key(key)))

    def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """
        Read-modify-write `key` atomically: `fn` gets the current value (a copy of
        `default` when missing) and returns the value to store. Nothing is written
        if `fn` raises.
        """

        def apply(current):
            return fn(copy.deepcopy(default) if current is _MISSING else current)

        value = self._update(key, apply)
        self.feed.publish(StorageChange(self.full_key(key)))
        return value

    def remove(self, key: str) -> None:
        self._delete(key)
        self.feed.publish(StorageChange(self.full_key(key), removed=True))

    def namespace(self, prefix: str) -> "NamespacedStore":
        return NamespacedStore(self, prefix)


class NamespacedStore(KeyValueStore):
    """View of a parent store with every key prefixed, e.g. one browser's keys."""

    def __init__(self, parent: KeyValueStore, prefix: str):
        super().__init__(parent.feed)
        self.parent = parent
        self.prefix = prefix

    def full_key(self, key: str) -> str:
        return self.parent.full_key(f"{self.prefix}:{key}")

    def _read(self, key):
        return self.parent._read(f"{self.prefix}:{key}")

    def _write(self, key, value):
        self.parent._write(f"{self.prefix}:{key}", value)

    def _delete(self, key):
        self.parent._delete(f"{self.prefix}:{key}")

    def _update(self, key, fn):
        return self.parent._update(f"{self.prefix}:{key}", fn)


class MemoryStore(KeyValueStore):
    """Process-local store. Values are copied in and out like serialized storage."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        super().__init__(feed)
        self._data: Dict[str, Any] = {}
        self._lock = threading.RLock()

    def _read(self, key):
        with self._lock:
            if key not in self._data:
                return _MISSING
            return copy.deepcopy(self._data[key])

    def _write(self, key, value):
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def _delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def _update(self, key, fn):
        with self._lock:
            value = fn(self._read(key))
            self._write(key, value)
            return value


class JsonDocument:
    """
    A whole JSON object persisted in one file.

    Writes replace the document atomically (temp file + os.replace). `update`
    serializes read-modify-write cycles within this process only.
    """

    def __init__(self, path: Path, seed: Optional[Callable[[], Dict[str, Any]]] = None):
        self.path = Path(path)
        self.seed = seed
        self.lock = threading.RLock()

    def load(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            if self.seed is None:
                return {}
            data = self.seed()
            self.write(data)
            return data
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read {self.path.name}") from e

    def write(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=2)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {self.path.name}") from e

    def update(self, fn: Callable[[Dict[str, Any]], Any]) -> Any:
        with self.lock:
            data = self.load()
            result = fn(data)
            self.write(data)
            return result


class JsonFileStore(KeyValueStore):
    def __init__(self, path: Path, feed: Optional[ChangeFeed] = None):
        super().__init__(feed)
        self.document = JsonDocument(path)

    def _read(self, key):
        return self.document.load().get(key, _MISSING)

    def _write(self, key, value):
        self.document.update(lambda data: data.__setitem__(key, value))

    def _delete(self, key):
        self.document.update(lambda data: data.pop(key, None))

    def _update(self, key, fn):
        def apply(data):
            data[key] = fn(data.get(key, _MISSING))
            return data[key]

        return self.document.update(apply)


class MongoStore(KeyValueStore):
    """
    One document per key: {_id: key, value: ...}.

    `update` is serialized within this process only.
    """

    def __init__(self, db, collection: str = "storefront", feed: Optional[ChangeFeed] = None):
        super().__init__(feed)
        if db is None:
            raise StorageError("DATABASE_URL and DATABASE_NAME must be set for the mongo backend")
        self.collection = db[collection]
        self._lock = threading.Lock()

    def _read(self, key):
        try:
            doc = self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise StorageError(f"Failed to read {key}") from e
        if not doc:
            return _MISSING
        return doc.get("value")

    def _write(self, key, value):
        try:
            self.collection.update_one({"_id": key}, {"$set": {"value": value}}, upsert=True)
        except PyMongoError as e:
            raise StorageError(f"Failed to write {key}") from e

    def _delete(self, key):
        try:
            self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            raise StorageError(f"Failed to delete {key}") from e

    def _update(self, key, fn):
        with self._lock:
            value = fn(self._read(key))
            self._write(key, value)
            return value


def build_store(backend: str, data_dir: Path, feed: Optional[ChangeFeed] = None) -> KeyValueStore:
    if backend == "memory":
        return MemoryStore(feed)
    if backend == "mongo":
        from database import db

        return MongoStore(db, feed=feed)
    if backend == "json":
        return JsonFileStore(Path(data_dir) / "storefront.json", feed)
    raise ValueError(f"Unknown storage backend: {backend}")

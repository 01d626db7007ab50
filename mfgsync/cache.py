from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol

from mfgsync.models import DashboardSnapshot, PipelineState
from mfgsync.settings import DEFAULT_TTL_MS


logger = logging.getLogger(__name__)

KEY_ETL_COMPLETED = "etlCompleted"
KEY_LAST_UPDATED = "dataLastUpdated"
KEY_SNAPSHOT = "cachedDashboardData"
KEY_CACHE_TIMESTAMP = "cacheTimestamp"

ALL_KEYS = (KEY_ETL_COMPLETED, KEY_LAST_UPDATED, KEY_SNAPSHOT, KEY_CACHE_TIMESTAMP)

Clock = Callable[[], int]


def system_clock() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileKeyValueStore:
    """One UTF-8 file per key; writes go through a temp file + ``os.replace``."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            logger.warning("Ignoring undecodable cache file %s: %s", path, exc)
            return None

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp, self._path(key))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


@dataclass(frozen=True)
class CacheLookup:
    snapshot: Optional[DashboardSnapshot]
    age_ms: Optional[int] = None

    @property
    def hit(self) -> bool:
        return self.snapshot is not None


MISS = CacheLookup(snapshot=None)


class SnapshotCache:
    def __init__(self, store: KeyValueStore, *, ttl_ms: int = DEFAULT_TTL_MS, clock: Clock = system_clock) -> None:
        self.store = store
        self.ttl_ms = ttl_ms
        self.clock = clock

    def _captured_at(self) -> Optional[int]:
        raw = self.store.get(KEY_CACHE_TIMESTAMP)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("Discarding corrupt cache timestamp %r", raw)
            self.store.delete(KEY_CACHE_TIMESTAMP)
            return None

    def peek(self) -> Optional[DashboardSnapshot]:
        """Persisted snapshot regardless of age, or ``None`` when absent/corrupt."""
        raw = self.store.get(KEY_SNAPSHOT)
        if raw is None:
            return None
        try:
            return DashboardSnapshot.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Discarding corrupt cached snapshot: %s", exc)
            self.store.delete(KEY_SNAPSHOT)
            self.store.delete(KEY_CACHE_TIMESTAMP)
            return None

    def get(self, max_age_ms: Optional[int] = None) -> CacheLookup:
        max_age_ms = self.ttl_ms if max_age_ms is None else max_age_ms
        captured_at = self._captured_at()
        if captured_at is None:
            return MISS
        age = self.clock() - captured_at
        if age > max_age_ms:
            return CacheLookup(snapshot=None, age_ms=age)
        snapshot = self.peek()
        if snapshot is None:
            return MISS
        return CacheLookup(snapshot=snapshot, age_ms=age)

    def is_fresh(self, max_age_ms: Optional[int] = None) -> bool:
        max_age_ms = self.ttl_ms if max_age_ms is None else max_age_ms
        captured_at = self._captured_at()
        return captured_at is not None and self.clock() - captured_at <= max_age_ms

    def put(self, snapshot: DashboardSnapshot) -> bool:
        """Persist ``snapshot`` unless a newer capture is already stored."""
        current = self._captured_at()
        if current is not None and current > snapshot.captured_at:
            logger.info("Skipping cache write: captured_at %s older than stored %s", snapshot.captured_at, current)
            return False
        self.store.set(KEY_SNAPSHOT, json.dumps(snapshot.to_dict()))
        self.store.set(KEY_CACHE_TIMESTAMP, str(snapshot.captured_at))
        return True

    def clear(self) -> None:
        for key in ALL_KEYS:
            self.store.delete(key)


class PipelineStateStore:
    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def load(self) -> PipelineState:
        completed = self.store.get(KEY_ETL_COMPLETED) == "true"
        raw_updated = self.store.get(KEY_LAST_UPDATED)
        last_updated = None
        if raw_updated is not None:
            try:
                last_updated = int(raw_updated)
            except ValueError:
                logger.warning("Ignoring corrupt %s value %r", KEY_LAST_UPDATED, raw_updated)
        return PipelineState(etl_completed=completed, last_updated=last_updated)

    def save(self, state: PipelineState) -> None:
        self.store.set(KEY_ETL_COMPLETED, "true" if state.etl_completed else "false")
        if state.last_updated is None:
            self.store.delete(KEY_LAST_UPDATED)
        else:
            self.store.set(KEY_LAST_UPDATED, str(state.last_updated))

import json
import os
import queue
import tempfile
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ValidationError

from sleep_well.schema import AlarmSettings, LockState

ALARM_SETTINGS = "alarm_settings"
LOCK_STATE = "lock_state"

_MODELS: dict[str, type[BaseModel]] = {
    ALARM_SETTINGS: AlarmSettings,
    LOCK_STATE: LockState,
}

Listener = Callable[[str, BaseModel], None]


class StoreWriteError(Exception):
    """A record could not be persisted."""


class JsonSettingsStore:
    """
    Persists the alarm settings and the lock state as two JSON records.

    Every write replaces a whole record (temp file + os.replace) while holding
    the store lock, so concurrent writers never interleave fields; the last
    writer wins. Reads return defaults for records that were never written.
    Changes made by other processes are picked up by refresh().
    """

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._cache: dict[str, BaseModel] = {}
        self._stamps: dict[str, tuple[int, int, int] | None] = {}

    def _path(self, record: str) -> Path:
        return self.data_dir / f"{record}.json"

    def _stamp(self, record: str) -> tuple[int, int, int] | None:
        """Identifies the file version; os.replace always changes the inode."""
        try:
            st = self._path(record).stat()
            return st.st_mtime_ns, st.st_ino, st.st_size
        except OSError:
            return None

    def _load(self, record: str) -> BaseModel:
        model = _MODELS[record]
        stamp = self._stamp(record)
        if record in self._cache and self._stamps.get(record) == stamp:
            return self._cache[record]

        if stamp is None:
            value = model()
        else:
            try:
                with open(self._path(record)) as f:
                    value = model.model_validate(json.load(f))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.error(f"Failed to load {record}, using defaults: {e}")
                value = model()

        self._cache[record] = value
        self._stamps[record] = stamp
        return value

    def _read(self, record: str) -> BaseModel:
        with self._lock:
            return self._load(record)

    def _write(self, record: str, value: BaseModel) -> None:
        with self._lock:
            previous = self._load(record)
            self._persist(record, value)
        if previous != value:
            self._notify(record, value)

    def _persist(self, record: str, value: BaseModel) -> None:
        path = self._path(record)
        tmp_name = None
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.data_dir, prefix=f".{record}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as f:
                f.write(value.model_dump_json(indent=4))
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise StoreWriteError(f"Failed to write {record}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

        self._cache[record] = value
        self._stamps[record] = self._stamp(record)
        logger.debug(f"Saved {record}: {value!r}")

    def _update(self, record: str, fn: Callable) -> BaseModel:
        with self._lock:
            current = self._load(record)
            updated = fn(current)
            if updated is None or updated == current:
                return current
            self._persist(record, updated)
        self._notify(record, updated)
        return updated

    # --- Alarm settings ---

    def read_alarm_settings(self) -> AlarmSettings:
        return self._read(ALARM_SETTINGS)

    def write_alarm_settings(self, alarm: AlarmSettings) -> None:
        self._write(ALARM_SETTINGS, alarm)

    def update_alarm_settings(
        self, fn: Callable[[AlarmSettings], AlarmSettings | None]
    ) -> AlarmSettings:
        """Atomic read-modify-write. ``fn`` may return None to leave the record alone."""
        return self._update(ALARM_SETTINGS, fn)

    def observe_alarm_settings(
        self, stop_event: threading.Event | None = None
    ) -> Iterator[AlarmSettings]:
        return self._observe(ALARM_SETTINGS, stop_event)

    # --- Lock state ---

    def read_lock_state(self) -> LockState:
        return self._read(LOCK_STATE)

    def write_lock_state(self, state: LockState) -> None:
        self._write(LOCK_STATE, state)

    def update_lock_state(
        self, fn: Callable[[LockState], LockState | None]
    ) -> LockState:
        """Atomic read-modify-write. ``fn`` may return None to leave the record alone."""
        return self._update(LOCK_STATE, fn)

    def observe_lock_state(
        self, stop_event: threading.Event | None = None
    ) -> Iterator[LockState]:
        return self._observe(LOCK_STATE, stop_event)

    # --- Change notification ---

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, record: str, value: BaseModel) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(record, value)
            except Exception:
                logger.exception(f"Listener failed while handling {record} change")

    def refresh(self) -> list[str]:
        """Reloads records changed on disk by another process and notifies listeners."""
        changed = []
        with self._lock:
            for record in _MODELS:
                if record in self._cache and self._stamps.get(record) == self._stamp(record):
                    continue
                previous = self._cache.get(record)
                current = self._load(record)
                if previous is not None and previous != current:
                    changed.append((record, current))
        for record, value in changed:
            logger.debug(f"Detected external change to {record}")
            self._notify(record, value)
        return [record for record, _ in changed]

    def _observe(
        self, record: str, stop_event: threading.Event | None
    ) -> Iterator[BaseModel]:
        """Yields the current value, then every change until stop_event is set."""
        changes: queue.Queue = queue.Queue()

        def on_change(name: str, value: BaseModel) -> None:
            if name == record:
                changes.put(value)

        self.add_listener(on_change)
        try:
            yield self._read(record)
            while stop_event is None or not stop_event.is_set():
                try:
                    value = changes.get(timeout=0.5)
                except queue.Empty:
                    continue
                yield value
        finally:
            self.remove_listener(on_change)

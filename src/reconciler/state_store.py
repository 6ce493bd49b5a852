"""
Per-device, reload-durable key/value store for reconciliation flags.

The store holds strings only. RefreshState is the typed view the
controller uses; it performs every read-modify-write under the store lock
so the refresh-attempt counter and flag transitions stay exact when
triggers arrive on different threads.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set, Union

from src.common.logger import setup_logger

logger = setup_logger(__name__)


# Persisted flag keys
NEEDS_REFRESH = 'needsRefresh'
NEEDS_SECOND_REFRESH = 'needsSecondRefresh'
REFRESH_SHOWN = 'refreshShown'
REFRESH_ATTEMPTS = 'refreshAttempts'
ACTIVATION_COMPLETE = 'activationComplete'
ACTIVATION_IN_PROGRESS = 'activationInProgress'
ACCOUNT_JUST_CREATED = 'accountJustCreated'
NEW_ACCOUNT_HOUSE_ID = 'newAccountHouseId'
COPIED_HOUSES = 'copiedHouses'
PLAYLISTS_COPIED = 'playlistsCopied'
ENVIRONMENT_CREATION_NEEDED = 'environmentCreationNeeded'
SCREEN_SETUP_FAILED = 'screenSetupFailed'
CURRENT_HOUSE_ID = 'current_house_id'


class StateStore(ABC):
    """String key/value store scoped to one device."""

    def __init__(self):
        # Shared by every view of this store
        self.lock = threading.RLock()

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""

    @abstractmethod
    def keys(self) -> Iterable[str]:
        """List stored keys."""


class MemoryStateStore(StateStore):
    """In-process store, for tests and one-shot runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        super().__init__()
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> Iterable[str]:
        return list(self._data.keys())

    def __repr__(self) -> str:
        return f"MemoryStateStore(keys={len(self._data)})"


class JsonFileStateStore(StateStore):
    """
    Store backed by a JSON file, rewritten on every change.

    Writes go to a temp file first and are then renamed over the old one,
    so a crash mid-write never leaves a truncated state file.
    """

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        self._data: Dict[str, str] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read the state file from disk."""
        with self.lock:
            if not self.path.exists():
                self._data = {}
                return

            try:
                with open(self.path, 'r') as f:
                    raw = json.load(f)
            except (OSError, ValueError) as e:
                logger.error("Unreadable state file %s, starting empty: %s", self.path, e)
                self._data = {}
                return

            if not isinstance(raw, dict):
                logger.error("State file %s is not an object, starting empty", self.path)
                self._data = {}
                return

            self._data = {str(k): str(v) for k, v in raw.items()}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        with open(temp_path, 'w') as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(temp_path, self.path)

    def get(self, key: str) -> Optional[str]:
        with self.lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self.lock:
            self._data[key] = str(value)
            self._flush()

    def delete(self, key: str) -> None:
        with self.lock:
            if key in self._data:
                del self._data[key]
                self._flush()

    def keys(self) -> Iterable[str]:
        with self.lock:
            return list(self._data.keys())

    def __repr__(self) -> str:
        return f"JsonFileStateStore(path={self.path})"


def state_file_for_device(state_dir: Union[str, Path], device_id: str) -> Path:
    """Path of the state file belonging to one device."""
    return Path(state_dir) / f"state-{device_id}.json"


class RefreshState:
    """
    Typed access to the reconciliation flags kept in a StateStore.

    Booleans are stored as 'true'; false flags are deleted rather than
    written, so a fresh store reads as all-false / zero.
    """

    def __init__(self, store: StateStore):
        self.store = store

    @property
    def lock(self) -> threading.RLock:
        return self.store.lock

    # Generic accessors

    def flag(self, key: str) -> bool:
        return self.store.get(key) == 'true'

    def set_flag(self, key: str, value: bool = True) -> None:
        with self.lock:
            if value:
                self.store.set(key, 'true')
            else:
                self.store.delete(key)

    def clear(self, *keys: str) -> None:
        with self.lock:
            for key in keys:
                self.store.delete(key)

    def transition(self, **changes: Any) -> None:
        """
        Apply several flag changes as one step.

        Keyword names are flag keys; True/False set or clear booleans,
        None deletes, anything else is stored as a string.
        """
        with self.lock:
            for key, value in changes.items():
                if value is True:
                    self.store.set(key, 'true')
                elif value is False or value is None:
                    self.store.delete(key)
                else:
                    self.store.set(key, str(value))

    # Named flags

    @property
    def needs_refresh(self) -> bool:
        return self.flag(NEEDS_REFRESH)

    @property
    def needs_second_refresh(self) -> bool:
        return self.flag(NEEDS_SECOND_REFRESH)

    @property
    def refresh_shown(self) -> bool:
        return self.flag(REFRESH_SHOWN)

    @property
    def activation_complete(self) -> bool:
        return self.flag(ACTIVATION_COMPLETE)

    @property
    def activation_in_progress(self) -> bool:
        return self.flag(ACTIVATION_IN_PROGRESS)

    @property
    def account_just_created(self) -> bool:
        return self.flag(ACCOUNT_JUST_CREATED)

    @property
    def new_account_house_id(self) -> Optional[str]:
        return self.store.get(NEW_ACCOUNT_HOUSE_ID)

    @property
    def environment_creation_needed(self) -> bool:
        return self.flag(ENVIRONMENT_CREATION_NEEDED)

    @property
    def screen_setup_failed(self) -> bool:
        return self.flag(SCREEN_SETUP_FAILED)

    @property
    def refresh_attempts(self) -> int:
        raw = self.store.get(REFRESH_ATTEMPTS)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            logger.warning("Corrupt %s value %r, treating as 0", REFRESH_ATTEMPTS, raw)
            return 0

    def increment_refresh_attempts(self) -> int:
        """
        Atomically add one to refreshAttempts.

        Returns:
            The value before the increment
        """
        with self.lock:
            previous = self.refresh_attempts
            self.store.set(REFRESH_ATTEMPTS, str(previous + 1))
            return previous

    # Copied houses

    @property
    def copied_houses(self) -> Set[str]:
        raw = self.store.get(COPIED_HOUSES)
        if not raw:
            return set()
        try:
            values = json.loads(raw)
        except ValueError:
            logger.warning("Corrupt %s value %r, treating as empty", COPIED_HOUSES, raw)
            return set()
        return {str(v) for v in values} if isinstance(values, list) else set()

    def add_copied_house(self, house_id: str) -> bool:
        """
        Record that default content was copied into a house.

        Returns:
            False if the house was already recorded
        """
        with self.lock:
            houses = self.copied_houses
            if house_id in houses:
                return False
            houses.add(house_id)
            self.store.set(COPIED_HOUSES, json.dumps(sorted(houses)))
            return True

    def snapshot(self) -> Dict[str, Any]:
        """Current flags as plain values, for logs and status output."""
        with self.lock:
            return {
                NEEDS_REFRESH: self.needs_refresh,
                NEEDS_SECOND_REFRESH: self.needs_second_refresh,
                REFRESH_SHOWN: self.refresh_shown,
                REFRESH_ATTEMPTS: self.refresh_attempts,
                ACTIVATION_COMPLETE: self.activation_complete,
                ACCOUNT_JUST_CREATED: self.account_just_created,
                NEW_ACCOUNT_HOUSE_ID: self.new_account_house_id,
                COPIED_HOUSES: sorted(self.copied_houses),
                ENVIRONMENT_CREATION_NEEDED: self.environment_creation_needed,
                SCREEN_SETUP_FAILED: self.screen_setup_failed,
            }

    def __repr__(self) -> str:
        return f"RefreshState(store={self.store!r})"

"""
Local persistence for the screen agent.
Keeps the device identity in a JSON file that survives reboots.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from src.common.logger import setup_logger

logger = setup_logger(__name__)

DEVICE_ID_KEY = "device_id"
PAIRING_CODE_KEY = "pairing_code"
ASSIGNED_PATH_KEY = "last_known_assigned_path"
HOSTNAME_KEY = "hostname_override"

# Keys forgotten when the screen record turns out to be gone
IDENTITY_KEYS = (DEVICE_ID_KEY, PAIRING_CODE_KEY, ASSIGNED_PATH_KEY)


class JsonFileStore:
    """Durable string key/value store backed by one JSON file."""

    def __init__(self, path: str):
        """
        Args:
            path: Location of the JSON file (parent directories are created)
        """
        self.path = Path(path)
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        """Read the file; a missing or corrupt file yields an empty store."""
        if not self.path.exists():
            return {}

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Local state unreadable (%s), starting fresh: %s", self.path, e)
            return {}

        if not isinstance(data, dict):
            logger.warning("Local state is not an object, starting fresh: %s", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def _save(self) -> None:
        """Write atomically: temp file in the same directory, then replace."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(self._data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._data.get(key) == value:
            return
        self._data[key] = value
        self._save()

    def remove(self, key: str) -> None:
        if key not in self._data:
            return
        del self._data[key]
        self._save()

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def __repr__(self) -> str:
        return f"JsonFileStore(path={self.path})"


class LocalState:
    """Typed view of the persisted device identity."""

    def __init__(self, store: JsonFileStore):
        self._store = store

    def _set_or_remove(self, key: str, value: Optional[str]) -> None:
        if value:
            self._store.set(key, value)
        else:
            self._store.remove(key)

    @property
    def device_id(self) -> Optional[str]:
        """Id of this device's screen record."""
        return self._store.get(DEVICE_ID_KEY)

    @device_id.setter
    def device_id(self, value: Optional[str]) -> None:
        self._set_or_remove(DEVICE_ID_KEY, value)

    @property
    def pairing_code(self) -> Optional[str]:
        """Code shown on screen while waiting for an assignment."""
        return self._store.get(PAIRING_CODE_KEY)

    @pairing_code.setter
    def pairing_code(self, value: Optional[str]) -> None:
        self._set_or_remove(PAIRING_CODE_KEY, value)

    @property
    def last_known_assigned_path(self) -> Optional[str]:
        """Route the operator last assigned, cached for offline boots."""
        return self._store.get(ASSIGNED_PATH_KEY)

    @last_known_assigned_path.setter
    def last_known_assigned_path(self, value: Optional[str]) -> None:
        self._set_or_remove(ASSIGNED_PATH_KEY, value)

    @property
    def hostname_override(self) -> Optional[str]:
        """Hostname supplied by the launcher on an earlier boot."""
        return self._store.get(HOSTNAME_KEY)

    @hostname_override.setter
    def hostname_override(self, value: Optional[str]) -> None:
        self._set_or_remove(HOSTNAME_KEY, value)

    def clear(self) -> None:
        """Forget the device identity (the hostname cache is kept)."""
        for key in IDENTITY_KEYS:
            self._store.remove(key)
        logger.info("Local screen identity cleared")

    def get_state_info(self) -> Dict[str, Optional[str]]:
        return {
            "device_id": self.device_id,
            "pairing_code": self.pairing_code,
            "last_known_assigned_path": self.last_known_assigned_path,
            "hostname_override": self.hostname_override,
        }


def load_local_state(path: str) -> LocalState:
    """Open the local state file at path."""
    return LocalState(JsonFileStore(path))

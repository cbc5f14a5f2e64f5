"""
Local persistence for the lobby.

Only two values survive a restart:
- usedUsername: the last username an account was created with
- ucan:         a capability token received when this device was linked

All writes are atomic to prevent corruption.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from shared.log import get_logger

logger = get_logger(__name__)

USED_USERNAME_KEY = "usedUsername"
UCAN_KEY = "ucan"


class LocalStorage:
    """
    JSON-backed key/value store.

    Storage structure:
    <storage_path>/
        local_storage.json   - persisted keys
        keys/device.pem      - Ed25519 device key (see shared.crypto.keys)
    """

    def __init__(self, storage_path: Path):
        self.storage_path = Path(storage_path).expanduser()
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.file = self.storage_path / "local_storage.json"
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.file.exists():
            return {}
        try:
            with open(self.file, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load {self.file}: {e}")
            return {}

    def _atomic_write(self, data: Dict[str, Any]) -> None:
        """Write to a temp file then replace"""
        fd, tmp_path = tempfile.mkstemp(
            prefix=f"{self.file.stem}_",
            suffix=".json.tmp",
            dir=self.storage_path,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                json.dump(data, tmp, separators=(",", ":"), sort_keys=True)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.file)
        finally:
            # If replace failed, ensure temp is cleaned up
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._atomic_write(self._data)

    @property
    def key_path(self) -> Path:
        return self.storage_path / "keys" / "device"

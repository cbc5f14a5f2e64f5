from __future__ import annotations
import json
from pathlib import Path
from typing import Dict, Optional

from shared.log import get_logger
from shared.utils import is_did

logger = get_logger(__name__)


def did_record_name(username: str, domain: str) -> str:
    """TXT record holding a user's root DID."""
    return f"_did.{username}.{domain}"


class NameDirectory:
    """
    Name -> identity records, keyed like DNS TXT records
    (`_did.<username>.<domain>`), persisted as a JSON file.
    """

    def __init__(self, base: Optional[Path] = None) -> None:
        self.base = base or (Path.home() / ".lobby" / "directory.json")
        self._data: Dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if self.base.exists():
            try:
                self._data = json.loads(self.base.read_text())
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable directory %s: %s", self.base, e)
                self._data = {}

    def save(self) -> None:
        self.base.parent.mkdir(parents=True, exist_ok=True)
        self.base.write_text(json.dumps(self._data, indent=2))

    def set(self, record: str, value: str) -> None:
        self._data[record] = value
        self.save()

    def get(self, record: str) -> Optional[str]:
        return self._data.get(record)

    async def lookup_txt_record(self, record: str) -> Optional[str]:
        # re-read so records written by another process are seen
        self._load()
        value = self._data.get(record)
        if value is not None and not is_did(value):
            logger.warning("Record %s does not hold a DID: %r", record, value)
            return None
        return value

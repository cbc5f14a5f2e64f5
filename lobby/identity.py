from __future__ import annotations
from typing import Optional

from shared.crypto.signer import Signer
from shared.crypto.ucan import root_issuer
from shared.envelope import InvalidTokenError, ResolutionError
from shared.log import get_logger
from lobby.directory import NameDirectory, did_record_name
from lobby.storage import UCAN_KEY, LocalStorage

logger = get_logger(__name__)


class IdentityResolver:
    """
    Resolves the root identity (DID) used as pairing topic and principal.

    The first successful resolution is cached for the lifetime of the
    resolver and returned for every later call, whatever username is
    passed then. There is no way to invalidate it.

    Precedence when nothing is cached:
    1. a username, looked up in the name directory
    2. the root issuer of a stored UCAN
    3. this device's own DID
    """

    def __init__(self, directory: NameDirectory, storage: LocalStorage, signer: Signer, data_root_domain: str):
        self.directory = directory
        self.storage = storage
        self.signer = signer
        self.data_root_domain = data_root_domain
        self._cached: Optional[str] = None

    @property
    def cached(self) -> Optional[str]:
        return self._cached

    async def resolve(self, username: Optional[str] = None) -> str:
        if self._cached is not None:
            if username:
                logger.debug("Root DID already resolved; ignoring username %s", username)
            return self._cached

        ucan = self.storage.get(UCAN_KEY)
        if username:
            did = await self._lookup(username)
        elif ucan:
            try:
                did = root_issuer(ucan)
            except InvalidTokenError as e:
                raise ResolutionError(f"Stored UCAN is unreadable: {e}") from e
        else:
            did = self.signer.did()

        self._cached = did
        logger.info("Resolved root DID %s", did)
        return did

    async def _lookup(self, username: str) -> str:
        record = did_record_name(username, self.data_root_domain)
        try:
            did = await self.directory.lookup_txt_record(record)
        except Exception as e:
            raise ResolutionError(f"Lookup of {record} failed: {e}") from e
        if not did:
            raise ResolutionError(f"No DID found for {username} ({record})")
        return did

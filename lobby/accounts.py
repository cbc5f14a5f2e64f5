from __future__ import annotations
import re
from abc import ABC, abstractmethod
from typing import Optional

from shared.crypto.signer import Signer
from shared.log import get_logger
from lobby.directory import NameDirectory, did_record_name

logger = get_logger(__name__)

_USERNAME_RE = re.compile(r'^[a-zA-Z0-9_-]+$')

# names that would collide with service subdomains
USERNAME_BLOCKLIST = frozenset({
    "admin", "api", "app", "apps", "auth", "dns", "docs", "fission", "help",
    "ipfs", "lobby", "mail", "root", "support", "www",
})


def is_username_valid(username: str) -> bool:
    """
    Usernames are used as a DNS label: letters, digits, '-' and '_',
    not starting with '-' or '_', not ending with '-', not reserved.
    """
    return (
        bool(_USERNAME_RE.fullmatch(username))
        and not username.startswith("-")
        and not username.endswith("-")
        and not username.startswith("_")
        and username.lower() not in USERNAME_BLOCKLIST
    )


class AccountService(ABC):
    """Account registry behind the lobby (availability checks and sign-up)."""

    @abstractmethod
    async def is_username_available(self, username: str, domain: str) -> bool:
        ...

    @abstractmethod
    async def create_account(self, username: str, email: Optional[str] = None) -> bool:
        """Register `username` for this device; False if it could not be created."""
        ...


class DirectoryAccountService(AccountService):
    """
    Accounts kept in the local NameDirectory: creating one publishes a
    `_did.<username>.<domain>` record pointing at this device's DID.
    """

    def __init__(self, directory: NameDirectory, signer: Signer, domain: str) -> None:
        self.directory = directory
        self.signer = signer
        self.domain = domain

    async def is_username_available(self, username: str, domain: str) -> bool:
        return await self.directory.lookup_txt_record(did_record_name(username, domain)) is None

    async def create_account(self, username: str, email: Optional[str] = None) -> bool:
        if not is_username_valid(username):
            return False
        if not await self.is_username_available(username, self.domain):
            logger.info("Username %s is taken", username)
            return False
        self.directory.set(did_record_name(username, self.domain), self.signer.did())
        logger.info("Created account %s", username)
        return True

from __future__ import annotations
from typing import Any, Mapping, Optional

from shared.crypto.keys import load_or_create_keypair
from shared.crypto.signer import Ed25519PayloadSigner
from shared.crypto.ucan import decode_ucan, issue_ucan
from shared.log import get_logger
from lobby.accounts import AccountService, DirectoryAccountService, is_username_valid
from lobby.channel import SecureChannel
from lobby.config import LobbyConfig
from lobby.directory import NameDirectory
from lobby.events import (
    AccountCreated,
    AccountCreationFailed,
    EventStream,
    UcanIssued,
    UsernameAvailability,
)
from lobby.identity import IdentityResolver
from lobby.session import LobbySession
from lobby.storage import UCAN_KEY, USED_USERNAME_KEY, LocalStorage
from lobby.transport import PubSubTransport, WebSocketTransport

logger = get_logger(__name__)

ACCOUNT_CREATION_FAILED = "Unable to create an account, maybe you have one already?"


class ChannelController:
    """
    Entry point for a UI: each request method does its work and reports
    the outcome on `events` rather than raising.
    Channel operations raise on identity-resolution failure.
    """

    def __init__(self, config: LobbyConfig, session: LobbySession, storage: LocalStorage,
                 accounts: AccountService) -> None:
        self.config = config
        self.session = session
        self.storage = storage
        self.accounts = accounts

    @classmethod
    def from_config(cls, config: LobbyConfig, transport: Optional[PubSubTransport] = None) -> "ChannelController":
        storage = LocalStorage(config.home)
        signer = Ed25519PayloadSigner(load_or_create_keypair(storage.key_path))
        directory = NameDirectory(config.home / "directory.json")
        resolver = IdentityResolver(directory, storage, signer, config.data_root_domain)
        session = LobbySession(
            transport or WebSocketTransport(config.relay_url),
            resolver,
            signer,
            heartbeat_interval=config.heartbeat_interval,
            handshake_timeout=config.handshake_timeout,
            max_ping_attempts=config.max_ping_attempts,
        )
        accounts = DirectoryAccountService(directory, signer, config.data_root_domain)
        return cls(config, session, storage, accounts)

    @property
    def events(self) -> EventStream:
        return self.session.events

    @property
    def used_username(self) -> Optional[str]:
        return self.storage.get(USED_USERNAME_KEY)

    # Account
    # -------

    async def check_username(self, username: str) -> UsernameAvailability:
        if is_username_valid(username):
            available = await self.accounts.is_username_available(username, self.config.data_root_domain)
            event = UsernameAvailability(available=available, valid=True)
        else:
            event = UsernameAvailability(available=False, valid=False)
        self.events.emit(event)
        return event

    async def create_account(self, username: str, email: Optional[str] = None) -> bool:
        try:
            success = await self.accounts.create_account(username, email)
        except Exception as e:
            logger.error("Account creation for %s failed: %s", username, e)
            success = False

        if success:
            self.storage.set(USED_USERNAME_KEY, username)
            self.events.emit(AccountCreated(username=username))
        else:
            self.events.emit(AccountCreationFailed(message=ACCOUNT_CREATION_FAILED))
        return success

    # Link
    # ----

    async def link_app(self, audience: str) -> str:
        """Delegate the root identity to `audience` for the configured lifetime."""
        issuer = await self.session.resolver.resolve()
        token = issue_ucan(
            self.session.signer,
            audience=audience,
            issuer=issuer,
            lifetime_seconds=self.config.ucan_lifetime,
            proof=self.storage.get(UCAN_KEY),
        )
        self.events.emit(UcanIssued(token=token))
        return token

    def store_ucan(self, token: str) -> None:
        """Keep a UCAN delegated to this device; its root issuer becomes the root DID."""
        decode_ucan(token)
        self.storage.set(UCAN_KEY, token)

    # Secure channel
    # --------------

    async def open_secure_channel(self, username: Optional[str] = None) -> SecureChannel:
        return await self.session.open_channel(username)

    async def publish_on_secure_channel(self, username: Optional[str], payload: Mapping[str, Any]) -> None:
        await self.session.publish(payload, username)

    async def publish_encrypted_on_secure_channel(self, username: Optional[str], passphrase: str,
                                                  payload: Mapping[str, Any]) -> None:
        await self.session.publish_encrypted(payload, passphrase, username)

    async def close(self) -> None:
        await self.session.close()

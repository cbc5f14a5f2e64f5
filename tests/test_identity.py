import pytest

from shared.crypto.keys import Ed25519Keypair
from shared.crypto.signer import Ed25519PayloadSigner
from shared.crypto.ucan import issue_ucan
from shared.envelope import ResolutionError
from lobby.directory import NameDirectory
from lobby.identity import IdentityResolver
from lobby.storage import UCAN_KEY

from conftest import DOMAIN

ALICE = "did:key:z6MkalicE1111111111111111111111111111111111"
BOB = "did:key:z6MkboB22222222222222222222222222222222222"


@pytest.fixture
def resolver(directory, storage, signer):
    return IdentityResolver(directory, storage, signer, DOMAIN)


@pytest.mark.asyncio
async def test_cache_ignores_later_username(resolver, register):
    register("alice", ALICE)
    register("bob", BOB)

    assert await resolver.resolve("alice") == ALICE
    assert await resolver.resolve("bob") == ALICE
    assert await resolver.resolve() == ALICE


@pytest.mark.asyncio
async def test_unknown_username_raises_and_caches_nothing(resolver, signer):
    with pytest.raises(ResolutionError):
        await resolver.resolve("nobody")
    assert resolver.cached is None
    assert await resolver.resolve() == signer.did()


@pytest.mark.asyncio
async def test_lookup_failure_raises_resolution_error(storage, signer, tmp_path):
    class BrokenDirectory(NameDirectory):
        async def lookup_txt_record(self, record):
            raise OSError("network unreachable")

    resolver = IdentityResolver(BrokenDirectory(tmp_path / "d.json"), storage, signer, DOMAIN)
    with pytest.raises(ResolutionError):
        await resolver.resolve("alice")


@pytest.mark.asyncio
async def test_directory_value_that_is_not_a_did_is_a_miss(resolver, register):
    register("carol", "not a did")
    with pytest.raises(ResolutionError):
        await resolver.resolve("carol")


@pytest.mark.asyncio
async def test_stored_ucan_gives_root_issuer(resolver, storage, signer):
    root = Ed25519PayloadSigner(Ed25519Keypair.generate())
    middle = Ed25519PayloadSigner(Ed25519Keypair.generate())
    first = issue_ucan(root, audience=middle.did())
    second = issue_ucan(middle, audience=signer.did(), proof=first)
    storage.set(UCAN_KEY, second)

    assert await resolver.resolve() == root.did()


@pytest.mark.asyncio
async def test_username_beats_stored_ucan(resolver, storage, signer, register):
    register("alice", ALICE)
    storage.set(UCAN_KEY, issue_ucan(signer, audience=BOB))
    assert await resolver.resolve("alice") == ALICE


@pytest.mark.asyncio
async def test_unreadable_ucan_raises(resolver, storage):
    storage.set(UCAN_KEY, "not.a.token")
    with pytest.raises(ResolutionError):
        await resolver.resolve()


@pytest.mark.asyncio
async def test_falls_back_to_device_did(resolver, signer):
    assert await resolver.resolve() == signer.did()
    assert resolver.cached == signer.did()

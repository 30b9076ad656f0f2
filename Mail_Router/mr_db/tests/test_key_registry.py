import pytest

from Mail_Router.mr_shared import errors

pytestmark = pytest.mark.asyncio


async def test_register_and_get(keys, keypair):
    public_key, _ = keypair
    assert await keys.register("ab_", "0x" + public_key.upper()) == public_key
    assert await keys.get("ab_") == public_key
    assert await keys.require("ab_") == public_key


async def test_register_replaces_key(keys, engine):
    first, _ = engine.generate_keypair()
    second, _ = engine.generate_keypair()
    await keys.register("ab_", first)
    await keys.register("ab_", second)
    assert await keys.get("ab_") == second


async def test_register_rejects_invalid(keys):
    with pytest.raises(errors.InvalidKeyError):
        await keys.register("ab_", "04deadbeef")
    assert await keys.get("ab_") is None


async def test_require_missing(keys):
    with pytest.raises(errors.MissingKeyError):
        await keys.require("ab_")

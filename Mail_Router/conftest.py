import time

import fakeredis
import nacl.signing
import pytest
import pytest_asyncio

from Mail_Router.mr_shared.crypto_engine import EciesEngine


class Clock:
    """Stand-in for ``time.time``; fakeredis reads it for key expiry too."""

    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_days(self, days: float) -> None:
        self.now += days * 86_400


@pytest.fixture
def clock(monkeypatch):
    c = Clock(time.time())
    monkeypatch.setattr(time, "time", c)
    return c


@pytest_asyncio.fixture
async def kv():
    r = fakeredis.FakeAsyncRedis()
    await r.flushall()
    yield r
    await r.flushall()
    await r.aclose()


@pytest.fixture
def engine():
    return EciesEngine()


@pytest.fixture
def keypair(engine):
    """(public_hex, private_hex)"""
    return engine.generate_keypair()


@pytest.fixture
def owner_signing_key():
    return nacl.signing.SigningKey.generate()


@pytest.fixture
def owner_key_hex(owner_signing_key):
    return owner_signing_key.verify_key.encode().hex()


@pytest.fixture
def owner_seed_hex(owner_signing_key):
    return owner_signing_key.encode().hex()

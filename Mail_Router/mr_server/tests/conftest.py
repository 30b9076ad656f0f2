from typing import Optional

import pytest

from Mail_Router.mr_shared import config as shared_config
from Mail_Router.mr_shared.errors import BestEffortFailure, ChainOracleError, ProviderError
from Mail_Router.mr_shared.signatures import sign_action
from Mail_Router.mr_shared.types import InboundMessage
from Mail_Router.mr_server import config
from Mail_Router.mr_server.api import build_runtime

SECRET = "test-secret"
PAYER = "0x" + "12" * 20
HEAD_BLOCK = 1_000


def pad_topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def native_tx(value_units: int, to: str = config.TREASURY_ADDRESS, block: Optional[int] = HEAD_BLOCK - 5) -> dict:
    return {
        "from": PAYER,
        "to": to,
        "value": hex(value_units),
        "blockNumber": hex(block) if block is not None else None,
    }


def token_receipt(
    amount_units: int,
    to: str = config.TREASURY_ADDRESS,
    status: str = "0x1",
    block: Optional[int] = HEAD_BLOCK - 5,
    contract: str = config.TOKEN_CONTRACT,
) -> dict:
    return {
        "status": status,
        "blockNumber": hex(block) if block is not None else None,
        "logs": [{
            "address": contract,
            "topics": [shared_config.ERC20_TRANSFER_TOPIC, pad_topic(PAYER), pad_topic(to)],
            "data": hex(amount_units),
        }],
    }


class FakeChain:
    """In-memory stand-in for ``ChainOracle``."""

    def __init__(self):
        self.transactions: dict[str, dict] = {}
        self.receipts: dict[str, dict] = {}
        self.head = HEAD_BLOCK
        self.calls = 0
        self.down = False

    def _touch(self, method):
        self.calls += 1
        if self.down:
            raise ChainOracleError(method, "connection refused")

    async def get_transaction(self, tx_hash):
        self._touch("eth_getTransactionByHash")
        return self.transactions.get(tx_hash.lower())

    async def get_transaction_receipt(self, tx_hash):
        self._touch("eth_getTransactionReceipt")
        return self.receipts.get(tx_hash.lower())

    async def get_block_number(self):
        self._touch("eth_blockNumber")
        return self.head

    async def eth_call(self, to, data):
        self._touch("eth_call")
        return "0x"


class StaticOwnership:
    def __init__(self, owners: Optional[dict] = None):
        self.owners = owners or {}

    async def verify_owner(self, collection, token_id):
        return self.owners.get((collection, token_id))


class FakeProvider:
    def __init__(self):
        self.forwarded: list[tuple[str, InboundMessage]] = []
        self.pending: list[InboundMessage] = []
        self.deleted: list[str] = []
        self.fail_forward = False
        self.fail_list = False

    async def forward(self, identity, message):
        if self.fail_forward:
            raise ProviderError("forward", "503 Service Unavailable")
        self.forwarded.append((identity, message))

    async def list_unprocessed(self, limit):
        if self.fail_list:
            raise ProviderError("list_unprocessed", "timeout")
        return list(self.pending[:limit])

    async def delete_message(self, provider_id):
        self.deleted.append(provider_id)
        self.pending = [m for m in self.pending if m.provider_id != provider_id]


class FakePinner:
    def __init__(self):
        self.pinned = []
        self.fail = False

    async def pin(self, envelope):
        if self.fail:
            raise BestEffortFailure("pin", "gateway timeout")
        self.pinned.append(envelope.id)
        return f"ipfs://bafy{envelope.id.replace('-', '')}"


@pytest.fixture
def secret():
    return SECRET


@pytest.fixture
def payer():
    return PAYER


@pytest.fixture
def make_native_tx():
    return native_tx


@pytest.fixture
def make_token_receipt():
    return token_receipt


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def ownership():
    return StaticOwnership({("punks", "7804"): PAYER})


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def pinner():
    return FakePinner()


@pytest.fixture
def runtime(kv, chain, ownership, provider, pinner):
    return build_runtime(
        kv,
        chain=chain,
        ownership=ownership,
        provider=provider,
        pinner=pinner,
        secret=SECRET,
        recovery_public_key="",
        durable_rate_limits=True,
    )


@pytest.fixture
def dispatcher(runtime):
    return runtime.dispatcher


@pytest.fixture
def services(dispatcher):
    return dispatcher.s


@pytest.fixture
def router(runtime):
    return runtime.router


@pytest.fixture
def signed(owner_seed_hex):
    """Sign ``payload`` as its owner; ``identity`` defaults to the payload's ``identity`` field."""
    def _signed(payload: dict, identity: str = None) -> dict:
        identity = identity or payload["identity"]
        signature, signed_at = sign_action(owner_seed_hex, payload["action"], identity, params=payload)
        return {**payload, "signature": signature, "signedAt": signed_at}
    return _signed


@pytest.fixture
def register(dispatcher, owner_key_hex):
    """Register an identity through the dispatcher with the shared secret."""
    async def _register(address: str, **extra):
        payload = {"action": "register-identity", "address": address, "ownerKey": owner_key_hex, **extra}
        return await dispatcher.dispatch(payload, SECRET)
    return _register

import json

import httpx
import pytest

from Mail_Router.mr_shared import errors
from Mail_Router.mr_shared.crypto_engine import canonical_plaintext, content_hash
from Mail_Router.mr_shared.types import Envelope
from Mail_Router.mr_server.pinning import PinataPinner, pin_content

pytestmark = pytest.mark.asyncio

ENVELOPE = Envelope(id="1-abc", kind="warning", recipient="ab_", content_hash="00" * 32, received_at=1)


def _pinner(handler, jwt="jwt-token"):
    return PinataPinner("https://pin.test/pinJSON", jwt, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


async def test_pin_returns_ipfs_ref():
    captured = []

    def handler(request):
        captured.append(request)
        return httpx.Response(200, json={"IpfsHash": "bafyabc"})

    assert await _pinner(handler).pin(ENVELOPE) == "ipfs://bafyabc"
    assert captured[0].headers["Authorization"] == "Bearer jwt-token"
    assert json.loads(captured[0].content)["pinataContent"]["id"] == "1-abc"


async def test_pin_without_jwt():
    with pytest.raises(errors.BestEffortFailure):
        await _pinner(lambda request: httpx.Response(200), jwt="").pin(ENVELOPE)


async def test_pin_http_failure():
    with pytest.raises(errors.BestEffortFailure):
        await _pinner(lambda request: httpx.Response(500)).pin(ENVELOPE)


async def test_pin_missing_cid():
    with pytest.raises(errors.BestEffortFailure):
        await _pinner(lambda request: httpx.Response(200, json={})).pin(ENVELOPE)


async def test_cleartext_envelope_pins_hash_only():
    captured = []

    def handler(request):
        captured.append(json.loads(request.content))
        return httpx.Response(200, json={"IpfsHash": "bafyabc"})

    envelope = Envelope(
        id="2-def",
        kind="cleartext",
        recipient="alice",
        content_hash="11" * 32,
        received_at=1,
        plaintext={"from": "f@example.org", "to": "alice@nftmail.box", "subject": "salary", "body": "secret body"},
    )
    await _pinner(handler).pin(envelope)

    content = captured[0]["pinataContent"]
    assert content == {"id": "2-def", "kind": "cleartext", "content_hash": "11" * 32, "received_at": 1}
    raw = json.dumps(captured[0])
    assert "secret body" not in raw
    assert "salary" not in raw


async def test_encrypted_envelope_pins_ciphertext(engine, keypair):
    plaintext = canonical_plaintext("f@example.org", "ab_@nftmail.box", "s", "sealed body")
    payload = engine.encrypt(plaintext, keypair[0])
    envelope = Envelope(
        id="3-ghi",
        kind="encrypted",
        recipient="ab_",
        content_hash=content_hash(plaintext),
        received_at=1,
        ciphertext=payload,
    )
    content = pin_content(envelope)
    assert content["ciphertext"] == payload.to_dict()
    assert "recovery_ciphertext" not in content
    assert "sealed body" not in json.dumps(content)

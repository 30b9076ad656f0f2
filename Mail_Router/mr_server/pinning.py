import logging
from typing import Optional, Protocol

import httpx

from Mail_Router.mr_shared.errors import BestEffortFailure
from Mail_Router.mr_shared.types import Envelope

logger = logging.getLogger("mr_server.pinning")


def pin_content(envelope: Envelope) -> dict:
    """Public form of an envelope. Only sealed payloads leave the router; other kinds pin the hash alone."""
    content = {
        "id": envelope.id,
        "kind": envelope.kind,
        "content_hash": envelope.content_hash,
        "received_at": envelope.received_at,
    }
    if envelope.kind == "encrypted" and envelope.ciphertext is not None:
        content["ciphertext"] = envelope.ciphertext.to_dict()
        if envelope.recovery_ciphertext is not None:
            content["recovery_ciphertext"] = envelope.recovery_ciphertext.to_dict()
    return content


class Pinner(Protocol):
    async def pin(self, envelope: Envelope) -> str: ...


class PinataPinner:
    """Pins frozen envelopes off-chain. Failures raise ``BestEffortFailure``."""

    def __init__(self, api_url: str, jwt: str, timeout: float = 8.0, http: Optional[httpx.AsyncClient] = None):
        self.api_url = api_url
        self.jwt = jwt
        self.timeout = timeout
        self._http = http

    async def _post(self, body: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.jwt}"}
        if self._http is not None:
            return await self._http.post(self.api_url, json=body, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.api_url, json=body, headers=headers)

    async def pin(self, envelope: Envelope) -> str:
        if not self.jwt:
            raise BestEffortFailure("pin", "pinning not configured")

        body = {
            "pinataContent": pin_content(envelope),
            "pinataMetadata": {"name": f"{envelope.recipient}:{envelope.id}"},
        }
        try:
            response = await self._post(body)
            response.raise_for_status()
            cid = response.json().get("IpfsHash")
        except (httpx.HTTPError, ValueError) as e:
            raise BestEffortFailure("pin", str(e) or type(e).__name__)

        if not cid:
            raise BestEffortFailure("pin", "no content reference in response")
        return f"ipfs://{cid}"

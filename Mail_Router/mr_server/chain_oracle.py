"""
Read-only chain access over JSON-RPC.

``ChainOracle`` covers what the payment gate needs (transaction, receipt,
block height); ``RpcOwnershipOracle`` answers ERC-721 ``ownerOf`` for the
NFT-collection stream.
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from Mail_Router.mr_shared import config
from Mail_Router.mr_shared.errors import ChainOracleError

logger = logging.getLogger("mr_server.chain_oracle")

ZERO_ADDRESS = "0x" + "0" * 40


def hex_to_int(value: Optional[str]) -> int:
    if not value:
        return 0
    return int(value, 16)


class ChainOracle:
    def __init__(self, rpc_url: str, timeout: float = 10.0, http: Optional[httpx.AsyncClient] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._http = http
        self._request_id = 0

    async def _post(self, body: dict) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(self.rpc_url, json=body, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.rpc_url, json=body)

    async def _call(self, method: str, params: list) -> Any:
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            response = await self._post(body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ChainOracleError(method, str(e) or type(e).__name__)
        except ValueError:
            raise ChainOracleError(method, "response is not JSON")

        if data.get("error"):
            raise ChainOracleError(method, data["error"].get("message", "rpc error"))
        return data.get("result")

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        return await self._call("eth_getTransactionByHash", [tx_hash])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self._call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_number(self) -> int:
        return hex_to_int(await self._call("eth_blockNumber", []))

    async def eth_call(self, to: str, data: str) -> str:
        return await self._call("eth_call", [{"to": to, "data": data}, "latest"])


class OwnershipOracle(Protocol):
    async def verify_owner(self, collection: str, token_id: str) -> Optional[str]: ...


class RpcOwnershipOracle:
    """ERC-721 ``ownerOf(tokenId)`` against the configured collection contracts."""

    def __init__(self, chain: ChainOracle, collections: Optional[dict[str, str]] = None):
        self.chain = chain
        self.collections = collections if collections is not None else config.NFT_COLLECTIONS

    async def verify_owner(self, collection: str, token_id: str) -> Optional[str]:
        contract = self.collections.get(collection)
        if contract is None or not token_id.isdigit():
            return None

        data = config.ERC721_OWNER_OF_SELECTOR + format(int(token_id), "064x")
        try:
            result = await self.chain.eth_call(contract, data)
        except ChainOracleError as e:
            # nonexistent tokens revert
            logger.info("owner_lookup_failed collection=%s token=%s detail=%s", collection, token_id, e.detail)
            return None

        if not result or len(result) < 42:
            return None
        owner = "0x" + result[-40:].lower()
        return None if owner == ZERO_ADDRESS else owner

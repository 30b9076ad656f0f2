"""
Client for the cleartext fallback mailbox (Zoho Mail REST API shape).

Used in two places: the router forwards exposed sovereign mail here, and the
sweep job drains messages that arrived at the provider directly. Every call
raises ``ProviderError``; callers treat provider work as best-effort.
"""

import logging
from typing import Optional, Protocol

import httpx

from Mail_Router.mr_shared import config
from Mail_Router.mr_shared.counters import TokenCache
from Mail_Router.mr_shared.errors import ProviderError
from Mail_Router.mr_shared.types import InboundMessage

logger = logging.getLogger("mr_server.mail_provider")

AUTH_SCHEME = "Zoho-oauthtoken"


class MailProvider(Protocol):
    async def forward(self, identity: str, message: InboundMessage) -> None: ...

    async def list_unprocessed(self, limit: int) -> list[InboundMessage]: ...

    async def delete_message(self, provider_id: str) -> None: ...


class ZohoMailProvider:
    def __init__(
        self,
        api_url: str,
        token_url: str,
        account_id: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        token_cache: TokenCache,
        timeout: float = 8.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token_url = token_url
        self.account_id = account_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.token_cache = token_cache
        self.timeout = timeout
        self._http = http

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._http is not None:
            return await self._http.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _access_token(self) -> str:
        cached = await self.token_cache.get()
        if cached:
            return cached

        data = {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            response = await self._request("POST", self.token_url, data=data)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError("token_refresh", str(e) or type(e).__name__)

        token = payload.get("access_token")
        if not token:
            raise ProviderError("token_refresh", payload.get("error", "no access_token in response"))
        await self.token_cache.put(token, int(payload.get("expires_in", 3600)))
        return token

    async def _api(self, method: str, path: str, operation: str, **kwargs) -> dict:
        token = await self._access_token()
        headers = {"Authorization": f"{AUTH_SCHEME} {token}"}
        try:
            response = await self._request(method, f"{self.api_url}{path}", headers=headers, **kwargs)
            response.raise_for_status()
            return response.json() if response.content else {}
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(operation, str(e) or type(e).__name__)

    async def forward(self, identity: str, message: InboundMessage) -> None:
        body = {
            "fromAddress": f"relay@{config.MAIL_DOMAIN}",
            "toAddress": f"{identity}@{config.MAIL_DOMAIN}",
            "subject": message.subject,
            "content": message.body,
            "mailFormat": "plaintext",
        }
        await self._api("POST", f"/accounts/{self.account_id}/messages", "forward", json=body)

    async def list_unprocessed(self, limit: int) -> list[InboundMessage]:
        listing = await self._api(
            "GET",
            f"/accounts/{self.account_id}/messages/view",
            "list_unprocessed",
            params={"limit": limit, "status": "unread"},
        )

        messages = []
        for item in listing.get("data", []):
            folder_id = str(item.get("folderId", ""))
            message_id = str(item.get("messageId", ""))
            content = await self._api(
                "GET",
                f"/accounts/{self.account_id}/folders/{folder_id}/messages/{message_id}/content",
                "fetch_content",
            )
            messages.append(InboundMessage(
                sender=item.get("fromAddress", ""),
                recipient=item.get("toAddress", ""),
                subject=item.get("subject", ""),
                body=content.get("data", {}).get("content", ""),
                provider_id=f"{folder_id}/{message_id}",
                channel="sweep",
            ))
        return messages

    async def delete_message(self, provider_id: str) -> None:
        folder_id, _, message_id = provider_id.partition("/")
        await self._api(
            "DELETE",
            f"/accounts/{self.account_id}/folders/{folder_id}/messages/{message_id}",
            "delete_message",
        )

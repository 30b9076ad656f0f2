import json

import httpx
import pytest

from Mail_Router.mr_shared import errors
from Mail_Router.mr_shared.counters import MemoryCounterStore, TokenCache
from Mail_Router.mr_shared.types import InboundMessage
from Mail_Router.mr_server.mail_provider import ZohoMailProvider

pytestmark = pytest.mark.asyncio

API = "https://mail.test/api"
TOKEN_URL = "https://accounts.test/oauth/v2/token"


class FakeZoho:
    def __init__(self):
        self.token_requests = 0
        self.requests: list[httpx.Request] = []
        self.token_ok = True

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_requests += 1
            if not self.token_ok:
                return httpx.Response(400, json={"error": "invalid_code"})
            return httpx.Response(200, json={"access_token": f"tok-{self.token_requests}", "expires_in": 3600})

        self.requests.append(request)
        path = request.url.path
        if path.endswith("/messages/view"):
            return httpx.Response(200, json={"data": [
                {"folderId": "9", "messageId": "100", "fromAddress": "f@example.org",
                 "toAddress": "alice@nftmail.box", "subject": "hi"},
            ]})
        if path.endswith("/content"):
            return httpx.Response(200, json={"data": {"content": "hello there"}})
        if request.method == "DELETE":
            return httpx.Response(200, json={"status": {"code": 200}})
        if request.method == "POST":
            return httpx.Response(200, json={"data": {"messageId": "1"}})
        return httpx.Response(404)


@pytest.fixture
def zoho():
    return FakeZoho()


@pytest.fixture
def zoho_provider(zoho):
    return ZohoMailProvider(
        api_url=API,
        token_url=TOKEN_URL,
        account_id="acct",
        client_id="cid",
        client_secret="csecret",
        refresh_token="refresh",
        token_cache=TokenCache(MemoryCounterStore(), "provider"),
        http=httpx.AsyncClient(transport=httpx.MockTransport(zoho)),
    )


async def test_forward_uses_cached_token(zoho_provider, zoho):
    message = InboundMessage("f@example.org", "alice@nftmail.box", "hi", "body")
    await zoho_provider.forward("alice", message)
    await zoho_provider.forward("alice", message)
    assert zoho.token_requests == 1

    request = zoho.requests[0]
    assert request.headers["Authorization"] == "Zoho-oauthtoken tok-1"
    body = json.loads(request.content)
    assert body["toAddress"] == "alice@nftmail.box"
    assert body["content"] == "body"


async def test_list_unprocessed_fetches_content(zoho_provider):
    messages = await zoho_provider.list_unprocessed(10)
    assert len(messages) == 1
    assert messages[0].provider_id == "9/100"
    assert messages[0].channel == "sweep"
    assert messages[0].body == "hello there"
    assert messages[0].recipient == "alice@nftmail.box"


async def test_delete_message_path(zoho_provider, zoho):
    await zoho_provider.delete_message("9/100")
    assert zoho.requests[-1].method == "DELETE"
    assert zoho.requests[-1].url.path == "/api/accounts/acct/folders/9/messages/100"


async def test_token_failure_raises_provider_error(zoho_provider, zoho):
    zoho.token_ok = False
    with pytest.raises(errors.ProviderError):
        await zoho_provider.list_unprocessed(10)

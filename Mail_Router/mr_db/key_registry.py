from typing import Optional

import redis
import redis.asyncio

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.key_codec import KeyCodec


class KeyRegistry:
    """Registered ECIES public keys. Private halves never reach this store."""

    def __init__(self, client: redis.asyncio.Redis, codec: Optional[KeyCodec] = None):
        self.db: redis.asyncio.Redis = client
        self.codec = codec or KeyCodec()

    def _pubkey_key(self, identity: str) -> str:
        return f"{config.PUBKEY_KEY_PREFIX}:{identity}"

    async def register(self, identity: str, public_key: str) -> str:
        normalized = self.codec.normalize_public(public_key)
        try:
            await self.db.set(self._pubkey_key(identity), normalized)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("key_register")
        return normalized

    async def get(self, identity: str) -> Optional[str]:
        try:
            value = await self.db.get(self._pubkey_key(identity))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("key_get")
        return value.decode() if value is not None else None

    async def require(self, identity: str) -> str:
        value = await self.get(identity)
        if value is None:
            raise errors.MissingKeyError(identity)
        return value

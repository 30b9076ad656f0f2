import asyncio
import json
import logging
import time
import uuid
from typing import Optional

import redis
import redis.asyncio

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.types import Envelope, InboxItem

logger = logging.getLogger("mr_db.blind_inbox")


def decay_pct(envelope: Envelope, now_ms: Optional[int] = None) -> int:
    if envelope.frozen or envelope.decay_days is None:
        return 0
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    window_ms = envelope.decay_days * config.MS_PER_DAY
    age_ms = max(0, now_ms - envelope.received_at)
    return min(100, round(age_ms / window_ms * 100))


class BlindInbox:
    def __init__(self, client: redis.asyncio.Redis, max_messages: int = config.MAX_INBOX_MESSAGES):
        self.db: redis.asyncio.Redis = client
        self.max_messages = max_messages

    def _envelope_key(self, identity: str, message_id: str) -> str:
        return f"{config.INBOX_KEY_PREFIX}:{identity}:{message_id}"

    def _index_key(self, identity: str) -> str:
        return f"{config.INBOX_INDEX_PREFIX}:{identity}"

    @staticmethod
    def new_message_id() -> str:
        return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _ttl_seconds(decay_days: Optional[int]) -> Optional[int]:
        if decay_days is None:
            return None
        return decay_days * config.SECONDS_PER_DAY

    def _serialize(self, envelope: Envelope) -> str:
        return json.dumps(envelope.to_dict(), separators=(",", ":"))

    def _deserialize(self, raw: bytes) -> Envelope:
        return Envelope.from_dict(json.loads(raw))

    async def _load_many(self, identity: str, ids: list[str]) -> list[Optional[Envelope]]:
        raws = await asyncio.gather(*(self.db.get(self._envelope_key(identity, i)) for i in ids))
        return [self._deserialize(raw) if raw is not None else None for raw in raws]

    async def _evict_over_cap(self, identity: str) -> list[str]:
        idx_key = self._index_key(identity)
        ids = [i.decode() for i in await self.db.lrange(idx_key, 0, -1)]
        excess = len(ids) - self.max_messages
        if excess <= 0:
            return []

        envelopes = await self._load_many(identity, ids)
        # oldest first; dangling ids and unfrozen envelopes go before frozen ones
        evictable = [i for i, env in zip(ids, envelopes) if env is None or not env.frozen]
        frozen = [i for i, env in zip(ids, envelopes) if env is not None and env.frozen]
        victims = (evictable + frozen)[:excess]

        pipe = self.db.pipeline(transaction=True)
        for message_id in victims:
            pipe.lrem(idx_key, 1, message_id)
            pipe.delete(self._envelope_key(identity, message_id))
        await pipe.execute()

        logger.info("inbox_evicted identity=%s count=%d", identity, len(victims))
        return victims

    async def put(self, recipient: str, envelope: Envelope) -> str:
        if not envelope.id:
            envelope.id = self.new_message_id()
        envelope.recipient = recipient

        env_key = self._envelope_key(recipient, envelope.id)
        idx_key = self._index_key(recipient)
        ttl = None if envelope.frozen else self._ttl_seconds(envelope.decay_days)

        try:
            index_ttl = await self.db.ttl(idx_key)

            pipe = self.db.pipeline(transaction=True)
            pipe.set(env_key, self._serialize(envelope), ex=ttl)
            pipe.rpush(idx_key, envelope.id)
            if ttl is None:
                pipe.persist(idx_key)
            elif index_ttl != -1:
                # -1 means the index already outlives decay (frozen entry or infinite retention)
                pipe.expire(idx_key, ttl)
            await pipe.execute()

            await self._evict_over_cap(recipient)
            return envelope.id
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("inbox_put")

    async def get(self, recipient: str, message_id: str) -> Optional[Envelope]:
        try:
            raw = await self.db.get(self._envelope_key(recipient, message_id))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("inbox_get")
        return self._deserialize(raw) if raw is not None else None

    async def get_all(self, recipient: str) -> list[InboxItem]:
        try:
            ids = [i.decode() for i in await self.db.lrange(self._index_key(recipient), 0, -1)]
            envelopes = await self._load_many(recipient, ids)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("inbox_get_all")

        now_ms = int(time.time() * 1000)
        live = [env for env in envelopes if env is not None]
        live.sort(key=lambda env: env.received_at, reverse=True)
        return [InboxItem(envelope=env, decay_pct=decay_pct(env, now_ms)) for env in live]

    async def count(self, recipient: str) -> int:
        return len(await self.get_all(recipient))

    async def delete(self, recipient: str, message_id: str) -> bool:
        try:
            pipe = self.db.pipeline(transaction=True)
            pipe.delete(self._envelope_key(recipient, message_id))
            pipe.lrem(self._index_key(recipient), 0, message_id)
            deleted, removed = await pipe.execute()
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("inbox_delete")
        return bool(deleted or removed)

    async def freeze(self, recipient: str, message_id: str, ipfs_ref: Optional[str] = None) -> Envelope:
        env_key = self._envelope_key(recipient, message_id)
        try:
            raw = await self.db.get(env_key)
            if raw is None:
                raise errors.EnvelopeNotFoundError(recipient, message_id)

            envelope = self._deserialize(raw)
            envelope.frozen = True
            if ipfs_ref:
                envelope.ipfs_ref = ipfs_ref

            pipe = self.db.pipeline(transaction=True)
            pipe.set(env_key, self._serialize(envelope))
            pipe.persist(self._index_key(recipient))
            await pipe.execute()
            return envelope
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("inbox_freeze")

    async def apply_retention(self, recipient: str, decay_days: Optional[int]) -> int:
        """Re-expire every live, unfrozen envelope for a new decay window."""
        idx_key = self._index_key(recipient)
        now = time.time()
        updated = 0

        try:
            ids = [i.decode() for i in await self.db.lrange(idx_key, 0, -1)]
            envelopes = await self._load_many(recipient, ids)

            pipe = self.db.pipeline(transaction=True)
            any_frozen = False
            for envelope in envelopes:
                if envelope is None:
                    continue
                if envelope.frozen:
                    any_frozen = True
                    continue

                envelope.decay_days = decay_days
                env_key = self._envelope_key(recipient, envelope.id)
                if decay_days is None:
                    pipe.set(env_key, self._serialize(envelope))
                else:
                    expires_at = envelope.received_at / 1000 + decay_days * config.SECONDS_PER_DAY
                    pipe.set(env_key, self._serialize(envelope), ex=max(1, int(expires_at - now)))
                updated += 1

            if decay_days is None or any_frozen:
                pipe.persist(idx_key)
            elif ids:
                pipe.expire(idx_key, decay_days * config.SECONDS_PER_DAY)
            await pipe.execute()
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("inbox_apply_retention")

        return updated

    async def purge_all(self, recipient: str) -> int:
        idx_key = self._index_key(recipient)
        try:
            keys = {
                self._envelope_key(recipient, i.decode())
                for i in await self.db.lrange(idx_key, 0, -1)
            }

            cursor = 0
            while True:
                cursor, found = await self.db.scan(
                    cursor=cursor,
                    match=f"{config.INBOX_KEY_PREFIX}:{recipient}:*",
                    count=100,
                )
                keys.update(k.decode() for k in found)
                if cursor == 0:
                    break

            deleted = 0
            if keys:
                deleted = await self.db.delete(*keys)
            await self.db.delete(idx_key)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("inbox_purge_all")

        logger.info("inbox_purged identity=%s deleted=%d", recipient, deleted)
        return deleted

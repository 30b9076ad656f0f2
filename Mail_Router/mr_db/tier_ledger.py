import logging
import time
from typing import Optional

import redis
import redis.asyncio

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.types import AccountTierRecord, TierCapabilities

logger = logging.getLogger("mr_db.tier_ledger")


def capabilities(tier: str) -> TierCapabilities:
    if tier not in config.VALID_TIERS:
        raise errors.InvalidTierError(tier)
    paid = config.TIER_RANKS[tier] >= config.TIER_RANKS["upgraded"]
    return TierCapabilities(
        tier=tier,
        decay_days=config.TIER_DECAY_DAYS[tier],
        can_send=paid,
        can_link_wallet=paid,
    )


def is_dormant(record: AccountTierRecord, now_ms: Optional[int] = None) -> bool:
    if record.tier != "basic" or record.expires_at is None:
        return False
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return record.expires_at <= now_ms


class TierLedger:
    """Account tier records. Tiers only ever move up; same tier is a renewal."""

    def __init__(self, client: redis.asyncio.Redis):
        self.db: redis.asyncio.Redis = client

    def _tier_key(self, identity: str) -> str:
        return f"{config.TIER_KEY_PREFIX}:{identity}"

    @staticmethod
    def _expiry(tier: str, start_ms: int) -> Optional[int]:
        days = config.TIER_ACCOUNT_DAYS[tier]
        if days is None:
            return None
        return start_ms + days * config.MS_PER_DAY

    def _serialize(self, record: AccountTierRecord) -> dict:
        return {
            "identity": record.identity,
            "tier": record.tier,
            "expires_at": "" if record.expires_at is None else str(record.expires_at),
            "retention": record.retention,
            "created_at": str(record.created_at),
            "updated_at": str(record.updated_at),
            "linked_wallet": record.linked_wallet or "",
        }

    def _deserialize(self, data: dict[bytes, bytes]) -> AccountTierRecord:
        expires_at = data.get(b"expires_at", b"").decode()
        linked_wallet = data.get(b"linked_wallet", b"").decode()
        return AccountTierRecord(
            identity=data[b"identity"].decode(),
            tier=data[b"tier"].decode(),
            expires_at=int(expires_at) if expires_at else None,
            retention=data[b"retention"].decode(),
            created_at=int(data[b"created_at"]),
            updated_at=int(data[b"updated_at"]),
            linked_wallet=linked_wallet or None,
        )

    def _decode(self, data: dict[bytes, bytes]) -> Optional[AccountTierRecord]:
        if not data or b"created_at" not in data:
            return None
        return self._deserialize(data)

    async def get(self, identity: str) -> Optional[AccountTierRecord]:
        try:
            data = await self.db.hgetall(self._tier_key(identity))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("tier_get")
        return self._decode(data)

    async def create_basic(self, identity: str, owner_key: Optional[str] = None) -> Optional[AccountTierRecord]:
        """Reserve ``identity`` at the basic tier. Returns None if already reserved.

        The full record (and ``owner_key`` when given) is written in one
        WATCH/MULTI transaction; a failed write leaves nothing behind.
        """
        now_ms = int(time.time() * 1000)
        record = AccountTierRecord(
            identity=identity,
            tier="basic",
            expires_at=self._expiry("basic", now_ms),
            retention="bounded",
            created_at=now_ms,
            updated_at=now_ms,
        )
        key = self._tier_key(identity)
        try:
            async with self.db.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if await pipe.exists(key):
                    return None
                pipe.multi()
                pipe.hset(key, mapping=self._serialize(record))
                if owner_key is not None:
                    pipe.set(f"{config.OWNER_KEY_PREFIX}:{identity}", owner_key)
                await pipe.execute()
        except redis.exceptions.WatchError:
            return None
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("tier_create_basic")
        return record

    async def renew_basic(self, identity: str) -> AccountTierRecord:
        record = await self.get(identity)
        if record is None:
            raise errors.IdentityNotFoundError(identity)
        if record.tier != "basic":
            return record

        now_ms = int(time.time() * 1000)
        record.expires_at = self._expiry("basic", now_ms)
        record.updated_at = now_ms
        try:
            await self.db.hset(self._tier_key(identity), mapping=self._serialize(record))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("tier_renew_basic")
        return record

    def check_transition(self, identity: str, current: Optional[AccountTierRecord], tier: str) -> None:
        if tier not in config.VALID_TIERS or tier == "basic":
            raise errors.InvalidTierError(tier)
        if current is None:
            return
        if config.TIER_RANKS[tier] < config.TIER_RANKS[current.tier]:
            raise errors.DowngradeNotAllowedError(identity, current.tier, tier)

    def _next_record(
        self,
        identity: str,
        previous: Optional[AccountTierRecord],
        tier: str,
        linked_wallet: Optional[str],
    ) -> AccountTierRecord:
        self.check_transition(identity, previous, tier)

        now_ms = int(time.time() * 1000)
        start_ms = now_ms
        if previous is not None and previous.tier == tier and previous.expires_at is not None:
            # renewal stacks on the remaining window
            start_ms = max(now_ms, previous.expires_at)

        if linked_wallet and not capabilities(tier).can_link_wallet:
            raise errors.CapabilityDeniedError(identity, "link-wallet")

        return AccountTierRecord(
            identity=identity,
            tier=tier,
            expires_at=self._expiry(tier, start_ms),
            retention="infinite" if config.TIER_DECAY_DAYS[tier] is None else "bounded",
            created_at=previous.created_at if previous else now_ms,
            updated_at=now_ms,
            linked_wallet=linked_wallet or (previous.linked_wallet if previous else None),
        )

    async def apply_upgrade(
        self,
        identity: str,
        tier: str,
        linked_wallet: Optional[str] = None,
    ) -> tuple[Optional[AccountTierRecord], AccountTierRecord]:
        """Move ``identity`` to ``tier``. Returns ``(previous, updated)`` so callers can roll back.

        The read, transition check and write run under WATCH, so a concurrent
        write to the same record forces a re-read instead of being overwritten.
        """
        key = self._tier_key(identity)
        try:
            for _ in range(config.TIER_WRITE_RETRIES):
                try:
                    async with self.db.pipeline(transaction=True) as pipe:
                        await pipe.watch(key)
                        previous = self._decode(await pipe.hgetall(key))
                        updated = self._next_record(identity, previous, tier, linked_wallet)
                        pipe.multi()
                        pipe.hset(key, mapping=self._serialize(updated))
                        await pipe.execute()
                except redis.exceptions.WatchError:
                    logger.info("tier_write_conflict identity=%s", identity)
                    continue

                logger.info(
                    "tier_applied identity=%s from=%s to=%s",
                    identity, previous.tier if previous else None, tier,
                )
                return previous, updated
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("tier_apply_upgrade")
        raise errors.StoreUnavailableError("tier_apply_upgrade")

    async def restore(
        self,
        identity: str,
        previous: Optional[AccountTierRecord],
        expected: Optional[AccountTierRecord] = None,
    ) -> bool:
        """Put ``previous`` back. With ``expected``, only while the stored record is still ``expected``."""
        key = self._tier_key(identity)
        try:
            async with self.db.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if expected is not None and self._decode(await pipe.hgetall(key)) != expected:
                    logger.warning("tier_restore_skipped identity=%s reason=superseded", identity)
                    return False
                pipe.multi()
                pipe.delete(key)
                if previous is not None:
                    pipe.hset(key, mapping=self._serialize(previous))
                await pipe.execute()
        except redis.exceptions.WatchError:
            logger.warning("tier_restore_skipped identity=%s reason=concurrent-write", identity)
            return False
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("tier_restore")

        logger.warning("tier_restored identity=%s tier=%s", identity, previous.tier if previous else None)
        return True

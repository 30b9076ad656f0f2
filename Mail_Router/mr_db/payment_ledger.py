import json
import logging
import time
from dataclasses import asdict
from typing import Optional

import redis
import redis.asyncio

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.types import PaymentBurnRecord

logger = logging.getLogger("mr_db.payment_ledger")


class PaymentLedger:
    """Double-spend ledger: a burned transaction hash is never accepted again.

    A burn is one ``SET NX EX`` of the whole record, so the key either holds a
    complete record with its TTL or does not exist.
    """

    def __init__(self, client: redis.asyncio.Redis):
        self.db: redis.asyncio.Redis = client

    @staticmethod
    def normalize(tx_hash: str) -> str:
        return tx_hash.strip().lower()

    def _payment_key(self, tx_hash: str) -> str:
        return f"{config.PAYMENT_KEY_PREFIX}:{self.normalize(tx_hash)}"

    async def is_burned(self, tx_hash: str) -> bool:
        try:
            return bool(await self.db.exists(self._payment_key(tx_hash)))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("payment_is_burned")

    async def get(self, tx_hash: str) -> Optional[PaymentBurnRecord]:
        try:
            raw = await self.db.get(self._payment_key(tx_hash))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("payment_get")
        if raw is None:
            return None
        return PaymentBurnRecord(**json.loads(raw))

    async def burn(self, tx_hash: str, identity: str, tier: str) -> PaymentBurnRecord:
        record = PaymentBurnRecord(
            tx_hash=self.normalize(tx_hash),
            identity=identity,
            tier=tier,
            recorded_at=int(time.time() * 1000),
        )
        try:
            stored = await self.db.set(
                self._payment_key(tx_hash),
                json.dumps(asdict(record)),
                nx=True,
                ex=config.PAYMENT_BURN_TTL_SECONDS,
            )
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("payment_burn")
        if not stored:
            raise errors.PaymentAlreadyUsedError(record.tx_hash)

        logger.info("payment_burned tx=%s identity=%s tier=%s", record.tx_hash, identity, tier)
        return record

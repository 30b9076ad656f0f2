import time
from typing import Optional

import redis
import redis.asyncio

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.types import PrivacyRecord


class PrivacyStore:
    """Tri-state privacy per identity. ``hard-privacy`` only lifts through a paid upgrade."""

    def __init__(self, client: redis.asyncio.Redis):
        self.db: redis.asyncio.Redis = client

    def _privacy_key(self, identity: str) -> str:
        return f"{config.PRIVACY_KEY_PREFIX}:{identity}"

    async def get(self, identity: str) -> Optional[PrivacyRecord]:
        try:
            data = await self.db.hgetall(self._privacy_key(identity))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("privacy_get")
        if not data:
            return None
        return PrivacyRecord(
            identity=identity,
            state=data[b"state"].decode(),
            updated_at=int(data[b"updated_at"]),
        )

    async def set_state(self, identity: str, state: str, paid: bool = False) -> PrivacyRecord:
        if state not in config.VALID_PRIVACY_STATES:
            raise errors.InvalidPrivacyStateError(state)

        current = await self.get(identity)
        if (
            current is not None
            and current.state == "hard-privacy"
            and state != "hard-privacy"
            and not paid
        ):
            raise errors.PrivacyLockedError(identity, current.state)

        record = PrivacyRecord(identity=identity, state=state, updated_at=int(time.time() * 1000))
        try:
            await self.db.hset(
                self._privacy_key(identity),
                mapping={"state": record.state, "updated_at": str(record.updated_at)},
            )
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("privacy_set_state")
        return record

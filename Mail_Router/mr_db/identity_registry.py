import logging
import time
from typing import Optional

import redis
import redis.asyncio

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.policy import default_privacy
from Mail_Router.mr_shared.signatures import normalize_owner_key
from Mail_Router.mr_shared.types import AccountTierRecord, Classification
from Mail_Router.mr_db.audit_log import AuditLog
from Mail_Router.mr_db.privacy import PrivacyStore
from Mail_Router.mr_db.tier_ledger import TierLedger, is_dormant

logger = logging.getLogger("mr_db.identity_registry")


class IdentityRegistry:
    def __init__(
        self,
        client: redis.asyncio.Redis,
        tiers: TierLedger,
        audit: AuditLog,
        privacy: PrivacyStore,
    ):
        self.db: redis.asyncio.Redis = client
        self.tiers = tiers
        self.audit = audit
        self.privacy = privacy

    def _owner_key(self, identity: str) -> str:
        return f"{config.OWNER_KEY_PREFIX}:{identity}"

    async def get_owner_key(self, identity: str) -> Optional[str]:
        try:
            value = await self.db.get(self._owner_key(identity))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("identity_get_owner_key")
        return value.decode() if value is not None else None

    async def lookup(self, identity: str) -> Optional[AccountTierRecord]:
        """Tier record for a live identity; dormant and unknown identities read as None."""
        record = await self.tiers.get(identity)
        if record is None or is_dormant(record):
            return None
        return record

    async def register(
        self,
        classification: Classification,
        owner_key: str,
        public_audit: bool = False,
        automated: bool = False,
    ) -> AccountTierRecord:
        if not classification.accepted:
            raise errors.RejectedAddressError(classification.local_part, classification.reason or "unknown")
        if automated and classification.stream != "agent":
            raise errors.RejectedAddressError(classification.local_part, "automated-provisioning-requires-marker")

        identity = classification.identity_name
        owner = normalize_owner_key(owner_key)

        record = await self.tiers.create_basic(identity, owner_key=owner)
        if record is None:
            existing = await self.tiers.get(identity)
            if existing is not None and is_dormant(existing) and await self.get_owner_key(identity) == owner:
                logger.info("identity_renewed identity=%s", identity)
                return await self.tiers.renew_basic(identity)
            raise errors.IdentityTakenError(identity)

        await self.audit.set_tld(identity, config.GLASS_BOX_TLD if public_audit else config.BLACK_BOX_TLD)
        await self.privacy.set_state(identity, default_privacy(classification.stream, None))

        logger.info(
            "identity_registered identity=%s stream=%s public_audit=%s at=%d",
            identity, classification.stream, public_audit, int(time.time() * 1000),
        )
        return record

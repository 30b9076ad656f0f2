import json
import logging
import time
import uuid
from dataclasses import asdict
from typing import Optional

import redis
import redis.asyncio

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.redaction import SensitiveContentDetector
from Mail_Router.mr_shared.types import AuditEntry, TransitionRecord

logger = logging.getLogger("mr_db.audit_log")


class AuditLog:
    """Append-only public log for glass-box identities.

    Entries are never edited or removed. The only owner control is the
    one-way molt from glass box to black box, which stops future entries.
    """

    def __init__(self, client: redis.asyncio.Redis, detector: Optional[SensitiveContentDetector] = None):
        self.db: redis.asyncio.Redis = client
        self.detector = detector or SensitiveContentDetector()

    def _log_key(self, identity: str) -> str:
        return f"{config.AUDIT_KEY_PREFIX}:{identity}"

    def _transition_key(self, identity: str) -> str:
        return f"{config.AUDIT_TRANSITION_PREFIX}:{identity}"

    def _tld_key(self, identity: str) -> str:
        return f"{config.TLD_KEY_PREFIX}:{identity}"

    async def get_tld(self, identity: str) -> Optional[str]:
        try:
            value = await self.db.get(self._tld_key(identity))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("audit_get_tld")
        return value.decode() if value is not None else None

    async def set_tld(self, identity: str, tld: str) -> None:
        try:
            await self.db.set(self._tld_key(identity), tld)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("audit_set_tld")

    async def is_glass_box(self, identity: str) -> bool:
        return await self.get_tld(identity) == config.GLASS_BOX_TLD

    def build_entry(
        self,
        sender: str,
        recipient: str,
        subject: str,
        body: str,
        content_hash: str,
    ) -> AuditEntry:
        redact, reason = self.detector.scan(sender, subject, body)
        return AuditEntry(
            id=uuid.uuid4().hex,
            sender=sender,
            recipient=recipient,
            subject=config.REDACTED_SUBJECT if redact else subject,
            content=config.REDACTED_CONTENT if redact else body,
            timestamp=int(time.time() * 1000),
            content_hash=content_hash,
            redacted=redact,
            redaction_reason=reason,
        )

    async def append(
        self,
        identity: str,
        sender: str,
        recipient: str,
        subject: str,
        body: str,
        content_hash: str,
    ) -> AuditEntry:
        entry = self.build_entry(sender, recipient, subject, body, content_hash)
        try:
            await self.db.rpush(self._log_key(identity), json.dumps(asdict(entry)))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("audit_append")

        if entry.redacted:
            logger.info("audit_redacted identity=%s reason=%s", identity, entry.redaction_reason)
        return entry

    async def entries(self, identity: str) -> list[AuditEntry]:
        try:
            raws = await self.db.lrange(self._log_key(identity), 0, -1)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("audit_entries")
        return [AuditEntry(**json.loads(raw)) for raw in raws]

    async def transitions(self, identity: str) -> list[TransitionRecord]:
        try:
            raws = await self.db.lrange(self._transition_key(identity), 0, -1)
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("audit_transitions")
        return [TransitionRecord(**json.loads(raw)) for raw in raws]

    async def molt_to_private(self, identity: str) -> TransitionRecord:
        current = await self.get_tld(identity)
        if current is None:
            raise errors.IdentityNotFoundError(identity)
        if current != config.GLASS_BOX_TLD:
            raise errors.AlreadyMoltedError(identity)

        record = TransitionRecord(
            identity=identity,
            old_state=config.GLASS_BOX_TLD,
            new_state=config.BLACK_BOX_TLD,
            timestamp=int(time.time() * 1000),
        )
        try:
            pipe = self.db.pipeline(transaction=True)
            pipe.set(self._tld_key(identity), config.BLACK_BOX_TLD)
            pipe.rpush(self._transition_key(identity), json.dumps(asdict(record)))
            await pipe.execute()
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("audit_molt_to_private")

        logger.info("identity_molted identity=%s", identity)
        return record

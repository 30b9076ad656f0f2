"""
Message-arrival pipeline.

    inbound message
        -> classify recipient            (reject: RejectedAddressError, nothing stored)
        -> NFT ownership check           (nft-collection stream only)
        -> confidentiality policy        (encrypted | cleartext | warning)
        -> BlindInbox.put                (tier decay window)
        -> AuditLog.append               (glass-box identities only)
        -> provider forward              (exposed sovereign cleartext, best-effort)
"""

import logging
import time
from typing import Optional

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.classifier import classify
from Mail_Router.mr_shared.counters import RateLimiter
from Mail_Router.mr_shared.crypto_engine import EciesEngine, canonical_plaintext, content_hash
from Mail_Router.mr_shared.policy import DeliveryContext, PolicySelector, default_privacy
from Mail_Router.mr_shared.types import Classification, DeliveryReceipt, Envelope, InboundMessage
from Mail_Router.mr_db.audit_log import AuditLog
from Mail_Router.mr_db.blind_inbox import BlindInbox
from Mail_Router.mr_db.key_registry import KeyRegistry
from Mail_Router.mr_db.privacy import PrivacyStore
from Mail_Router.mr_db.tier_ledger import TierLedger, capabilities, is_dormant
from Mail_Router.mr_server.chain_oracle import OwnershipOracle
from Mail_Router.mr_server.mail_provider import MailProvider

logger = logging.getLogger("mr_server.router")


class MessageRouter:
    def __init__(
        self,
        inbox: BlindInbox,
        keys: KeyRegistry,
        tiers: TierLedger,
        privacy: PrivacyStore,
        audit: AuditLog,
        engine: EciesEngine,
        ownership: OwnershipOracle,
        provider: Optional[MailProvider] = None,
        direct_limiter: Optional[RateLimiter] = None,
        recovery_public_key: Optional[str] = None,
        collections: Optional[dict[str, str]] = None,
    ):
        self.inbox = inbox
        self.keys = keys
        self.tiers = tiers
        self.privacy = privacy
        self.audit = audit
        self.engine = engine
        self.ownership = ownership
        self.provider = provider
        self.direct_limiter = direct_limiter
        self.recovery_public_key = recovery_public_key or None
        self.collections = collections if collections is not None else config.NFT_COLLECTIONS
        self.policy = PolicySelector()

    async def _accept(self, address: str) -> Classification:
        classification = classify(address, self.collections)
        if not classification.accepted:
            logger.info("recipient_rejected address=%s reason=%s", address, classification.reason)
            raise errors.RejectedAddressError(address, classification.reason or "unknown")

        if classification.stream == "nft-collection":
            owner = await self.ownership.verify_owner(classification.collection_name, classification.token_id)
            if owner is None:
                logger.info("recipient_rejected address=%s reason=unowned-token", address)
                raise errors.RejectedAddressError(address, "unowned-token")
        return classification

    async def _context(self, classification: Classification) -> tuple[DeliveryContext, Optional[str], Optional[int]]:
        identity = classification.identity_name
        record = await self.tiers.get(identity)
        tier = record.tier if record else "basic"
        privacy_record = await self.privacy.get(identity)
        public_key = await self.keys.get(identity)

        ctx = DeliveryContext(
            stream=classification.stream,
            privacy_state=default_privacy(classification.stream, privacy_record.state if privacy_record else None),
            has_key=public_key is not None,
            label=identity,
        )
        return ctx, public_key, config.TIER_DECAY_DAYS[tier]

    async def handle_inbound(self, message: InboundMessage, sender_agent: Optional[str] = None) -> DeliveryReceipt:
        classification = await self._accept(message.recipient)
        identity = classification.identity_name
        ctx, public_key, decay_days = await self._context(classification)
        kind = self.policy.select(ctx)

        to_address = f"{identity}@{config.MAIL_DOMAIN}"
        canonical = canonical_plaintext(message.sender, to_address, message.subject, message.body)
        envelope = Envelope(
            id=BlindInbox.new_message_id(),
            kind=kind,
            recipient=identity,
            content_hash=content_hash(canonical),
            received_at=int(time.time() * 1000),
            decay_days=decay_days,
            channel=message.channel,
            sender_agent=sender_agent,
        )

        if kind == "encrypted":
            envelope.ciphertext, envelope.recovery_ciphertext = self.engine.seal_with_recovery(
                canonical, public_key, self.recovery_public_key
            )
        elif kind == "cleartext":
            envelope.plaintext = {
                "from": message.sender,
                "to": to_address,
                "subject": message.subject,
                "body": message.body,
            }
        else:
            envelope.notice = config.MISSING_KEY_NOTICE
            logger.info("missing_key identity=%s stream=%s", identity, classification.stream)

        await self.inbox.put(identity, envelope)

        audited = False
        try:
            if await self.audit.is_glass_box(identity):
                await self.audit.append(
                    identity, message.sender, to_address, message.subject, message.body, envelope.content_hash
                )
                audited = True
        except errors.StoreUnavailableError as e:
            # the envelope is already stored, so the delivery stands
            logger.warning("audit_append_failed identity=%s message=%s detail=%s", identity, envelope.id, e)

        forwarded = False
        if self.provider is not None and message.channel != "sweep" and self.policy.should_forward(ctx, kind):
            try:
                await self.provider.forward(identity, message)
                forwarded = True
            except errors.ProviderError as e:
                logger.warning("forward_failed identity=%s detail=%s", identity, e.detail)

        logger.info(
            "message_stored identity=%s stream=%s kind=%s channel=%s",
            identity, classification.stream, kind, message.channel,
        )
        return DeliveryReceipt(
            message_id=envelope.id,
            recipient=identity,
            stream=classification.stream,
            kind=kind,
            audited=audited,
            forwarded=forwarded,
        )

    async def send_direct(self, from_agent: str, to_agent: str, subject: str, content: str) -> DeliveryReceipt:
        """Agent-to-agent delivery over the internal channel; the sender needs send capability."""
        sender = classify(from_agent, self.collections)
        if not sender.accepted:
            raise errors.RejectedAddressError(from_agent, sender.reason or "unknown")

        record = await self.tiers.get(sender.identity_name)
        if record is None or is_dormant(record) or not capabilities(record.tier).can_send:
            raise errors.CapabilityDeniedError(sender.identity_name, "send")

        if self.direct_limiter is not None:
            await self.direct_limiter.hit(sender.identity_name)

        message = InboundMessage(
            sender=f"{sender.identity_name}@{config.MAIL_DOMAIN}",
            recipient=to_agent,
            subject=subject,
            body=content,
            channel="ghost-wire",
        )
        return await self.handle_inbound(message, sender_agent=sender.identity_name)

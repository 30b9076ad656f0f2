"""
HTTP action dispatch.

The action surface is the closed ``Action`` enum. Each member has exactly one
request model (``REQUEST_MODELS``), one auth rule (``AUTH_RULES``) and one
handler on ``Dispatcher``; anything else is rejected with
``UnknownActionError`` before any model is parsed.

Auth rules:
    none             read-only lookups
    secret           shared-secret header only (service-to-service)
    secret-or-owner  shared secret, or an Ed25519 owner signature
    owner            owner signature only (destructive)
"""

import hmac
import json
import logging
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.classifier import classify, split_address
from Mail_Router.mr_shared.crypto_engine import EciesEngine
from Mail_Router.mr_shared.policy import default_privacy
from Mail_Router.mr_shared.signatures import verify_action
from Mail_Router.mr_db.audit_log import AuditLog
from Mail_Router.mr_db.blind_inbox import BlindInbox
from Mail_Router.mr_db.calendar import CalendarStore
from Mail_Router.mr_db.identity_registry import IdentityRegistry
from Mail_Router.mr_db.key_registry import KeyRegistry
from Mail_Router.mr_db.payment_ledger import PaymentLedger
from Mail_Router.mr_db.privacy import PrivacyStore
from Mail_Router.mr_db.status import StatusReporter
from Mail_Router.mr_db.tier_ledger import TierLedger, capabilities, is_dormant
from Mail_Router.mr_server.chain_oracle import OwnershipOracle
from Mail_Router.mr_server.payment_gate import PaymentGate
from Mail_Router.mr_server.pinning import Pinner
from Mail_Router.mr_server.router import MessageRouter

logger = logging.getLogger("mr_server.actions")


class Action(str, Enum):
    GET_INBOX = "get-inbox"
    GET_STATUS = "get-status"
    GET_CALENDAR = "get-calendar"
    SCHEDULE_CALENDAR_EVENT = "schedule-calendar-event"
    SEND_DIRECT_MESSAGE = "send-direct-message"
    SET_PRIVACY = "set-privacy"
    GET_PRIVACY = "get-privacy"
    RESOLVE_ADDRESS = "resolve-address"
    CLASSIFY_ADDRESS = "classify-address"
    REGISTER_ENCRYPTION_KEY = "register-encryption-key"
    GENERATE_ENCRYPTION_KEY = "generate-encryption-key"
    GET_AUDIT_LOG = "get-audit-log"
    MOLT_TO_PRIVATE = "molt-to-private"
    REGISTER_IDENTITY = "register-identity"
    UPGRADE_TIER = "upgrade-tier"
    FREEZE_MESSAGE = "freeze-message"
    DELETE_MESSAGE = "delete-message"
    CHECK_PAYMENT_USED = "check-payment-used"
    RECORD_PAYMENT_USED = "record-payment-used"
    PURGE_INBOX = "purge-inbox"


def normalize_identity(value: str) -> str:
    local, domain = split_address(value)
    if domain is not None and domain != config.MAIL_DOMAIN:
        raise ValueError(f"foreign domain {domain}")
    if not local:
        raise ValueError("identity is empty")
    return local


# ── Pydantic request models ──


class ActionRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    signature: Optional[str] = None
    signed_at: Optional[int] = None

    def auth_identity(self) -> Optional[str]:
        return None


class IdentityRequest(ActionRequest):
    identity: str

    @field_validator("identity")
    @classmethod
    def validate_identity(cls, v):
        return normalize_identity(v)

    def auth_identity(self) -> Optional[str]:
        return self.identity


class GetInboxRequest(IdentityRequest):
    pass


class GetStatusRequest(IdentityRequest):
    pass


class GetCalendarRequest(IdentityRequest):
    upcoming_only: bool = True


class ScheduleCalendarEventRequest(ActionRequest):
    organizer: str
    type: str = "SYNC"
    title: str
    start_time: int
    end_time: int
    participants: list[str] = Field(default_factory=list)
    description: str = ""
    send_invites: bool = True

    @field_validator("organizer")
    @classmethod
    def validate_organizer(cls, v):
        return normalize_identity(v)

    @field_validator("participants")
    @classmethod
    def validate_participants(cls, v):
        return [normalize_identity(p) for p in v]

    def auth_identity(self) -> Optional[str]:
        return self.organizer


class SendDirectMessageRequest(ActionRequest):
    from_agent: str
    to_agent: str
    subject: str = ""
    content: str

    @field_validator("from_agent", "to_agent")
    @classmethod
    def validate_agents(cls, v):
        return normalize_identity(v)

    def auth_identity(self) -> Optional[str]:
        return self.from_agent


class SetPrivacyRequest(IdentityRequest):
    state: str

    @field_validator("state")
    @classmethod
    def validate_state(cls, v):
        if v not in config.VALID_PRIVACY_STATES:
            raise ValueError(f"Invalid privacy state: {v}")
        return v


class GetPrivacyRequest(IdentityRequest):
    pass


class ResolveAddressRequest(ActionRequest):
    address: str


class ClassifyAddressRequest(ActionRequest):
    address: str


class RegisterEncryptionKeyRequest(IdentityRequest):
    public_key: str


class GenerateEncryptionKeyRequest(ActionRequest):
    pass


class GetAuditLogRequest(IdentityRequest):
    pass


class MoltToPrivateRequest(IdentityRequest):
    pass


class RegisterIdentityRequest(ActionRequest):
    address: str
    owner_key: str
    public_audit: bool = False
    automated: bool = False


class UpgradeTierRequest(IdentityRequest):
    tx_hash: str
    tier: str
    asset: str = "native"
    linked_wallet: Optional[str] = None
    release_hard_privacy: bool = False

    @field_validator("linked_wallet")
    @classmethod
    def validate_wallet(cls, v):
        if v is not None and not re.match(config.WALLET_PATTERN, v):
            raise ValueError(f"Invalid wallet address: {v}")
        return v.lower() if v else v


class FreezeMessageRequest(IdentityRequest):
    message_id: str
    pin: bool = True


class DeleteMessageRequest(IdentityRequest):
    message_id: str


class CheckPaymentUsedRequest(ActionRequest):
    tx_hash: str


class RecordPaymentUsedRequest(IdentityRequest):
    tx_hash: str
    tier: str


class PurgeInboxRequest(IdentityRequest):
    pass


REQUEST_MODELS: dict[Action, type[ActionRequest]] = {
    Action.GET_INBOX: GetInboxRequest,
    Action.GET_STATUS: GetStatusRequest,
    Action.GET_CALENDAR: GetCalendarRequest,
    Action.SCHEDULE_CALENDAR_EVENT: ScheduleCalendarEventRequest,
    Action.SEND_DIRECT_MESSAGE: SendDirectMessageRequest,
    Action.SET_PRIVACY: SetPrivacyRequest,
    Action.GET_PRIVACY: GetPrivacyRequest,
    Action.RESOLVE_ADDRESS: ResolveAddressRequest,
    Action.CLASSIFY_ADDRESS: ClassifyAddressRequest,
    Action.REGISTER_ENCRYPTION_KEY: RegisterEncryptionKeyRequest,
    Action.GENERATE_ENCRYPTION_KEY: GenerateEncryptionKeyRequest,
    Action.GET_AUDIT_LOG: GetAuditLogRequest,
    Action.MOLT_TO_PRIVATE: MoltToPrivateRequest,
    Action.REGISTER_IDENTITY: RegisterIdentityRequest,
    Action.UPGRADE_TIER: UpgradeTierRequest,
    Action.FREEZE_MESSAGE: FreezeMessageRequest,
    Action.DELETE_MESSAGE: DeleteMessageRequest,
    Action.CHECK_PAYMENT_USED: CheckPaymentUsedRequest,
    Action.RECORD_PAYMENT_USED: RecordPaymentUsedRequest,
    Action.PURGE_INBOX: PurgeInboxRequest,
}

AUTH_RULES: dict[Action, str] = {
    Action.GET_INBOX: "secret-or-owner",
    Action.GET_STATUS: "none",
    Action.GET_CALENDAR: "none",
    Action.SCHEDULE_CALENDAR_EVENT: "secret-or-owner",
    Action.SEND_DIRECT_MESSAGE: "secret-or-owner",
    Action.SET_PRIVACY: "secret-or-owner",
    Action.GET_PRIVACY: "none",
    Action.RESOLVE_ADDRESS: "none",
    Action.CLASSIFY_ADDRESS: "none",
    Action.REGISTER_ENCRYPTION_KEY: "secret-or-owner",
    Action.GENERATE_ENCRYPTION_KEY: "none",
    Action.GET_AUDIT_LOG: "none",
    Action.MOLT_TO_PRIVATE: "secret-or-owner",
    Action.REGISTER_IDENTITY: "secret",
    Action.UPGRADE_TIER: "secret-or-owner",
    Action.FREEZE_MESSAGE: "secret-or-owner",
    Action.DELETE_MESSAGE: "secret-or-owner",
    Action.CHECK_PAYMENT_USED: "none",
    Action.RECORD_PAYMENT_USED: "secret",
    Action.PURGE_INBOX: "owner",
}


@dataclass
class Services:
    inbox: BlindInbox
    audit: AuditLog
    tiers: TierLedger
    privacy: PrivacyStore
    payments: PaymentLedger
    keys: KeyRegistry
    identities: IdentityRegistry
    calendar: CalendarStore
    status: StatusReporter
    gate: PaymentGate
    router: MessageRouter
    engine: EciesEngine
    ownership: OwnershipOracle
    pinner: Optional[Pinner] = None
    router_secret: str = ""


class Dispatcher:
    def __init__(self, services: Services):
        self.s = services
        self._handlers = {
            Action.GET_INBOX: self._get_inbox,
            Action.GET_STATUS: self._get_status,
            Action.GET_CALENDAR: self._get_calendar,
            Action.SCHEDULE_CALENDAR_EVENT: self._schedule_calendar_event,
            Action.SEND_DIRECT_MESSAGE: self._send_direct_message,
            Action.SET_PRIVACY: self._set_privacy,
            Action.GET_PRIVACY: self._get_privacy,
            Action.RESOLVE_ADDRESS: self._resolve_address,
            Action.CLASSIFY_ADDRESS: self._classify_address,
            Action.REGISTER_ENCRYPTION_KEY: self._register_encryption_key,
            Action.GENERATE_ENCRYPTION_KEY: self._generate_encryption_key,
            Action.GET_AUDIT_LOG: self._get_audit_log,
            Action.MOLT_TO_PRIVATE: self._molt_to_private,
            Action.REGISTER_IDENTITY: self._register_identity,
            Action.UPGRADE_TIER: self._upgrade_tier,
            Action.FREEZE_MESSAGE: self._freeze_message,
            Action.DELETE_MESSAGE: self._delete_message,
            Action.CHECK_PAYMENT_USED: self._check_payment_used,
            Action.RECORD_PAYMENT_USED: self._record_payment_used,
            Action.PURGE_INBOX: self._purge_inbox,
        }

    # ── Dispatch and auth ──

    @staticmethod
    def parse_action(raw) -> Action:
        try:
            return Action(raw)
        except ValueError:
            raise errors.UnknownActionError(raw)

    def _secret_ok(self, presented: Optional[str]) -> bool:
        expected = self.s.router_secret
        if not expected or not presented:
            return False
        return hmac.compare_digest(presented.encode(), expected.encode())

    async def _owner_ok(self, action: Action, request: ActionRequest, payload: Optional[dict]) -> bool:
        identity = request.auth_identity()
        if identity is None or not request.signature or request.signed_at is None:
            return False
        owner_key = await self.s.identities.get_owner_key(identity)
        if owner_key is None:
            return False
        return verify_action(owner_key, action.value, identity, request.signed_at, request.signature, payload)

    async def authorize(
        self,
        action: Action,
        request: ActionRequest,
        secret: Optional[str],
        payload: Optional[dict] = None,
    ) -> None:
        """Owner signatures cover ``payload``, the request body as received."""
        rule = AUTH_RULES[action]
        if rule == "none":
            return
        if rule in ("secret", "secret-or-owner") and self._secret_ok(secret):
            return
        if rule in ("owner", "secret-or-owner") and await self._owner_ok(action, request, payload):
            return

        detail = "owner signature required" if rule == "owner" else "missing or invalid credentials"
        logger.info("auth_rejected action=%s identity=%s", action.value, request.auth_identity())
        raise errors.AuthRequiredError(action.value, detail)

    async def dispatch(self, payload: dict, secret: Optional[str] = None) -> dict:
        action = self.parse_action(payload.get("action"))
        request = REQUEST_MODELS[action].model_validate(payload)
        await self.authorize(action, request, secret, payload)
        return await self._handlers[action](request)

    # ── Helpers ──

    async def _require_identity(self, identity: str):
        record = await self.s.identities.lookup(identity)
        if record is None:
            raise errors.IdentityNotFoundError(identity)
        return record

    async def _privacy_state(self, identity: str) -> str:
        record = await self.s.privacy.get(identity)
        return default_privacy(classify(identity).stream, record.state if record else None)

    # ── Inbox ──

    async def _get_inbox(self, req: GetInboxRequest) -> dict:
        items = await self.s.inbox.get_all(req.identity)
        return {
            "identity": req.identity,
            "count": len(items),
            "messages": [{**item.envelope.to_dict(), "decay_pct": item.decay_pct} for item in items],
        }

    async def _freeze_message(self, req: FreezeMessageRequest) -> dict:
        envelope = await self.s.inbox.get(req.identity, req.message_id)
        if envelope is None:
            raise errors.EnvelopeNotFoundError(req.identity, req.message_id)

        ipfs_ref = None
        if req.pin and self.s.pinner is not None:
            try:
                ipfs_ref = await self.s.pinner.pin(envelope)
            except errors.BestEffortFailure as e:
                logger.warning("pin_failed identity=%s message=%s detail=%s", req.identity, req.message_id, e.detail)

        frozen = await self.s.inbox.freeze(req.identity, req.message_id, ipfs_ref)
        return {"identity": req.identity, "message_id": frozen.id, "frozen": True, "ipfs_ref": frozen.ipfs_ref}

    async def _delete_message(self, req: DeleteMessageRequest) -> dict:
        deleted = await self.s.inbox.delete(req.identity, req.message_id)
        return {"identity": req.identity, "message_id": req.message_id, "deleted": deleted}

    async def _purge_inbox(self, req: PurgeInboxRequest) -> dict:
        deleted = await self.s.inbox.purge_all(req.identity)
        return {"identity": req.identity, "deleted": deleted}

    # ── Status and calendar ──

    async def _get_status(self, req: GetStatusRequest) -> dict:
        status = await self.s.status.get_status(req.identity)
        result = asdict(status)
        result["capabilities"] = asdict(capabilities(status.tier)) if status.tier else None
        return result

    async def _get_calendar(self, req: GetCalendarRequest) -> dict:
        events = await self.s.calendar.events_for(req.identity, upcoming_only=req.upcoming_only)
        return {"identity": req.identity, "events": [asdict(e) for e in events]}

    async def _schedule_calendar_event(self, req: ScheduleCalendarEventRequest) -> dict:
        await self._require_identity(req.organizer)
        event = await self.s.calendar.create_event(
            organizer=req.organizer,
            event_type=req.type,
            title=req.title,
            start_time=req.start_time,
            end_time=req.end_time,
            participants=req.participants,
            description=req.description,
        )

        sent, failed = [], []
        if req.send_invites:
            for participant in event.participants:
                if participant == event.organizer:
                    continue
                # invites go over the same send path as direct messages
                try:
                    await self.s.router.send_direct(
                        event.organizer,
                        participant,
                        f"[CALENDAR] {event.type}: {event.title}",
                        json.dumps({"type": "REQUEST", "event": asdict(event)}),
                    )
                    sent.append(participant)
                except errors.RejectedAddressError as e:
                    failed.append({"participant": participant, "reason": e.reason})
                except errors.CapabilityDeniedError:
                    failed.append({"participant": participant, "reason": "send-not-permitted"})
                except errors.RateLimitedError:
                    failed.append({"participant": participant, "reason": "rate-limited"})

        return {"event": asdict(event), "invites_sent": sent, "invites_failed": failed}

    async def _send_direct_message(self, req: SendDirectMessageRequest) -> dict:
        receipt = await self.s.router.send_direct(req.from_agent, req.to_agent, req.subject, req.content)
        return asdict(receipt)

    # ── Privacy and audit ──

    async def _set_privacy(self, req: SetPrivacyRequest) -> dict:
        await self._require_identity(req.identity)
        record = await self.s.privacy.set_state(req.identity, req.state)
        return asdict(record)

    async def _get_privacy(self, req: GetPrivacyRequest) -> dict:
        record = await self.s.privacy.get(req.identity)
        if record is not None:
            return asdict(record)
        return {"identity": req.identity, "state": await self._privacy_state(req.identity), "updated_at": None}

    async def _get_audit_log(self, req: GetAuditLogRequest) -> dict:
        entries = await self.s.audit.entries(req.identity)
        transitions = await self.s.audit.transitions(req.identity)
        return {
            "identity": req.identity,
            "tld": await self.s.audit.get_tld(req.identity),
            "entries": [asdict(e) for e in entries],
            "transitions": [asdict(t) for t in transitions],
        }

    async def _molt_to_private(self, req: MoltToPrivateRequest) -> dict:
        await self._require_identity(req.identity)
        record = await self.s.audit.molt_to_private(req.identity)
        current = await self.s.privacy.get(req.identity)
        if current is None or current.state == "exposed":
            await self.s.privacy.set_state(req.identity, "private")
        return asdict(record)

    # ── Addresses and keys ──

    async def _classify_address(self, req: ClassifyAddressRequest) -> dict:
        classification = classify(req.address)
        result = asdict(classification)
        result["accepted"] = classification.accepted
        return result

    async def _resolve_address(self, req: ResolveAddressRequest) -> dict:
        classification = classify(req.address)
        result = {
            "address": req.address,
            "stream": classification.stream,
            "identity": classification.identity_name,
            "valid": classification.accepted,
            "reason": classification.reason,
            "exists": False,
            "available": False,
        }
        if not classification.accepted:
            return result

        identity = classification.identity_name
        record = await self.s.tiers.get(identity)
        if record is None:
            result["available"] = True
            return result
        if is_dormant(record):
            result["dormant"] = True
            return result

        privacy_state = await self._privacy_state(identity)
        result.update({
            "exists": True,
            "tier": record.tier,
            "privacy": privacy_state,
            "has_encryption_key": await self.s.keys.get(identity) is not None,
            "glass_box": await self.s.audit.is_glass_box(identity),
            "linked_wallet": record.linked_wallet if privacy_state == "exposed" else None,
        })
        return result

    async def _register_encryption_key(self, req: RegisterEncryptionKeyRequest) -> dict:
        await self._require_identity(req.identity)
        public_key = await self.s.keys.register(req.identity, req.public_key)
        logger.info("key_registered identity=%s", req.identity)
        return {"identity": req.identity, "public_key": public_key}

    async def _generate_encryption_key(self, req: GenerateEncryptionKeyRequest) -> dict:
        # nothing is persisted; the caller registers the public half separately
        public_key, private_key = self.s.engine.generate_keypair()
        return {"curve": "P-256", "public_key": public_key, "private_key": private_key}

    async def _register_identity(self, req: RegisterIdentityRequest) -> dict:
        classification = classify(req.address)
        if classification.stream == "nft-collection" and classification.accepted:
            owner = await self.s.ownership.verify_owner(classification.collection_name, classification.token_id)
            if owner is None:
                raise errors.RejectedAddressError(req.address, "unowned-token")

        record = await self.s.identities.register(
            classification,
            req.owner_key,
            public_audit=req.public_audit,
            automated=req.automated,
        )
        result = asdict(record)
        result["stream"] = classification.stream
        return result

    # ── Payments ──

    async def _upgrade_tier(self, req: UpgradeTierRequest) -> dict:
        await self._require_identity(req.identity)
        record = await self.s.gate.upgrade(
            req.tx_hash,
            req.tier,
            req.identity,
            asset=req.asset,
            linked_wallet=req.linked_wallet,
            release_hard_privacy=req.release_hard_privacy,
        )
        result = asdict(record)
        result["capabilities"] = asdict(capabilities(record.tier))
        return result

    async def _check_payment_used(self, req: CheckPaymentUsedRequest) -> dict:
        if not re.match(config.TX_HASH_PATTERN, req.tx_hash):
            raise errors.UpgradeDeniedError("malformed-reference")
        record = await self.s.payments.get(req.tx_hash)
        return {
            "tx_hash": req.tx_hash.lower(),
            "used": record is not None,
            "record": asdict(record) if record else None,
        }

    async def _record_payment_used(self, req: RecordPaymentUsedRequest) -> dict:
        if not re.match(config.TX_HASH_PATTERN, req.tx_hash):
            raise errors.UpgradeDeniedError("malformed-reference")
        record = await self.s.payments.burn(req.tx_hash, req.identity, req.tier)
        return asdict(record)

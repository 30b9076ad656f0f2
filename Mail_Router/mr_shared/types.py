from dataclasses import dataclass, field, asdict
from typing import Optional


@dataclass
class Classification:
    stream:          str
    local_part:      str
    identity_name:   Optional[str] = None
    collection_name: Optional[str] = None
    token_id:        Optional[str] = None
    social_pair:     Optional[tuple[str, str]] = None
    agent_marker:    bool = False
    reason:          Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.stream != "unknown" and self.reason is None


@dataclass
class EncryptedPayload:
    version:              int
    ephemeral_public_key: str
    iv:                   str
    ciphertext:           str
    content_hash:         str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedPayload":
        return cls(
            version=int(data["version"]),
            ephemeral_public_key=data["ephemeral_public_key"],
            iv=data["iv"],
            ciphertext=data["ciphertext"],
            content_hash=data["content_hash"],
        )


@dataclass
class Envelope:
    id:                  str
    kind:                str            # cleartext | encrypted | warning
    recipient:           str
    content_hash:        str
    received_at:         int
    ciphertext:          Optional[EncryptedPayload] = None
    recovery_ciphertext: Optional[EncryptedPayload] = None
    plaintext:           Optional[dict] = None
    frozen:              bool = False
    decay_days:          Optional[int] = None
    ipfs_ref:            Optional[str] = None
    channel:             str = "external"
    sender_agent:        Optional[str] = None
    notice:              Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["ciphertext"] = self.ciphertext.to_dict() if self.ciphertext else None
        data["recovery_ciphertext"] = (
            self.recovery_ciphertext.to_dict() if self.recovery_ciphertext else None
        )
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Envelope":
        ciphertext = data.get("ciphertext")
        recovery = data.get("recovery_ciphertext")
        return cls(
            id=data["id"],
            kind=data["kind"],
            recipient=data["recipient"],
            content_hash=data["content_hash"],
            received_at=int(data["received_at"]),
            ciphertext=EncryptedPayload.from_dict(ciphertext) if ciphertext else None,
            recovery_ciphertext=EncryptedPayload.from_dict(recovery) if recovery else None,
            plaintext=data.get("plaintext"),
            frozen=bool(data.get("frozen", False)),
            decay_days=data.get("decay_days"),
            ipfs_ref=data.get("ipfs_ref"),
            channel=data.get("channel", "external"),
            sender_agent=data.get("sender_agent"),
            notice=data.get("notice"),
        )


@dataclass
class InboxItem:
    envelope:  Envelope
    decay_pct: int


@dataclass
class AuditEntry:
    id:               str
    sender:           str
    recipient:        str
    subject:          str
    content:          str
    timestamp:        int
    content_hash:     str
    redacted:         bool
    redaction_reason: Optional[str] = None


@dataclass
class TransitionRecord:
    identity:  str
    old_state: str
    new_state: str
    timestamp: int


@dataclass
class AccountTierRecord:
    identity:      str
    tier:          str
    expires_at:    Optional[int]
    retention:     str              # bounded | infinite
    created_at:    int
    updated_at:    int
    linked_wallet: Optional[str] = None


@dataclass
class TierCapabilities:
    tier:           str
    decay_days:     Optional[int]
    can_send:       bool
    can_link_wallet: bool


@dataclass
class PrivacyRecord:
    identity:   str
    state:      str
    updated_at: int


@dataclass
class PaymentBurnRecord:
    tx_hash:     str
    identity:    str
    tier:        str
    recorded_at: int


@dataclass
class PaymentVerification:
    tx_hash:       str
    tier:          str
    asset:         str
    payer:         Optional[str]
    amount:        int              # smallest unit of the asset
    confirmations: int


@dataclass
class CalendarEvent:
    id:           str
    type:         str               # SYNC | TASK | HEARTBEAT
    title:        str
    start_time:   int
    end_time:     int
    organizer:    str
    participants: list[str] = field(default_factory=list)
    description:  str = ""
    status:       str = "confirmed"


@dataclass
class InboundMessage:
    sender:      str
    recipient:   str
    subject:     str
    body:        str
    headers:     dict[str, str] = field(default_factory=dict)
    provider_id: Optional[str] = None
    channel:     str = "external"


@dataclass
class DeliveryReceipt:
    message_id: str
    recipient:  str
    stream:     str
    kind:       str
    audited:    bool
    forwarded:  bool


@dataclass
class SweepReport:
    processed: int
    skipped:   int
    failed:    int
    ran:       bool = True


@dataclass
class AgentStatus:
    identity:          str
    tier:              Optional[str]
    dormant:           bool
    message_count:     int
    last_message_at:   Optional[int]
    upcoming_events:   int
    last_heartbeat_at: Optional[int]
    active:            bool


@dataclass
class HealthStatus:
    kv_connected: bool
    key_count:    int
    uptime_seconds: float

import time

import pytest
import redis
import redis.asyncio.client

from Mail_Router.mr_shared.crypto_engine import canonical_plaintext, content_hash
from Mail_Router.mr_shared.types import Classification, Envelope
from Mail_Router.mr_db.audit_log import AuditLog
from Mail_Router.mr_db.blind_inbox import BlindInbox
from Mail_Router.mr_db.calendar import CalendarStore
from Mail_Router.mr_db.identity_registry import IdentityRegistry
from Mail_Router.mr_db.key_registry import KeyRegistry
from Mail_Router.mr_db.payment_ledger import PaymentLedger
from Mail_Router.mr_db.privacy import PrivacyStore
from Mail_Router.mr_db.status import StatusReporter
from Mail_Router.mr_db.tier_ledger import TierLedger


@pytest.fixture
def inbox(kv):
    return BlindInbox(kv)


@pytest.fixture
def small_inbox(kv):
    return BlindInbox(kv, max_messages=3)


@pytest.fixture
def audit(kv):
    return AuditLog(kv)


@pytest.fixture
def tiers(kv):
    return TierLedger(kv)


@pytest.fixture
def privacy(kv):
    return PrivacyStore(kv)


@pytest.fixture
def payments(kv):
    return PaymentLedger(kv)


@pytest.fixture
def keys(kv):
    return KeyRegistry(kv)


@pytest.fixture
def calendar(kv):
    return CalendarStore(kv)


@pytest.fixture
def identities(kv, tiers, audit, privacy):
    return IdentityRegistry(kv, tiers, audit, privacy)


@pytest.fixture
def status(inbox, tiers, calendar):
    return StatusReporter(inbox, tiers, calendar)


@pytest.fixture
def make_envelope():
    """Factory for cleartext envelopes; ``received_at`` defaults to now."""
    def _make(subject="hello", body="hi there", decay_days=8, received_at=None, recipient="alice"):
        plaintext = {"from": "friend@example.org", "to": f"{recipient}@nftmail.box", "subject": subject, "body": body}
        return Envelope(
            id=BlindInbox.new_message_id(),
            kind="cleartext",
            recipient=recipient,
            content_hash=content_hash(canonical_plaintext(plaintext["from"], plaintext["to"], subject, body)),
            received_at=received_at if received_at is not None else int(time.time() * 1000),
            plaintext=plaintext,
            decay_days=decay_days,
        )
    return _make


@pytest.fixture
def sovereign():
    return Classification(stream="sovereign", local_part="alice", identity_name="alice")


@pytest.fixture
def agent():
    return Classification(stream="agent", local_part="ab_", identity_name="ab_", agent_marker=True)


@pytest.fixture
def lose_next_transaction(monkeypatch):
    """Make the next pipeline ``execute`` fail as if the connection dropped."""
    real_execute = redis.asyncio.client.Pipeline.execute
    pending = []

    async def execute(self, *args, **kwargs):
        if pending:
            pending.pop()
            raise redis.exceptions.ConnectionError("connection lost")
        return await real_execute(self, *args, **kwargs)

    monkeypatch.setattr(redis.asyncio.client.Pipeline, "execute", execute)
    return lambda: pending.append(True)

import time
from typing import Optional

from Mail_Router.mr_shared import config
from Mail_Router.mr_shared.types import AgentStatus, InboxItem, CalendarEvent
from Mail_Router.mr_db.blind_inbox import BlindInbox
from Mail_Router.mr_db.calendar import CalendarStore
from Mail_Router.mr_db.tier_ledger import TierLedger, is_dormant


class StatusReporter:
    def __init__(self, inbox: BlindInbox, tiers: TierLedger, calendar: CalendarStore):
        self.inbox = inbox
        self.tiers = tiers
        self.calendar = calendar

    @staticmethod
    def _last_heartbeat(items: list[InboxItem], events: list[CalendarEvent], now_ms: int) -> Optional[int]:
        seen = [
            item.envelope.received_at
            for item in items
            if item.envelope.plaintext
            and "heartbeat" in str(item.envelope.plaintext.get("subject", "")).lower()
        ]
        seen += [e.start_time for e in events if e.type == "HEARTBEAT" and e.start_time <= now_ms]
        return max(seen) if seen else None

    async def get_status(self, identity: str) -> AgentStatus:
        now_ms = int(time.time() * 1000)
        record = await self.tiers.get(identity)
        items = await self.inbox.get_all(identity)
        events = await self.calendar.events_for(identity)

        last_heartbeat = self._last_heartbeat(items, events, now_ms)
        active = (
            last_heartbeat is not None
            and now_ms - last_heartbeat < config.HEARTBEAT_WINDOW_SECONDS * 1000
        )

        return AgentStatus(
            identity=identity,
            tier=record.tier if record else None,
            dormant=is_dormant(record, now_ms) if record else False,
            message_count=len(items),
            last_message_at=items[0].envelope.received_at if items else None,
            upcoming_events=sum(1 for e in events if e.end_time >= now_ms),
            last_heartbeat_at=last_heartbeat,
            active=active,
        )

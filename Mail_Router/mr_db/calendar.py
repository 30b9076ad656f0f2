import asyncio
import json
import time
import uuid
from dataclasses import asdict
from typing import Optional

import redis
import redis.asyncio

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.types import CalendarEvent


class CalendarStore:
    """Agent calendar: one event record, indexed under every participant."""

    def __init__(self, client: redis.asyncio.Redis):
        self.db: redis.asyncio.Redis = client

    def _event_key(self, event_id: str) -> str:
        return f"{config.CALENDAR_EVENT_PREFIX}:{event_id}"

    def _index_key(self, identity: str) -> str:
        return f"{config.CALENDAR_INDEX_PREFIX}:{identity}"

    async def create_event(
        self,
        organizer: str,
        event_type: str,
        title: str,
        start_time: int,
        end_time: int,
        participants: list[str],
        description: str = "",
    ) -> CalendarEvent:
        if event_type not in config.CALENDAR_EVENT_TYPES:
            raise errors.InvalidEventError(f"unknown type {event_type}")
        if end_time < start_time:
            raise errors.InvalidEventError("end_time precedes start_time")
        if not title.strip():
            raise errors.InvalidEventError("title is empty")

        members = [organizer] + [p for p in dict.fromkeys(participants) if p != organizer]
        event = CalendarEvent(
            id=uuid.uuid4().hex,
            type=event_type,
            title=title,
            start_time=start_time,
            end_time=end_time,
            organizer=organizer,
            participants=members,
            description=description,
        )

        try:
            pipe = self.db.pipeline(transaction=True)
            pipe.set(self._event_key(event.id), json.dumps(asdict(event)))
            for member in members:
                pipe.rpush(self._index_key(member), event.id)
            await pipe.execute()
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("calendar_create_event")
        return event

    async def get_event(self, event_id: str) -> Optional[CalendarEvent]:
        try:
            raw = await self.db.get(self._event_key(event_id))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("calendar_get_event")
        return CalendarEvent(**json.loads(raw)) if raw is not None else None

    async def events_for(self, identity: str, upcoming_only: bool = False) -> list[CalendarEvent]:
        try:
            ids = [i.decode() for i in await self.db.lrange(self._index_key(identity), 0, -1)]
            raws = await asyncio.gather(*(self.db.get(self._event_key(i)) for i in ids))
        except redis.exceptions.ConnectionError:
            raise errors.StoreUnavailableError("calendar_events_for")

        events = [CalendarEvent(**json.loads(raw)) for raw in raws if raw is not None]
        if upcoming_only:
            now_ms = int(time.time() * 1000)
            events = [e for e in events if e.end_time >= now_ms]
        events.sort(key=lambda e: e.start_time)
        return events

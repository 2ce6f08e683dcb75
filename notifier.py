"""
Event notifier: a bounded, expiring log of order lifecycle events.

The order document is the source of truth; events only tell connected
clients that something changed so they re-fetch sooner. Appending never
fails the caller, and draining hands each event to one consumer.
"""

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from storage import EventRow, utcnow

logger = structlog.get_logger()


class EventType(str, Enum):
    NEW_ORDER = "NEW_ORDER"
    ORDER_STATUS_UPDATED = "ORDER_STATUS_UPDATED"
    ORDER_DELETED = "ORDER_DELETED"
    ORDERS_CLEARED = "ORDERS_CLEARED"
    KITCHEN_STATUS_CHANGED = "KITCHEN_STATUS_CHANGED"


class Event(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    data: dict = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> dict:
        return self.model_dump(mode="json")


class EventNotifier:
    def __init__(self, sessions: sessionmaker, key: str, max_events: int = 100, ttl_seconds: int = 300):
        self._sessions = sessions
        self.key = key
        self.max_events = max_events
        self.ttl_seconds = ttl_seconds

    def _cutoff(self) -> datetime:
        return utcnow() - timedelta(seconds=self.ttl_seconds)

    async def append(self, event_type: EventType, data: dict) -> Optional[Event]:
        """Record an event; failures are logged and swallowed"""
        event = Event(type=EventType(event_type).value, data=data)
        try:
            async with self._sessions() as session:
                async with session.begin():
                    session.add(EventRow(
                        store_key=self.key,
                        event_id=event.id,
                        type=event.type,
                        data=event.data,
                        timestamp=event.timestamp,
                        created_at=utcnow(),
                    ))
                    await session.flush()
                    await self._trim(session)
        except SQLAlchemyError as e:
            logger.error("event_append_failed", event_type=event.type, error=str(e))
            return None

        logger.info("event_appended", event_type=event.type, event_id=event.id)
        return event

    async def _trim(self, session):
        await session.execute(
            delete(EventRow)
            .where(EventRow.store_key == self.key, EventRow.created_at < self._cutoff())
            .execution_options(synchronize_session=False)
        )
        # Oldest sequence number that falls outside the newest max_events
        overflow = await session.execute(
            select(EventRow.seq)
            .where(EventRow.store_key == self.key)
            .order_by(EventRow.seq.desc())
            .offset(self.max_events)
            .limit(1)
        )
        threshold = overflow.scalar()
        if threshold is not None:
            await session.execute(
                delete(EventRow)
                .where(EventRow.store_key == self.key, EventRow.seq <= threshold)
                .execution_options(synchronize_session=False)
            )

    async def drain(self, max_count: int = 10) -> List[Event]:
        """
        Take the most recent unexpired events and clear the log.

        Events are returned oldest first. A second drain right after returns
        nothing; events appended while draining survive for the next one.
        """
        try:
            async with self._sessions() as session:
                async with session.begin():
                    result = await session.execute(
                        select(EventRow)
                        .where(EventRow.store_key == self.key, EventRow.created_at >= self._cutoff())
                        .order_by(EventRow.seq.desc())
                        .limit(max_count)
                        .with_for_update(skip_locked=True)
                    )
                    rows = result.scalars().all()
                    if rows:
                        await session.execute(
                            delete(EventRow)
                            .where(EventRow.store_key == self.key, EventRow.seq <= rows[0].seq)
                            .execution_options(synchronize_session=False)
                        )
        except SQLAlchemyError as e:
            logger.error("event_drain_failed", error=str(e))
            return []

        return [
            Event(id=row.event_id, type=row.type, data=row.data, timestamp=row.timestamp)
            for row in reversed(rows)
        ]


def sse_frame(event: Event) -> str:
    return f"data: {json.dumps(event.to_json())}\n\n"


async def event_stream(
    notifier: EventNotifier,
    *,
    is_disconnected: Callable[[], Awaitable[bool]],
    poll_seconds: float = 3.0,
    heartbeat_seconds: float = 10.0,
    max_seconds: float = 25.0,
    batch_size: int = 10,
) -> AsyncIterator[str]:
    """
    Server-Sent Events body: drain and forward events until the client goes
    away or ``max_seconds`` elapse. Clients are expected to reconnect.
    """
    loop = asyncio.get_running_loop()
    started = last_heartbeat = loop.time()
    sent = 0

    yield sse_frame(Event(type="connected", data={"message": "Real-time updates connected"}))
    try:
        while True:
            if await is_disconnected():
                logger.info("sse_client_disconnected", sent=sent)
                break

            for event in await notifier.drain(batch_size):
                sent += 1
                yield sse_frame(event)

            now = loop.time()
            elapsed = now - started
            if elapsed >= max_seconds:
                logger.info("sse_stream_closed", reason="max_duration", sent=sent)
                break
            if now - last_heartbeat >= heartbeat_seconds:
                last_heartbeat = now
                yield sse_frame(Event(type="heartbeat"))

            await asyncio.sleep(min(poll_seconds, max_seconds - elapsed))
    except asyncio.CancelledError:
        logger.info("sse_stream_cancelled", sent=sent)
        raise

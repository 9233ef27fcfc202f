from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import logging
from typing import Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_chat.models import RealtimeOutboxEvent

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    async def publish(self, event: RealtimeOutboxEvent) -> int: ...


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def retry_delay(attempts: int) -> float:
    return min(30.0, 0.5 * (2 ** (attempts - 1)))


class RealtimeDispatcher:
    """Drains the outbox to the publisher in outbox order.

    Within one conversation an event is never published before an earlier one:
    a failing (or backing-off) event holds back the rest of its conversation
    until it succeeds or is discarded after ``max_attempts``.
    """

    def __init__(
        self,
        *,
        publisher: Publisher,
        session_factory: Callable[[], Session],
        poll_interval_sec: float,
        batch_size: int,
        max_attempts: int = 5,
    ) -> None:
        self._publisher = publisher
        self._session_factory = session_factory
        self._poll_interval_sec = poll_interval_sec
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Realtime dispatcher started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Realtime dispatcher stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                processed = await self.process_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Outbox rows stay pending, so the next pass picks them up again.
                logger.exception("Realtime dispatcher pass failed")
                processed = 0
            if processed == 0:
                await asyncio.sleep(self._poll_interval_sec)

    async def process_once(self) -> int:
        now = datetime.now(UTC)
        with self._session_factory() as db:
            blocked: set[str] = set()
            processed = 0
            last_seen_id = 0
            # Page past conversations held back by a failing head so they never starve the others.
            while processed < self._batch_size:
                query = (
                    select(RealtimeOutboxEvent)
                    .where(RealtimeOutboxEvent.published_at.is_(None))
                    .where(RealtimeOutboxEvent.discarded_at.is_(None))
                    .where(RealtimeOutboxEvent.id > last_seen_id)
                    .order_by(RealtimeOutboxEvent.id.asc())
                    .limit(self._batch_size)
                )
                if blocked:
                    query = query.where(RealtimeOutboxEvent.conversation_id.not_in(blocked))
                events = list(db.scalars(query).all())
                if not events:
                    break

                for event in events:
                    last_seen_id = event.id
                    if event.conversation_id in blocked:
                        continue
                    if _as_utc(event.next_attempt_at) > now:
                        blocked.add(event.conversation_id)
                        continue

                    await self._deliver(event, blocked)
                    processed += 1
                    if processed >= self._batch_size:
                        break

            if processed:
                db.commit()
            return processed

    async def _deliver(self, event: RealtimeOutboxEvent, blocked: set[str]) -> None:
        try:
            await self._publisher.publish(event)
            event.published_at = datetime.now(UTC)
            event.last_error = None
        except Exception as exc:
            event.attempts += 1
            event.last_error = str(exc)[:1000]
            if event.attempts >= self._max_attempts:
                event.discarded_at = datetime.now(UTC)
                logger.warning(
                    "Realtime event discarded event_id=%s conversation_id=%s attempts=%s error=%s",
                    event.event_id,
                    event.conversation_id,
                    event.attempts,
                    exc,
                )
            else:
                event.next_attempt_at = datetime.now(UTC) + timedelta(seconds=retry_delay(event.attempts))
                blocked.add(event.conversation_id)
                logger.warning(
                    "Realtime publish failed event_id=%s attempts=%s error=%s",
                    event.event_id,
                    event.attempts,
                    exc,
                )

from __future__ import annotations

import logging

from marketplace_chat.models import RealtimeOutboxEvent
from marketplace_chat.realtime.connection_manager import ConnectionManager
from marketplace_chat.realtime.protocol import OutboxEnvelope, event_frame

logger = logging.getLogger(__name__)


class RealtimePublisher:
    """Turns committed outbox rows into event frames for the conversation's subscribers."""

    def __init__(self, connection_manager: ConnectionManager) -> None:
        self._connection_manager = connection_manager

    async def publish(self, event: RealtimeOutboxEvent) -> int:
        envelope = OutboxEnvelope.model_validate_json(event.payload_json)
        frame = event_frame(
            event_type=event.event_type,
            event_id=event.event_id,
            conversation_id=event.conversation_id,
            seq=envelope.seq,
            occurred_at=envelope.occurred_at,
            payload=envelope.payload,
        )
        delivered = await self._connection_manager.fanout_conversation(event.conversation_id, frame)
        logger.debug(
            "Realtime event published event_id=%s type=%s conversation_id=%s seq=%s delivered=%s",
            event.event_id,
            event.event_type,
            event.conversation_id,
            envelope.seq,
            delivered,
        )
        return delivered

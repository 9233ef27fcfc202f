from __future__ import annotations

from datetime import UTC, datetime
import json

from sqlalchemy.orm import Session

from marketplace_chat.models import Message, RealtimeOutboxEvent

MESSAGE_CREATED = "message.created"
MESSAGES_READ = "messages.read"


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC).isoformat()
    return value.isoformat()


def _enqueue_event(
    db: Session,
    *,
    event_type: str,
    conversation_id: str,
    seq: int,
    occurred_at: datetime,
    payload: dict[str, object],
) -> None:
    event_payload = {
        "seq": seq,
        "occurred_at": serialize_datetime(occurred_at),
        "payload": payload,
    }
    db.add(
        RealtimeOutboxEvent(
            event_type=event_type,
            conversation_id=conversation_id,
            payload_json=json.dumps(event_payload, separators=(",", ":"), sort_keys=True),
            next_attempt_at=datetime.now(UTC),
        )
    )


def serialize_message(message: Message) -> dict[str, object]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "seq": message.seq,
        "content": message.content,
        "created_at": serialize_datetime(message.created_at),
        "is_read": message.is_read,
    }


def enqueue_message_created(db: Session, *, message: Message) -> None:
    _enqueue_event(
        db,
        event_type=MESSAGE_CREATED,
        conversation_id=message.conversation_id,
        seq=message.seq,
        occurred_at=message.created_at,
        payload=serialize_message(message),
    )


def enqueue_messages_read(db: Session, *, conversation_id: str, reader_id: str, up_to_seq: int, count: int) -> None:
    _enqueue_event(
        db,
        event_type=MESSAGES_READ,
        conversation_id=conversation_id,
        seq=up_to_seq,
        occurred_at=datetime.now(UTC),
        payload={"reader_id": reader_id, "up_to_seq": up_to_seq, "count": count},
    )

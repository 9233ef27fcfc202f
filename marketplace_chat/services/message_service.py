from __future__ import annotations

from datetime import UTC, datetime
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace_chat.core.errors import InvalidContent
from marketplace_chat.core.settings import get_settings
from marketplace_chat.models import Conversation, ConversationCounter, Message
from marketplace_chat.services import conversation_service, realtime_service

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def validate_content(content: str | None) -> str:
    max_length = get_settings().message_max_length
    text = (content or "").strip()
    if not text:
        raise InvalidContent(InvalidContent.EMPTY, max_length=max_length)
    if len(text) > max_length:
        raise InvalidContent(InvalidContent.TOO_LONG, max_length=max_length)
    return text


def _allocate_seq(db: Session, conversation_id: str) -> int:
    # The counter UPDATE holds the row (SQLite: database) write lock until commit,
    # which serializes appends within one conversation.
    result = db.execute(
        update(ConversationCounter)
        .where(ConversationCounter.conversation_id == conversation_id)
        .values(next_seq=ConversationCounter.next_seq + 1)
    )
    if result.rowcount == 0:
        db.add(ConversationCounter(conversation_id=conversation_id, next_seq=2))
        db.flush()
        logger.debug("Conversation counter initialized conversation_id=%s", conversation_id)
        return 1

    next_seq = db.scalar(
        select(ConversationCounter.next_seq).where(ConversationCounter.conversation_id == conversation_id)
    )
    return int(next_seq) - 1


def list_messages(
    db: Session,
    *,
    conversation_id: str,
    after_seq: int = 0,
    limit: int | None = None,
) -> list[Message]:
    logger.debug(
        "Listing messages conversation_id=%s after_seq=%s limit=%s",
        conversation_id,
        after_seq,
        limit,
    )
    query = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .where(Message.seq > after_seq)
        .order_by(Message.created_at.asc(), Message.seq.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    return list(db.scalars(query).all())


def append_message(
    db: Session,
    *,
    conversation_id: str,
    sender_id: str,
    content: str | None,
) -> Message:
    logger.info("Append message attempt conversation_id=%s sender_id=%s", conversation_id, sender_id)
    conversation_service.require_participant(db, conversation_id=conversation_id, user_id=sender_id)
    try:
        text = validate_content(content)
    except InvalidContent as exc:
        logger.warning(
            "Rejected message content conversation_id=%s sender_id=%s reason=%s",
            conversation_id,
            sender_id,
            exc.reason,
        )
        raise

    seq = _allocate_seq(db, conversation_id)
    logger.debug("Allocated message sequence conversation_id=%s seq=%s", conversation_id, seq)

    # created_at never goes backwards within a conversation, even if the clock does.
    last_message_at = db.scalar(select(Conversation.last_message_at).where(Conversation.id == conversation_id))
    created_at = datetime.now(UTC)
    if last_message_at is not None:
        created_at = max(created_at, _as_utc(last_message_at))

    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        seq=seq,
        content=text,
        created_at=created_at,
        is_read=False,
    )
    db.add(message)
    db.execute(
        update(Conversation).where(Conversation.id == conversation_id).values(last_message_at=created_at)
    )
    db.flush()
    realtime_service.enqueue_message_created(db, message=message)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("IntegrityError on append conversation_id=%s seq=%s", conversation_id, seq)
        raise

    db.refresh(message)
    logger.info("Message persisted message_id=%s conversation_id=%s seq=%s", message.id, conversation_id, seq)
    return message


def mark_read(db: Session, *, conversation_id: str, reader_id: str) -> int:
    """Mark every message the reader received in the conversation as read.

    Returns how many messages changed; a second call returns 0.
    """
    conversation_service.require_participant(db, conversation_id=conversation_id, user_id=reader_id)
    unread = (
        Message.conversation_id == conversation_id,
        Message.sender_id != reader_id,
        Message.is_read.is_(False),
    )
    up_to_seq = db.scalar(select(func.max(Message.seq)).where(*unread))
    if up_to_seq is None:
        logger.debug("Nothing to mark read conversation_id=%s reader_id=%s", conversation_id, reader_id)
        return 0

    result = db.execute(
        update(Message)
        .where(*unread, Message.seq <= up_to_seq)
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount
    if count:
        realtime_service.enqueue_messages_read(
            db,
            conversation_id=conversation_id,
            reader_id=reader_id,
            up_to_seq=up_to_seq,
            count=count,
        )
    db.commit()
    logger.info("Messages marked read conversation_id=%s reader_id=%s count=%s", conversation_id, reader_id, count)
    return count

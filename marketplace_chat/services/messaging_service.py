"""Entry point used by every feature that talks to the messaging core.

Profile cards, publication pages and the provider list all start conversations
through :func:`start_or_resume_conversation`; the inbox and the conversation view
use the remaining functions. Identity is always passed in explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Awaitable, Callable

from sqlalchemy.orm import Session

from marketplace_chat.core.errors import ConversationConflict, TransportUnavailable, Unauthenticated
from marketplace_chat.core.settings import get_settings
from marketplace_chat.models import Message
from marketplace_chat.services import conversation_service, message_service
from marketplace_chat.services.conversation_service import ConversationPayload

logger = logging.getLogger(__name__)

Subscribe = Callable[[str], Awaitable[None]]


@dataclass
class OpenedConversation:
    conversation_id: str
    messages: list[Message] = field(default_factory=list)
    live: bool = False
    marked_read: int = 0


def _require_user(user_id: str | None) -> str:
    if user_id is None or not user_id.strip():
        logger.warning("Anonymous caller rejected")
        raise Unauthenticated()
    return user_id.strip()


def start_or_resume_conversation(
    db: Session,
    *,
    current_user_id: str | None,
    target_user_id: str,
) -> tuple[ConversationPayload, bool]:
    user_id = _require_user(current_user_id)
    logger.info("Start or resume conversation user_id=%s target_user_id=%s", user_id, target_user_id)

    retries = get_settings().conversation_resolve_retries
    attempt = 0
    while True:
        try:
            conversation, created = conversation_service.resolve_conversation(
                db,
                user_a=user_id,
                user_b=target_user_id,
            )
            break
        except ConversationConflict:
            if attempt >= retries:
                logger.warning(
                    "Conversation conflict persisted after %s retries user_id=%s target_user_id=%s",
                    retries,
                    user_id,
                    target_user_id,
                )
                raise
            attempt += 1
            logger.info("Retrying conversation resolution attempt=%s user_id=%s", attempt, user_id)

    payload = conversation_service.build_conversation_payloads(
        db,
        requester_id=user_id,
        conversation_rows=[conversation],
    )[0]
    return payload, created


def list_conversations(db: Session, *, current_user_id: str | None) -> list[ConversationPayload]:
    user_id = _require_user(current_user_id)
    return conversation_service.list_user_conversations(db, user_id)


def send_message(db: Session, *, conversation_id: str, sender_id: str | None, content: str | None) -> Message:
    user_id = _require_user(sender_id)
    return message_service.append_message(
        db,
        conversation_id=conversation_id,
        sender_id=user_id,
        content=content,
    )


def list_messages(
    db: Session,
    *,
    conversation_id: str,
    viewer_id: str | None,
    after_seq: int = 0,
    limit: int | None = None,
) -> list[Message]:
    user_id = _require_user(viewer_id)
    conversation_service.require_participant(db, conversation_id=conversation_id, user_id=user_id)
    return message_service.list_messages(db, conversation_id=conversation_id, after_seq=after_seq, limit=limit)


def mark_conversation_read(db: Session, *, conversation_id: str, reader_id: str | None) -> int:
    user_id = _require_user(reader_id)
    return message_service.mark_read(db, conversation_id=conversation_id, reader_id=user_id)


async def open_conversation(
    db: Session,
    *,
    conversation_id: str,
    viewer_id: str | None,
    after_seq: int = 0,
    subscribe: Subscribe | None = None,
) -> OpenedConversation:
    """Load the history, start live delivery and mark received messages read.

    The subscription is registered before the history is read so a message
    appended in between is delivered at least once. A transport failure only
    costs live updates.
    """
    user_id = _require_user(viewer_id)
    conversation_service.require_participant(db, conversation_id=conversation_id, user_id=user_id)

    opened = OpenedConversation(conversation_id=conversation_id)
    if subscribe is not None:
        try:
            await subscribe(conversation_id)
            opened.live = True
        except TransportUnavailable as exc:
            logger.warning(
                "Live updates unavailable conversation_id=%s viewer_id=%s error=%s",
                conversation_id,
                user_id,
                exc.message,
            )

    opened.messages = message_service.list_messages(db, conversation_id=conversation_id, after_seq=after_seq)
    opened.marked_read = message_service.mark_read(db, conversation_id=conversation_id, reader_id=user_id)
    logger.info(
        "Conversation opened conversation_id=%s viewer_id=%s messages=%s live=%s marked_read=%s",
        conversation_id,
        user_id,
        len(opened.messages),
        opened.live,
        opened.marked_read,
    )
    return opened

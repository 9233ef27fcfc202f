from __future__ import annotations

from datetime import datetime
import logging
from typing import TypedDict

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace_chat.core.errors import ConversationConflict, ConversationNotFound, InvalidParticipants, NotAParticipant
from marketplace_chat.models import Conversation, ConversationCounter, Message
from marketplace_chat.services import profile_service

logger = logging.getLogger(__name__)


class ConversationPayload(TypedDict):
    id: str
    participant_ids: list[str]
    other_user: dict[str, object]
    created_at: datetime
    last_message_at: datetime | None
    unread_count: int


def normalize_pair(user_a: str | None, user_b: str | None) -> tuple[str, str]:
    first = (user_a or "").strip()
    second = (user_b or "").strip()
    if not first or not second:
        raise InvalidParticipants("missing_user")
    if first == second:
        raise InvalidParticipants("same_user")
    low, high = sorted((first, second))
    return low, high


def _find_by_pair(db: Session, pair: tuple[str, str]) -> Conversation | None:
    return db.scalar(
        select(Conversation).where(
            Conversation.participant_a == pair[0],
            Conversation.participant_b == pair[1],
        )
    )


def resolve_conversation(db: Session, *, user_a: str, user_b: str) -> tuple[Conversation, bool]:
    """Return the single conversation for the unordered pair, creating it if needed.

    The unique constraint on the sorted pair decides concurrent creations: the
    loser's insert fails and it reads the winner's row instead. The boolean is
    True only for the caller whose insert won.
    """
    pair = normalize_pair(user_a, user_b)
    logger.debug("Resolving conversation pair=%s,%s", *pair)

    missing = profile_service.missing_profile_ids(db, pair)
    if missing:
        logger.warning("Conversation participants not resolvable missing=%s", missing)
        raise InvalidParticipants("unknown_user")

    existing = _find_by_pair(db, pair)
    if existing is not None:
        logger.debug("Returning existing conversation conversation_id=%s", existing.id)
        return existing, False

    conversation = Conversation(participant_a=pair[0], participant_b=pair[1])
    conversation.counter = ConversationCounter(next_seq=1)
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Concurrent conversation insert detected pair=%s,%s; re-reading", *pair)
        winner = _find_by_pair(db, pair)
        if winner is None:
            raise ConversationConflict() from None
        logger.debug("Recovered concurrently created conversation conversation_id=%s", winner.id)
        return winner, False

    db.refresh(conversation)
    logger.info("Conversation created conversation_id=%s users=%s,%s", conversation.id, *pair)
    return conversation, True


def get_conversation(db: Session, conversation_id: str) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        logger.warning("Conversation not found conversation_id=%s", conversation_id)
        raise ConversationNotFound()
    return conversation


def require_participant(db: Session, *, conversation_id: str, user_id: str) -> Conversation:
    logger.debug("Checking participation user_id=%s conversation_id=%s", user_id, conversation_id)
    conversation = get_conversation(db, conversation_id)
    if not conversation.has_participant(user_id):
        logger.warning("Participation check failed user_id=%s conversation_id=%s", user_id, conversation_id)
        raise NotAParticipant()
    return conversation


def _unread_counts(db: Session, *, reader_id: str, conversation_ids: list[str]) -> dict[str, int]:
    if not conversation_ids:
        return {}
    rows = db.execute(
        select(Message.conversation_id, func.count())
        .where(
            Message.conversation_id.in_(conversation_ids),
            Message.sender_id != reader_id,
            Message.is_read.is_(False),
        )
        .group_by(Message.conversation_id)
    ).all()
    return {conversation_id: count for conversation_id, count in rows}


def build_conversation_payloads(
    db: Session,
    *,
    requester_id: str,
    conversation_rows: list[Conversation],
) -> list[ConversationPayload]:
    conversation_ids = [conversation.id for conversation in conversation_rows]
    other_ids = [conversation.other_participant(requester_id) for conversation in conversation_rows]
    profiles = profile_service.fetch_profiles_by_ids(db, other_ids)
    unread = _unread_counts(db, reader_id=requester_id, conversation_ids=conversation_ids)

    payload: list[ConversationPayload] = []
    for conversation, other_id in zip(conversation_rows, other_ids):
        payload.append(
            {
                "id": conversation.id,
                "participant_ids": list(conversation.participant_ids),
                "other_user": profile_service.serialize_profile_public(other_id, profiles.get(other_id)),
                "created_at": conversation.created_at,
                "last_message_at": conversation.last_message_at,
                "unread_count": unread.get(conversation.id, 0),
            }
        )
    return payload


def list_user_conversations(db: Session, user_id: str) -> list[ConversationPayload]:
    logger.debug("Listing conversations for user_id=%s", user_id)
    conversation_rows = db.scalars(
        select(Conversation)
        .where(or_(Conversation.participant_a == user_id, Conversation.participant_b == user_id))
        .order_by(
            Conversation.last_message_at.is_(None),
            Conversation.last_message_at.desc(),
            Conversation.created_at.desc(),
        )
    ).all()
    payload = build_conversation_payloads(db, requester_id=user_id, conversation_rows=list(conversation_rows))
    logger.debug("Found %s conversations for user_id=%s", len(payload), user_id)
    return payload

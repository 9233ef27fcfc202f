from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_chat.db.session import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # participant_a/participant_b hold the sorted pair, so one row per unordered pair.
        UniqueConstraint("participant_a", "participant_b", name="uq_conversation_participants"),
        CheckConstraint("participant_a <> participant_b", name="ck_conversation_distinct_participants"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    participant_a: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    participant_b: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")
    counter = relationship("ConversationCounter", back_populates="conversation", uselist=False, cascade="all, delete-orphan")

    @property
    def participant_ids(self) -> tuple[str, str]:
        return self.participant_a, self.participant_b

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_a, self.participant_b)

    def other_participant(self, user_id: str) -> str:
        return self.participant_b if user_id == self.participant_a else self.participant_a


class ConversationCounter(Base):
    __tablename__ = "conversation_counters"

    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True
    )
    next_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    conversation = relationship("Conversation", back_populates="counter")

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict


def _assume_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


class SendMessageRequest(BaseModel):
    # Length rules live in the message log so callers get the precise reason.
    content: str


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_id: str
    seq: int
    content: str
    created_at: UtcDatetime
    is_read: bool


class MessageListResponse(BaseModel):
    messages: list[MessageRead]
    has_more: bool = False
    # Pass back as after_seq to fetch the next page.
    next_after_seq: int = 0


class MarkReadResponse(BaseModel):
    conversation_id: str
    marked_read: int

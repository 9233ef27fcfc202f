from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from marketplace_chat.schemas.messages import UtcDatetime
from marketplace_chat.schemas.profiles import ProfilePublic


class DirectConversationCreateRequest(BaseModel):
    # Blank ids are rejected by the directory with invalid_participants.
    other_user_id: str = Field(max_length=64)


class ConversationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    participant_ids: list[str]
    other_user: ProfilePublic
    created_at: UtcDatetime
    last_message_at: UtcDatetime | None
    unread_count: int = 0

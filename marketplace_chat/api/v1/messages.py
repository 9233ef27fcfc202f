from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace_chat.api.deps import get_current_user_id
from marketplace_chat.core.errors import success_response
from marketplace_chat.db.session import get_db
from marketplace_chat.schemas.messages import MessageListResponse, MessageRead, SendMessageRequest
from marketplace_chat.services import messaging_service

router = APIRouter(prefix="/conversations/{conversation_id}/messages", tags=["messages"])


@router.get("")
def list_messages(
    conversation_id: str,
    after_seq: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user_id: str | None = Depends(get_current_user_id),
):
    messages = messaging_service.list_messages(
        db,
        conversation_id=conversation_id,
        viewer_id=current_user_id,
        after_seq=after_seq,
        limit=limit + 1,
    )
    has_more = len(messages) > limit
    messages = messages[:limit]
    body = MessageListResponse(
        messages=[MessageRead.model_validate(message) for message in messages],
        has_more=has_more,
        next_after_seq=messages[-1].seq if messages else after_seq,
    )
    return success_response(body.model_dump(mode="json"))


@router.post("")
def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    db: Session = Depends(get_db),
    current_user_id: str | None = Depends(get_current_user_id),
):
    message = messaging_service.send_message(
        db,
        conversation_id=conversation_id,
        sender_id=current_user_id,
        content=payload.content,
    )
    response = MessageRead.model_validate(message).model_dump(mode="json")
    return success_response(response, status_code=status.HTTP_201_CREATED)

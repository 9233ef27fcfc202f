from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from marketplace_chat.api.deps import get_current_user_id
from marketplace_chat.core.errors import success_response
from marketplace_chat.db.session import get_db
from marketplace_chat.schemas.conversations import ConversationSummary, DirectConversationCreateRequest
from marketplace_chat.schemas.messages import MarkReadResponse
from marketplace_chat.services import messaging_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("")
def list_conversations(
    db: Session = Depends(get_db),
    current_user_id: str | None = Depends(get_current_user_id),
):
    logger.info("List conversations endpoint hit user_id=%s", current_user_id)
    conversations = messaging_service.list_conversations(db, current_user_id=current_user_id)
    payload = [ConversationSummary.model_validate(item).model_dump(mode="json") for item in conversations]
    return success_response(payload)


@router.post("/direct")
def start_or_resume_direct(
    payload: DirectConversationCreateRequest,
    db: Session = Depends(get_db),
    current_user_id: str | None = Depends(get_current_user_id),
):
    logger.info(
        "Start/resume direct conversation endpoint hit user_id=%s other_user_id=%s",
        current_user_id,
        payload.other_user_id,
    )
    conversation, created = messaging_service.start_or_resume_conversation(
        db,
        current_user_id=current_user_id,
        target_user_id=payload.other_user_id,
    )
    status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return success_response(
        ConversationSummary.model_validate(conversation).model_dump(mode="json"),
        status_code=status_code,
    )


@router.post("/{conversation_id}/read")
def mark_conversation_read(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user_id: str | None = Depends(get_current_user_id),
):
    marked = messaging_service.mark_conversation_read(db, conversation_id=conversation_id, reader_id=current_user_id)
    body = MarkReadResponse(conversation_id=conversation_id, marked_read=marked)
    return success_response(body.model_dump(mode="json"))

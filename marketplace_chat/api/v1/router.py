from fastapi import APIRouter

from marketplace_chat.api.v1 import conversations, messages, ws

api_router = APIRouter()
api_router.include_router(conversations.router)
api_router.include_router(messages.router)
api_router.include_router(ws.router)

from __future__ import annotations

import asyncio
from collections import deque
import logging
from time import monotonic

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

import marketplace_chat.db.session as db_session
from marketplace_chat.core.errors import APIError, ConversationNotFound, NotAParticipant, TransportUnavailable
from marketplace_chat.core.security import user_id_from_token
from marketplace_chat.core.settings import get_settings
from marketplace_chat.models import Profile
from marketplace_chat.realtime.connection_manager import ConnectionContext, ConnectionManager, SubscriptionLimitExceeded
from marketplace_chat.realtime.protocol import (
    CloseCommand,
    OpenCommand,
    PingCommand,
    ProtocolError,
    ack_frame,
    error_frame,
    parse_command,
    pong_frame,
    snapshot_frame,
    welcome_frame,
)
from marketplace_chat.schemas.messages import MessageRead
from marketplace_chat.services import messaging_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["ws"])


def _extract_access_token(websocket: WebSocket) -> str | None:
    auth_header = websocket.headers.get("authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1].strip()
    return websocket.query_params.get("access_token")


def _command_allowed(events: deque[float], *, now: float, window_seconds: int, max_commands: int) -> bool:
    cutoff = now - window_seconds
    while events and events[0] <= cutoff:
        events.popleft()
    if len(events) >= max_commands:
        return False
    events.append(now)
    return True


async def _open_conversation(
    connection_manager: ConnectionManager,
    context: ConnectionContext,
    command: OpenCommand,
) -> None:
    async def subscribe(conversation_id: str) -> None:
        await connection_manager.subscribe(context.connection_id, conversation_id)

    try:
        with db_session.open_session() as db:
            opened = await messaging_service.open_conversation(
                db,
                conversation_id=command.conversation_id,
                viewer_id=context.user_id,
                after_seq=command.after_seq,
                subscribe=subscribe,
            )
            messages = [MessageRead.model_validate(message).model_dump(mode="json") for message in opened.messages]
    except NotAParticipant:
        await connection_manager.send(
            context.connection_id,
            error_frame(code="FORBIDDEN_CONVERSATION", message="Not a participant of this conversation"),
        )
        return
    except ConversationNotFound:
        await connection_manager.send(
            context.connection_id,
            error_frame(code="CONVERSATION_NOT_FOUND", message="Conversation not found"),
        )
        return
    except SubscriptionLimitExceeded:
        await connection_manager.send(
            context.connection_id,
            error_frame(code="INVALID_COMMAND", message="Subscription limit exceeded"),
        )
        return
    except Exception:
        logger.exception(
            "Open conversation failed connection_id=%s conversation_id=%s",
            context.connection_id,
            command.conversation_id,
        )
        await connection_manager.unsubscribe(context.connection_id, command.conversation_id)
        await connection_manager.send(
            context.connection_id,
            error_frame(code="INTERNAL_ERROR", message="Algo salió mal, inténtalo de nuevo"),
        )
        return

    await connection_manager.send(
        context.connection_id,
        snapshot_frame(
            conversation_id=command.conversation_id,
            messages=messages,
            live=opened.live,
            marked_read=opened.marked_read,
        ),
    )


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    settings = get_settings()
    token = _extract_access_token(websocket)
    if not token:
        await websocket.close(code=1008)
        return

    try:
        user_id = user_id_from_token(token)
    except APIError:
        await websocket.close(code=1008)
        return

    if db_session.SessionLocal is None:
        await websocket.close(code=1011)
        return
    with db_session.open_session() as db:
        profile = db.get(Profile, user_id)
    if profile is None:
        await websocket.close(code=1008)
        return

    connection_manager: ConnectionManager | None = getattr(websocket.app.state, "connection_manager", None)
    if connection_manager is None or connection_manager.closed:
        await websocket.close(code=1011)
        return

    await websocket.accept()
    try:
        context = await connection_manager.register(websocket, user_id=user_id)
    except TransportUnavailable:
        await websocket.close(code=1012)
        return
    await connection_manager.send(
        context.connection_id,
        welcome_frame(connection_id=context.connection_id, user_id=user_id, heartbeat_sec=settings.ws_heartbeat_sec),
    )

    rate_events: deque[float] = deque()
    try:
        while True:
            try:
                raw_text = await asyncio.wait_for(websocket.receive_text(), timeout=settings.ws_idle_timeout_sec)
            except asyncio.TimeoutError:
                break
            except WebSocketDisconnect:
                break

            if not _command_allowed(
                rate_events,
                now=monotonic(),
                window_seconds=settings.ws_rate_limit_window_sec,
                max_commands=settings.ws_rate_limit_max_commands,
            ):
                await connection_manager.send(
                    context.connection_id,
                    error_frame(code="RATE_LIMITED", message="Command rate limit exceeded"),
                )
                continue

            try:
                command = parse_command(raw_text, max_bytes=settings.ws_max_command_bytes)
            except ProtocolError as exc:
                await connection_manager.send(context.connection_id, error_frame(code=exc.code, message=exc.message))
                continue

            if isinstance(command, PingCommand):
                await connection_manager.send(context.connection_id, pong_frame(ts=command.ts))
                continue

            if isinstance(command, OpenCommand):
                await _open_conversation(connection_manager, context, command)
                continue

            if isinstance(command, CloseCommand):
                await connection_manager.unsubscribe(context.connection_id, command.conversation_id)
                await connection_manager.send(
                    context.connection_id,
                    ack_frame(op="close", details={"conversation_id": command.conversation_id}),
                )
                continue
    finally:
        await connection_manager.unregister(context.connection_id, close_socket=True)
        logger.info("WebSocket session closed connection_id=%s user_id=%s", context.connection_id, user_id)

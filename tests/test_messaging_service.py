from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
import threading

import pytest

import marketplace_chat.db.session as db_session
from marketplace_chat.core.errors import (
    ConversationConflict,
    InvalidContent,
    NotAParticipant,
    TransportUnavailable,
    Unauthenticated,
)
from marketplace_chat.services import conversation_service, message_service, messaging_service


@pytest.fixture()
def people(make_profile):
    make_profile("u1", "Ana")
    make_profile("u2", "Bruno")
    make_profile("u3", None)


def test_anonymous_callers_are_rejected(db, people):
    with pytest.raises(Unauthenticated):
        messaging_service.start_or_resume_conversation(db, current_user_id=None, target_user_id="u2")
    with pytest.raises(Unauthenticated):
        messaging_service.start_or_resume_conversation(db, current_user_id="  ", target_user_id="u2")
    with pytest.raises(Unauthenticated):
        messaging_service.list_conversations(db, current_user_id=None)
    with pytest.raises(Unauthenticated):
        messaging_service.send_message(db, conversation_id="any", sender_id=None, content="hola")


def test_start_or_resume_returns_summary_for_requester(db, people):
    created_payload, created = messaging_service.start_or_resume_conversation(
        db,
        current_user_id="u1",
        target_user_id="u2",
    )
    resumed_payload, resumed_created = messaging_service.start_or_resume_conversation(
        db,
        current_user_id="u2",
        target_user_id="u1",
    )

    assert created is True
    assert resumed_created is False
    assert created_payload["id"] == resumed_payload["id"]
    assert created_payload["other_user"] == {"id": "u2", "display_name": "Bruno"}
    assert resumed_payload["other_user"] == {"id": "u1", "display_name": "Ana"}
    assert created_payload["participant_ids"] == ["u1", "u2"]


def test_missing_profile_name_falls_back(db, people):
    payload, _ = messaging_service.start_or_resume_conversation(db, current_user_id="u1", target_user_id="u3")
    assert payload["other_user"]["display_name"] == "Usuario"


def test_conflict_is_retried_once(db, people, monkeypatch):
    real_resolve = conversation_service.resolve_conversation
    calls = {"count": 0}

    def flaky_resolve(session, *, user_a, user_b):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConversationConflict()
        return real_resolve(session, user_a=user_a, user_b=user_b)

    monkeypatch.setattr(conversation_service, "resolve_conversation", flaky_resolve)

    payload, created = messaging_service.start_or_resume_conversation(db, current_user_id="u1", target_user_id="u2")

    assert calls["count"] == 2
    assert created is True
    assert payload["other_user"]["id"] == "u2"


def test_persistent_conflict_surfaces_after_one_retry(db, people, monkeypatch):
    calls = {"count": 0}

    def always_conflicts(session, *, user_a, user_b):
        calls["count"] += 1
        raise ConversationConflict()

    monkeypatch.setattr(conversation_service, "resolve_conversation", always_conflicts)

    with pytest.raises(ConversationConflict):
        messaging_service.start_or_resume_conversation(db, current_user_id="u1", target_user_id="u2")
    assert calls["count"] == 2


def test_concurrent_start_from_both_sides_returns_one_conversation(database, people):
    barrier = threading.Barrier(2)

    def start(current_user_id: str, target_user_id: str) -> tuple[str, bool]:
        with db_session.open_session() as session:
            barrier.wait()
            payload, created = messaging_service.start_or_resume_conversation(
                session,
                current_user_id=current_user_id,
                target_user_id=target_user_id,
            )
            return payload["id"], created

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(start, "u1", "u2")
        second = pool.submit(start, "u2", "u1")
        results = [first.result(timeout=30), second.result(timeout=30)]

    assert results[0][0] == results[1][0]
    assert sorted(created for _, created in results) == [False, True]


def test_send_message_reports_the_violated_constraint(db, people):
    payload, _ = messaging_service.start_or_resume_conversation(db, current_user_id="u1", target_user_id="u2")

    with pytest.raises(InvalidContent) as empty:
        messaging_service.send_message(db, conversation_id=payload["id"], sender_id="u1", content="   ")
    with pytest.raises(InvalidContent) as too_long:
        messaging_service.send_message(db, conversation_id=payload["id"], sender_id="u1", content="x" * 1001)

    assert empty.value.reason == "empty"
    assert empty.value.message == "El mensaje no puede estar vacío"
    assert too_long.value.reason == "too_long"
    assert too_long.value.message == "El mensaje no puede exceder 1000 caracteres"


def test_open_conversation_subscribes_before_reading_and_marks_read(db, people, monkeypatch):
    payload, _ = messaging_service.start_or_resume_conversation(db, current_user_id="u1", target_user_id="u2")
    conversation_id = payload["id"]
    messaging_service.send_message(db, conversation_id=conversation_id, sender_id="u1", content="hola")
    messaging_service.send_message(db, conversation_id=conversation_id, sender_id="u2", content="buenas")

    steps: list[str] = []
    real_list = message_service.list_messages

    def recording_list(session, **kwargs):
        steps.append("list")
        return real_list(session, **kwargs)

    async def subscribe(subscribed_id: str) -> None:
        assert subscribed_id == conversation_id
        steps.append("subscribe")

    monkeypatch.setattr(message_service, "list_messages", recording_list)

    opened = asyncio.run(
        messaging_service.open_conversation(
            db,
            conversation_id=conversation_id,
            viewer_id="u2",
            subscribe=subscribe,
        )
    )

    assert steps == ["subscribe", "list"]
    assert opened.live is True
    assert [message.content for message in opened.messages] == ["hola", "buenas"]
    assert opened.marked_read == 1


def test_open_conversation_degrades_when_transport_is_down(db, people):
    payload, _ = messaging_service.start_or_resume_conversation(db, current_user_id="u1", target_user_id="u2")
    conversation_id = payload["id"]
    messaging_service.send_message(db, conversation_id=conversation_id, sender_id="u1", content="hola")

    async def broken_subscribe(_: str) -> None:
        raise TransportUnavailable()

    opened = asyncio.run(
        messaging_service.open_conversation(
            db,
            conversation_id=conversation_id,
            viewer_id="u2",
            subscribe=broken_subscribe,
        )
    )

    assert opened.live is False
    assert [message.content for message in opened.messages] == ["hola"]
    assert opened.marked_read == 1


def test_open_conversation_rejects_outsiders_before_subscribing(db, people):
    payload, _ = messaging_service.start_or_resume_conversation(db, current_user_id="u1", target_user_id="u2")
    subscribed: list[str] = []

    async def subscribe(conversation_id: str) -> None:
        subscribed.append(conversation_id)

    with pytest.raises(NotAParticipant):
        asyncio.run(
            messaging_service.open_conversation(
                db,
                conversation_id=payload["id"],
                viewer_id="u3",
                subscribe=subscribe,
            )
        )
    assert subscribed == []


def test_list_conversations_orders_by_latest_message(db, people):
    first, _ = messaging_service.start_or_resume_conversation(db, current_user_id="u1", target_user_id="u2")
    second, _ = messaging_service.start_or_resume_conversation(db, current_user_id="u1", target_user_id="u3")
    messaging_service.send_message(db, conversation_id=first["id"], sender_id="u2", content="hola")
    messaging_service.send_message(db, conversation_id=first["id"], sender_id="u2", content="sigo aca")

    listed = messaging_service.list_conversations(db, current_user_id="u1")

    assert [item["id"] for item in listed] == [first["id"], second["id"]]
    assert listed[0]["unread_count"] == 2
    assert listed[0]["last_message_at"] is not None
    assert listed[1]["unread_count"] == 0
    assert listed[1]["last_message_at"] is None

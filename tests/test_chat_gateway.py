import asyncio

import pytest
from conftest import open_thread, start_consultation
from fastapi import WebSocketDisconnect

from teleclinic.database import SessionLocal, get_session_factory
from teleclinic.domain.chats.gateway import ChatConnectionManager, thread_room
from teleclinic.main import app


def _connect(client, user):
    return client.websocket_connect(f"/chats/ws?token={user['access_token']}")


def test_connection_without_token_is_closed_with_policy_violation(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/chats/ws"):
            pass
    assert exc_info.value.code == 1008


def test_connection_with_bad_token_is_closed(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/chats/ws?token=garbage"):
            pass
    assert exc_info.value.code == 1008


def test_token_accepted_from_authorization_header(client, doctor, patient):
    thread = open_thread(client, doctor, patient)

    with client.websocket_connect("/chats/ws", headers=doctor["headers"]) as ws:
        ws.send_json({"event": "chat:join", "ackId": 1, "data": {"threadId": thread["id"]}})
        ack = ws.receive_json()

    assert ack == {"event": "ack", "ackId": 1, "ok": True, "data": {"threadId": thread["id"]}}


def test_token_accepted_from_subprotocol(client, doctor, patient):
    thread = open_thread(client, doctor, patient)

    with client.websocket_connect(
        "/chats/ws", subprotocols=[f"bearer {doctor['access_token']}"]
    ) as ws:
        ws.send_json({"event": "chat:join", "ackId": "j", "data": {"threadId": thread["id"]}})
        assert ws.receive_json()["ok"] is True


def test_join_rejects_outsiders_and_unknown_threads(client, doctor, patient, other_patient):
    thread = open_thread(client, doctor, patient)

    with _connect(client, other_patient) as ws:
        ws.send_json({"event": "chat:join", "ackId": 1, "data": {"threadId": thread["id"]}})
        forbidden = ws.receive_json()
        ws.send_json({"event": "chat:join", "ackId": 2, "data": {"threadId": "missing"}})
        missing = ws.receive_json()
        ws.send_json({"event": "chat:join", "ackId": 3, "data": {}})
        invalid = ws.receive_json()

    assert forbidden["ok"] is False and forbidden["error"]["code"] == "FORBIDDEN"
    assert missing["error"]["code"] == "NOT_FOUND"
    assert invalid["error"]["code"] == "INVALID_ARGUMENT"


def test_admin_cannot_join(client, admin, doctor, patient):
    thread = open_thread(client, doctor, patient)

    with _connect(client, admin) as ws:
        ws.send_json({"event": "chat:join", "ackId": 1, "data": {"threadId": thread["id"]}})
        assert ws.receive_json()["error"]["code"] == "FORBIDDEN"


def test_send_broadcasts_to_room_then_acks(client, doctor, patient):
    thread = open_thread(client, doctor, patient)

    with _connect(client, doctor) as ws:
        ws.send_json({"event": "chat:join", "ackId": 1, "data": {"threadId": thread["id"]}})
        ws.receive_json()

        ws.send_json(
            {
                "event": "chat:send",
                "ackId": 2,
                "data": {"threadId": thread["id"], "kind": "text", "text": "hello", "clientMessageId": "w-1"},
            }
        )
        broadcast = ws.receive_json()
        ack = ws.receive_json()

    assert broadcast["event"] == "chat:message"
    assert broadcast["data"]["message"]["text"] == "hello"
    assert ack["ok"] is True and ack["ackId"] == 2
    assert ack["data"]["message"]["id"] == broadcast["data"]["message"]["id"]
    assert ack["data"]["message"]["clientMessageId"] == "w-1"


def test_send_validates_payload(client, doctor, patient):
    thread = open_thread(client, doctor, patient)

    with _connect(client, doctor) as ws:
        ws.send_json({"event": "chat:send", "ackId": 1, "data": {"threadId": thread["id"]}})
        missing_text = ws.receive_json()
        ws.send_json(
            {"event": "chat:send", "ackId": 2, "data": {"threadId": thread["id"], "kind": "image", "text": "x"}}
        )
        bad_kind = ws.receive_json()
        ws.send_text("not json")
        bad_frame = ws.receive_json()
        ws.send_json({"event": "chat:typing", "ackId": 3, "data": {}})
        unknown = ws.receive_json()

    assert missing_text["error"]["code"] == "INVALID_ARGUMENT"
    assert bad_kind["error"]["code"] == "INVALID_ARGUMENT"
    assert bad_frame["error"]["code"] == "INVALID_ARGUMENT"
    assert unknown["error"]["code"] == "INVALID_ARGUMENT"


def test_policy_denial_surfaces_policy_code(client, doctor, patient):
    thread = open_thread(client, doctor, patient)

    with _connect(client, patient) as ws:
        ws.send_json({"event": "chat:send", "ackId": 9, "data": {"threadId": thread["id"], "text": "hi"}})
        ack = ws.receive_json()

    assert ack["ok"] is False
    assert ack["error"] == {"code": "RECENT_CONSULTATION_REQUIRED", "message": "Cannot send message"}


def test_duplicate_send_is_broadcast_again(client, doctor, patient):
    thread = open_thread(client, doctor, patient)
    start_consultation(client, doctor, patient)
    frame = {
        "event": "chat:send",
        "data": {"threadId": thread["id"], "text": "once", "clientMessageId": "dup-1"},
    }

    with _connect(client, patient) as ws:
        ws.send_json({"event": "chat:join", "ackId": 0, "data": {"threadId": thread["id"]}})
        ws.receive_json()

        ws.send_json({**frame, "ackId": 1})
        first_broadcast = ws.receive_json()
        first_ack = ws.receive_json()
        ws.send_json({**frame, "ackId": 2})
        second_broadcast = ws.receive_json()
        second_ack = ws.receive_json()

    assert first_broadcast["event"] == second_broadcast["event"] == "chat:message"
    assert first_ack["data"]["message"]["id"] == second_ack["data"]["message"]["id"]


class _RecordingSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, payload):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


def test_connection_manager_broadcasts_per_room_and_drops_dead_sockets():
    manager = ChatConnectionManager()
    alive, dead, elsewhere = _RecordingSocket(), _RecordingSocket(fail=True), _RecordingSocket()
    manager.join(thread_room("t1"), alive)
    manager.join(thread_room("t1"), dead)
    manager.join(thread_room("t2"), elsewhere)

    asyncio.run(manager.broadcast(thread_room("t1"), {"event": "chat:message"}))

    assert alive.sent == [{"event": "chat:message"}]
    assert elsewhere.sent == []
    assert dead not in manager.rooms[thread_room("t1")]

    manager.leave_all(alive)
    assert thread_room("t1") not in manager.rooms


def test_empty_client_message_id_over_socket_is_not_a_dedup_key(client, doctor, patient):
    thread = open_thread(client, doctor, patient)
    frame = {"event": "chat:send", "data": {"threadId": thread["id"], "text": "hey", "clientMessageId": ""}}

    with _connect(client, doctor) as ws:
        ws.send_json({**frame, "ackId": 1})
        first = ws.receive_json()
        ws.send_json({**frame, "ackId": 2})
        second = ws.receive_json()

    assert first["ok"] is True and second["ok"] is True
    assert first["data"]["message"]["id"] != second["data"]["message"]["id"]


def test_socket_releases_its_session_after_every_frame(client, doctor, patient):
    thread = open_thread(client, doctor, patient)
    opened = []

    def tracking_factory():
        session = SessionLocal()
        opened.append(session)
        return session

    app.dependency_overrides[get_session_factory] = lambda: tracking_factory

    with _connect(client, doctor) as ws:
        ws.send_json({"event": "chat:join", "ackId": 1, "data": {"threadId": thread["id"]}})
        assert ws.receive_json()["ok"] is True
        # Token lookup and the join each used their own session, both finished
        assert len(opened) == 2
        assert not any(session.in_transaction() for session in opened)

        ws.send_json({"event": "chat:send", "ackId": 2, "data": {"threadId": thread["id"], "text": "hi"}})
        ws.receive_json()
        assert ws.receive_json()["ok"] is True
        assert len(opened) == 3
        assert not any(session.in_transaction() for session in opened)

        # The idle socket does not block ordinary requests
        assert client.get("/chats/threads", headers=patient["headers"]).status_code == 200

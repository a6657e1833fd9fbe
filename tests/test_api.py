"""
REST routes and the /ws/chat socket, driven through FastAPI's TestClient.
"""

import logging

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from agrichat.database.connection import mongo_db_dependency
from agrichat.main import create_app
from agrichat.repositories.conversation_repository import ConversationRepository
from agrichat.repositories.message_repository import MessageRepository
from agrichat.services.chat_service import ChatService
from agrichat.services.gateway import MessageGateway
from agrichat.utils.channel import AUTH_FAILED_CLOSE_CODE
from agrichat.utils.rate_limit import ChatRateLimiter


@pytest.fixture
def client(db):
    app = create_app()
    app.state.gateway = MessageGateway(ChatService(MessageRepository(db), ConversationRepository(db)))
    app.dependency_overrides[mongo_db_dependency] = lambda: db
    # not entered as a context manager, so the Mongo lifespan never runs
    return TestClient(app)


@pytest.fixture
def headers(token_for):
    def _headers(user_id):
        return {"Authorization": f"Bearer {token_for(user_id)}"}

    return _headers


def create_conversation(client, headers, owner, *others):
    resp = client.post("/conversations", json={"participant_ids": list(others)}, headers=headers(owner))
    assert resp.status_code == 201
    return resp.json()["id"]


class TestConversationRoutes:

    def test_requires_bearer_token(self, client):
        assert client.get("/conversations").status_code == 401
        assert client.get("/conversations", headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_create_is_idempotent_per_participant_set(self, client, headers):
        first = create_conversation(client, headers, "u1", "u2")
        second = create_conversation(client, headers, "u2", "u1")
        assert first == second

    def test_create_with_only_self_rejected(self, client, headers):
        resp = client.post("/conversations", json={"participant_ids": ["u1"]}, headers=headers("u1"))
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "invalid_participants"

    def test_send_and_list_messages(self, client, headers):
        convo_id = create_conversation(client, headers, "u1", "u2")
        resp = client.post(f"/conversations/{convo_id}/messages", json={"body": "hello"}, headers=headers("u1"))
        assert resp.status_code == 201
        message = resp.json()
        assert message["seq"] == 1

        resp = client.get(f"/conversations/{convo_id}/messages", headers=headers("u2"))
        assert resp.status_code == 200
        assert [m["id"] for m in resp.json()["items"]] == [message["id"]]

    def test_outsider_cannot_read_or_write(self, client, headers):
        convo_id = create_conversation(client, headers, "u1", "u2")
        assert client.get(f"/conversations/{convo_id}/messages", headers=headers("u3")).status_code == 403
        resp = client.post(f"/conversations/{convo_id}/messages", json={"body": "hi"}, headers=headers("u3"))
        assert resp.status_code == 403
        assert resp.json()["detail"]["code"] == "not_participant"

    def test_unknown_conversation(self, client, headers):
        assert client.get("/conversations/bogus/messages", headers=headers("u1")).status_code == 404

    def test_empty_body_rejected(self, client, headers):
        convo_id = create_conversation(client, headers, "u1", "u2")
        resp = client.post(f"/conversations/{convo_id}/messages", json={"body": "   "}, headers=headers("u1"))
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "empty_body"

    def test_pagination_cursor(self, client, headers):
        convo_id = create_conversation(client, headers, "u1", "u2")
        for i in range(3):
            client.post(f"/conversations/{convo_id}/messages", json={"body": f"m{i}"}, headers=headers("u1"))

        page = client.get(f"/conversations/{convo_id}/messages", params={"limit": 2}, headers=headers("u1")).json()
        assert [m["body"] for m in page["items"]] == ["m1", "m2"]
        assert page["next_before_seq"] == 2

        page = client.get(
            f"/conversations/{convo_id}/messages",
            params={"limit": 2, "before_seq": page["next_before_seq"]},
            headers=headers("u1"),
        ).json()
        assert [m["body"] for m in page["items"]] == ["m0"]
        assert page["next_before_seq"] is None

    def test_unread_count_and_mark_read(self, client, headers):
        convo_id = create_conversation(client, headers, "u1", "u2")
        client.post(f"/conversations/{convo_id}/messages", json={"body": "ping"}, headers=headers("u1"))

        items = client.get("/conversations", headers=headers("u2")).json()["items"]
        assert items[0]["unread_count"] == 1

        assert client.post(f"/conversations/{convo_id}/read", headers=headers("u2")).json() == {"ok": True}
        items = client.get("/conversations", headers=headers("u2")).json()["items"]
        assert items[0]["unread_count"] == 0

    def test_send_over_rate_limit_rejected(self, client, headers):
        client.app.state.gateway.rate_limiter = ChatRateLimiter(send_rate="1/minute")
        convo_id = create_conversation(client, headers, "u1", "u2")
        url = f"/conversations/{convo_id}/messages"
        assert client.post(url, json={"body": "one"}, headers=headers("u1")).status_code == 201
        resp = client.post(url, json={"body": "two"}, headers=headers("u1"))
        assert resp.status_code == 429
        assert resp.json()["detail"]["code"] == "rate_limited"
        assert client.post(url, json={"body": "reply"}, headers=headers("u2")).status_code == 201


class TestChatSocket:

    def test_live_delivery_between_two_users(self, client, headers, token_for):
        convo_id = create_conversation(client, headers, "u1", "u2")
        with client.websocket_connect(f"/ws/chat?token={token_for('u2')}") as ws_b, \
                client.websocket_connect("/ws/chat") as ws_a:
            assert ws_b.receive_json() == {"event": "authenticated", "data": {"user_id": "u2"}}
            ws_a.send_json({"event": "authenticate", "data": {"token": token_for("u1")}})
            assert ws_a.receive_json()["event"] == "authenticated"

            ws_a.send_json({"event": "send", "data": {"conversation_id": convo_id, "body": "hi b"}})

            ack = ws_a.receive_json()
            assert ack["event"] == "messageSent"
            frame = ws_b.receive_json()
            assert frame["event"] == "messageReceived"
            assert frame["data"]["message"]["body"] == "hi b"
            assert frame["data"]["message"]["id"] == ack["data"]["message"]["id"]

    def test_rest_send_is_pushed_to_socket(self, client, headers, token_for):
        convo_id = create_conversation(client, headers, "u1", "u2")
        with client.websocket_connect(f"/ws/chat?token={token_for('u2')}") as ws_b:
            ws_b.receive_json()
            client.post(f"/conversations/{convo_id}/messages", json={"body": "via rest"}, headers=headers("u1"))
            frame = ws_b.receive_json()
            assert frame["event"] == "messageReceived"
            assert frame["data"]["message"]["body"] == "via rest"

    def test_bad_token_gets_auth_error_and_close(self, client):
        with client.websocket_connect("/ws/chat?token=bad") as ws:
            frame = ws.receive_json()
            assert frame["event"] == "authError"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == AUTH_FAILED_CLOSE_CODE

    def test_send_error_only_to_sender(self, client, headers, token_for):
        convo_id = create_conversation(client, headers, "u1", "u2")
        with client.websocket_connect(f"/ws/chat?token={token_for('u3')}") as ws:
            ws.receive_json()
            ws.send_json({"event": "send", "data": {"conversation_id": convo_id, "body": "let me in"}})
            frame = ws.receive_json()
            assert frame["event"] == "sendError"
            assert frame["data"]["code"] == "not_participant"

    def test_mark_read_pushes_receipt_to_sender(self, client, headers, token_for):
        convo_id = create_conversation(client, headers, "u1", "u2")
        client.post(f"/conversations/{convo_id}/messages", json={"body": "ping"}, headers=headers("u1"))
        with client.websocket_connect(f"/ws/chat?token={token_for('u1')}") as ws_a:
            ws_a.receive_json()
            client.post(f"/conversations/{convo_id}/read", headers=headers("u2"))
            assert ws_a.receive_json() == {
                "event": "messageRead",
                "data": {"conversation_id": convo_id, "reader_id": "u2"},
            }


class TestAccessLog:

    def test_request_logged_with_context_fields(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="agrichat.middleware"):
            assert client.get("/health").status_code == 200
        record = [r for r in caplog.records if r.name == "agrichat.middleware"][-1]
        assert record.method == "GET"
        assert record.path == "/health"
        assert record.status_code == 200
        assert record.duration_ms >= 0

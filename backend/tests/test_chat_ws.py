"""End-to-end tests for the chat WebSocket protocol and HTTP endpoints.

All sockets in a test are opened from the same TestClient context, so they
share one event loop like connections in a real server process.
"""
from datetime import timedelta

import pytest
from starlette.websockets import WebSocketDisconnect

from safelease.auth.service import create_access_token
from safelease.chat.conversation import derive_key
from safelease.chat.manager import manager
from safelease.chat.store import MessageStore

KEY = derive_key("u1", "u2")


def _open(client, token):
    ws = client.websocket_connect(f"/ws/chat?token={token}")
    return ws


def _join(ws, key=KEY):
    ws.send_json({"type": "join", "conversationKey": key})
    frame = ws.receive_json()
    assert frame["type"] == "history"
    assert frame["conversationKey"] == key
    return frame["messages"]


def test_health(api_client):
    response = api_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestConnection:
    """Connection-time authentication."""

    def test_connected_frame(self, api_client, tokens):
        with _open(api_client, tokens["u1"]) as ws:
            assert ws.receive_json() == {
                "type": "connected",
                "userId": "u1",
                "displayName": "Alice Tenant",
            }

    def test_authorization_header(self, api_client, tokens):
        headers = {"Authorization": f"Bearer {tokens['u2']}"}
        with api_client.websocket_connect("/ws/chat", headers=headers) as ws:
            assert ws.receive_json()["userId"] == "u2"

    def test_expired_credential(self, api_client, users):
        token = create_access_token("u1", expires_in=timedelta(seconds=-1))
        with _open(api_client, token) as ws:
            frame = ws.receive_json()
            assert frame["type"] == "authentication_failed"
            assert frame["code"] == "expired_credential"

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 1008

    def test_missing_credential(self, api_client, users):
        with api_client.websocket_connect("/ws/chat") as ws:
            frame = ws.receive_json()
            assert frame["type"] == "authentication_failed"
            assert frame["code"] == "missing_credential"


class TestConversation:
    """Join, send and fan-out between two participants."""

    def test_two_party_exchange(self, api_client, tokens):
        with _open(api_client, tokens["u1"]) as ws1, _open(api_client, tokens["u2"]) as ws2:
            ws1.receive_json()
            ws2.receive_json()

            assert _join(ws1) == []
            assert _join(ws2) == []

            ws1.send_json({"type": "send", "conversationKey": KEY, "content": "hi"})

            for ws in (ws1, ws2):
                frame = ws.receive_json()
                assert frame["type"] == "message_appended"
                message = frame["message"]
                assert message["content"] == "hi"
                assert message["conversationKey"] == KEY
                assert message["sender"]["id"] == "u1"
                assert message["sender"]["displayName"] == "Alice Tenant"
                assert message["read"] is False

            ws2.send_json({"type": "send", "conversationKey": KEY, "content": "hello back"})
            assert ws1.receive_json()["message"]["content"] == "hello back"
            assert ws2.receive_json()["message"]["content"] == "hello back"

        history = MessageStore.get_instance().list_by_conversation(KEY)
        assert [m.content for m in history] == ["hi", "hello back"]

    def test_history_replayed_on_rejoin(self, api_client, tokens):
        with _open(api_client, tokens["u1"]) as ws:
            ws.receive_json()
            _join(ws)
            ws.send_json({"type": "send", "conversationKey": KEY, "content": "are you there?"})
            ws.receive_json()

        with _open(api_client, tokens["u2"]) as ws:
            ws.receive_json()
            messages = _join(ws)
            assert [m["content"] for m in messages] == ["are you there?"]
            assert messages[0]["sender"]["profilePic"] == "https://img.example/alice.png"

    def test_third_user_cannot_join(self, api_client, tokens):
        with _open(api_client, tokens["u3"]) as ws:
            ws.receive_json()
            ws.send_json({"type": "join", "conversationKey": KEY})
            frame = ws.receive_json()
            assert frame["type"] == "operation_failed"
            assert frame["code"] == "not_participant"


class TestRejectedOperations:
    """Rejected frames produce operation_failed for the sender only."""

    def test_empty_content(self, api_client, tokens):
        with _open(api_client, tokens["u1"]) as ws:
            ws.receive_json()
            _join(ws)
            ws.send_json({"type": "send", "conversationKey": KEY, "content": "   "})
            frame = ws.receive_json()
            assert frame["type"] == "operation_failed"
            assert frame["code"] == "empty_content"

            # The connection is still usable
            ws.send_json({"type": "send", "conversationKey": KEY, "content": "real"})
            assert ws.receive_json()["message"]["content"] == "real"

        assert MessageStore.get_instance().count(KEY) == 1

    def test_send_before_join(self, api_client, tokens):
        with _open(api_client, tokens["u1"]) as ws:
            ws.receive_json()
            ws.send_json({"type": "send", "conversationKey": KEY, "content": "hello"})
            assert ws.receive_json()["code"] == "not_in_room"

        assert MessageStore.get_instance().count(KEY) == 0

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2, 3]",
        '{"type": "shout", "conversationKey": "u1_u2"}',
        '{"type": "join"}',
    ])
    def test_malformed_frame(self, api_client, tokens, raw):
        with _open(api_client, tokens["u1"]) as ws:
            ws.receive_json()
            ws.send_text(raw)
            frame = ws.receive_json()
            assert frame["type"] == "operation_failed"
            assert frame["code"] == "malformed_frame"

    def test_binary_frame_keeps_connection(self, api_client, tokens):
        with _open(api_client, tokens["u1"]) as ws:
            ws.receive_json()
            ws.send_bytes(b"\x00\x01")
            frame = ws.receive_json()
            assert frame["type"] == "operation_failed"
            assert frame["code"] == "malformed_frame"
            assert len(manager.sessions) == 1

            assert _join(ws) == []


class TestHttpEndpoints:
    """Conversation key and history over HTTP."""

    @staticmethod
    def _auth(token):
        return {"Authorization": f"Bearer {token}"}

    def test_conversation_key(self, api_client, tokens):
        response = api_client.get("/chat/conversations/u2/key", headers=self._auth(tokens["u1"]))
        assert response.status_code == 200
        assert response.json() == {"conversationKey": "u1_u2"}

    def test_conversation_key_same_for_both(self, api_client, tokens):
        a = api_client.get("/chat/conversations/u2/key", headers=self._auth(tokens["u1"]))
        b = api_client.get("/chat/conversations/u1/key", headers=self._auth(tokens["u2"]))
        assert a.json() == b.json()

    def test_conversation_key_invalid_peer(self, api_client, tokens):
        response = api_client.get("/chat/conversations/a_b/key", headers=self._auth(tokens["u1"]))
        assert response.status_code == 400

    def test_conversation_key_requires_auth(self, api_client, users):
        assert api_client.get("/chat/conversations/u2/key").status_code == 401

    def test_history(self, api_client, tokens):
        store = MessageStore.get_instance()
        store.append(KEY, "u1", "first")
        store.append(KEY, "u2", "second")

        response = api_client.get(f"/chat/conversations/{KEY}/history", headers=self._auth(tokens["u2"]))
        assert response.status_code == 200
        messages = response.json()["messages"]
        assert [m["content"] for m in messages] == ["first", "second"]
        assert messages[1]["sender"]["displayName"] == "Bob Landlord"

    def test_history_forbidden_for_outsider(self, api_client, tokens):
        response = api_client.get(f"/chat/conversations/{KEY}/history", headers=self._auth(tokens["u3"]))
        assert response.status_code == 403

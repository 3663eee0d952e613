"""
Tests for the client-side chat session.

The session is driven with the TestClient as its HTTP client and a
TestClient WebSocket as its feed.
"""

import httpx
import pytest

from chatapp.client import ChatError, ChatSession, MessageList


def message(message_id, created_at, content="x"):
    return {
        "id": message_id,
        "conversation_id": "c1",
        "sender_id": "u1",
        "content": content,
        "created_at": created_at,
    }


class TestMessageList:
    """Test de-duplication and ordering."""

    def test_add_deduplicates_by_id(self):
        messages = MessageList()

        assert messages.add(message("m1", "2025-01-15T10:00:00.000000Z"))
        assert not messages.add(message("m1", "2025-01-15T10:00:00.000000Z"))
        assert len(messages) == 1

    def test_duplicate_fills_missing_sender_profile(self):
        messages = MessageList()
        messages.add(message("m1", "2025-01-15T10:00:00.000000Z"))

        with_profile = dict(message("m1", "2025-01-15T10:00:00.000000Z"), sender_profile={"display_name": "A"})
        messages.add(with_profile)

        assert messages.items()[0]["sender_profile"] == {"display_name": "A"}

    def test_arrival_order_kept_until_reload(self):
        messages = MessageList()
        messages.add(message("m2", "2025-01-15T10:01:00.000000Z"))
        messages.add(message("m1", "2025-01-15T10:00:00.000000Z"))

        assert [m["id"] for m in messages.items()] == ["m2", "m1"]

        messages.replace_all(messages.items())
        assert [m["id"] for m in messages.items()] == ["m1", "m2"]


class TestChatSession:
    """Test the session against the running app."""

    def test_own_message_rendered_once(self, client, api_key, alice, direct_chat, realtime_url):
        """Test the direct insert response and the feed echo yield one message."""
        with client.websocket_connect(realtime_url(alice)) as ws:
            session = ChatSession(client, alice["token"], api_key, feed=ws)
            session.select_conversation(direct_chat["id"])

            sent = session.send_text("hi")
            frame = session.poll_feed()

            assert frame["record"]["id"] == sent["id"]
            assert len(session.messages) == 1
            session.close()

    def test_peer_message_arrives_with_profile(self, client, api_key, alice, bob, direct_chat, realtime_url):
        with client.websocket_connect(realtime_url(bob)) as ws:
            session = ChatSession(client, bob["token"], api_key, feed=ws)
            session.conversations()
            session.select_conversation(direct_chat["id"])

            client.post(f"/conversations/{direct_chat['id']}/messages", json={"content": "hi"}, headers=alice["headers"])
            session.poll_feed()

            items = session.messages.items()
            assert [m["content"] for m in items] == ["hi"]
            assert items[0]["sender_profile"]["display_name"] == "Alice"
            session.close()

    def test_event_without_profile_fetches_sender(self, client, api_key, alice, bob, direct_chat):
        session = ChatSession(client, bob["token"], api_key)
        session.select_conversation(direct_chat["id"])

        added = session.handle_event({
            "type": "event",
            "event": "INSERT",
            "table": "messages",
            "record": dict(message("m9", "2025-01-15T10:00:00.000000Z"), conversation_id=direct_chat["id"], sender_id=alice["user_id"]),
        })

        assert added
        assert session.messages.items()[0]["sender_profile"]["display_name"] == "Alice"

    def test_events_for_other_conversations_ignored(self, client, api_key, bob, direct_chat):
        session = ChatSession(client, bob["token"], api_key)
        session.select_conversation(direct_chat["id"])

        assert not session.handle_event({
            "type": "event",
            "event": "INSERT",
            "table": "messages",
            "record": message("m1", "2025-01-15T10:00:00.000000Z"),
        })
        assert len(session.messages) == 0

    def test_switching_conversation_moves_subscription(self, client, api_key, alice, bob, direct_chat, realtime_url):
        other = client.post("/conversations", json={"name": "Notes"}, headers=alice["headers"]).json()

        with client.websocket_connect(realtime_url(alice)) as ws:
            session = ChatSession(client, alice["token"], api_key, feed=ws)
            session.select_conversation(direct_chat["id"])
            session.select_conversation(other["id"])

            assert session.subscription.channel == f"messages:{other['id']}"

            client.post(f"/conversations/{direct_chat['id']}/messages", json={"content": "old"}, headers=bob["headers"])
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}
            session.close()

    def test_reload_sorts_by_created_at(self, client, api_key, alice, bob, direct_chat):
        for user, text in ((alice, "one"), (bob, "two")):
            client.post(f"/conversations/{direct_chat['id']}/messages", json={"content": text}, headers=user["headers"])

        session = ChatSession(client, alice["token"], api_key)
        session.select_conversation(direct_chat["id"])

        assert [m["content"] for m in session.messages.items()] == ["one", "two"]

    def test_rejection_raises_chat_error(self, client, api_key, carol, direct_chat):
        session = ChatSession(client, carol["token"], api_key)

        with pytest.raises(ChatError) as exc_info:
            session.select_conversation(direct_chat["id"])
        assert exc_info.value.status_code == 404

    def test_invalid_image_rejected_before_upload(self):
        """Test oversize and non-image files never reach the network."""
        sent = []

        def handler(request):
            sent.append((request.method, request.url.path))
            return httpx.Response(201, json=message("m1", "2025-01-15T10:00:00.000000Z"))

        session = ChatSession(httpx.Client(transport=httpx.MockTransport(handler), base_url="http://chat.test"), "token", "key")
        session.conversation_id = "c1"

        with pytest.raises(ChatError) as exc_info:
            session.send_image("big.jpg", b"\x00" * (11 * 1024 * 1024), "image/jpeg")
        assert exc_info.value.status_code == 413

        with pytest.raises(ChatError) as exc_info:
            session.send_image("notes.txt", b"hello", "text/plain")
        assert exc_info.value.status_code == 415

        assert sent == []
        assert len(session.messages) == 0

        session.send_image("photo.jpg", b"\xff\xd8\xff", "image/jpeg")
        assert sent == [("POST", "/conversations/c1/images")]
        assert len(session.messages) == 1

    def test_online_user_ids(self, client, api_key, alice, bob):
        session = ChatSession(client, alice["token"], api_key)

        assert session.online_user_ids() == {alice["user_id"], bob["user_id"]}

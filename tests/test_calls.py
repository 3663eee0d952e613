"""
Tests for video calls: room naming, the widget bridge and invitations.
"""

import re
from datetime import timedelta

import pytest

from chatapp import calls
from chatapp.utils import utcnow


class FakeWidget:
    """Records commands and lets tests fire widget events."""

    def __init__(self, fail_on_join=False):
        self.commands = []
        self.handlers = {}
        self.fail_on_join = fail_on_join

    def join(self, room_name, display_name):
        if self.fail_on_join:
            raise calls.WidgetLoadError("script blocked")
        self.commands.append(("join", room_name, display_name))

    def leave(self):
        self.commands.append(("leave",))

    def set_audio(self, enabled):
        self.commands.append(("audio", enabled))

    def set_video(self, enabled):
        self.commands.append(("video", enabled))

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def fire(self, event, payload=None):
        for handler in self.handlers.get(event, []):
            handler(payload or {})


class TestRooms:
    """Test room names and URLs."""

    def test_room_name_format(self):
        assert re.fullmatch(r"chatapp-\d{13}-[0-9a-z]{9}", calls.generate_room_name())

    def test_room_suffix_uses_secure_random(self, monkeypatch):
        monkeypatch.setattr(calls.secrets, "choice", lambda alphabet: "z")

        assert calls.generate_room_name().endswith("-zzzzzzzzz")

    def test_room_names_differ(self):
        assert calls.generate_room_name() != calls.generate_room_name()

    def test_room_url_round_trip(self):
        url = calls.room_url("chatapp-1-abc", base_url="https://meet.jit.si/")

        assert url == "https://meet.jit.si/chatapp-1-abc"
        assert calls.room_name_from_url(url) == "chatapp-1-abc"


class TestCallBridge:
    """Test intents become widget commands and events become state."""

    def test_start_joins_generated_room(self):
        widget = FakeWidget()
        bridge = calls.CallBridge(widget)

        url = bridge.start("Alice")

        assert url.startswith("https://meet.jit.si/chatapp-")
        assert widget.commands == [("join", calls.room_name_from_url(url), "Alice")]
        assert bridge.state.joined is False

    def test_conference_events_update_state(self):
        widget = FakeWidget()
        notices = []
        bridge = calls.CallBridge(widget, notify=lambda title, description: notices.append(title))
        bridge.start("Alice", url="https://meet.jit.si/room-1")

        widget.fire("videoConferenceJoined")
        widget.fire("participantJoined", {"id": "p1"})
        widget.fire("participantJoined", {"id": "p2"})
        widget.fire("participantLeft", {"id": "p1"})
        widget.fire("audioMuteStatusChanged", {"muted": True})

        assert bridge.state.joined is True
        assert bridge.state.participants == [{"id": "p2"}]
        assert bridge.state.mic_on is False
        assert bridge.state.camera_on is True
        assert notices == ["Call Connected"]

    def test_toggles(self):
        widget = FakeWidget()
        bridge = calls.CallBridge(widget)
        bridge.start("Alice", url="https://meet.jit.si/room-1")

        bridge.toggle_mic()
        bridge.toggle_camera()

        assert widget.commands[1:] == [("audio", False), ("video", False)]

    def test_leave_resets_and_closes(self):
        widget = FakeWidget()
        closed = []
        bridge = calls.CallBridge(widget, on_close=lambda: closed.append(True))
        bridge.start("Alice", url="https://meet.jit.si/room-1")

        bridge.leave()

        assert widget.commands[-1] == ("leave",)
        assert bridge.state == calls.CallState()
        assert closed == [True]

    def test_remote_close(self):
        widget = FakeWidget()
        closed = []
        bridge = calls.CallBridge(widget, on_close=lambda: closed.append(True))
        bridge.start("Alice", url="https://meet.jit.si/room-1")
        widget.fire("videoConferenceJoined")

        widget.fire("readyToClose")

        assert bridge.state.joined is False
        assert closed == [True]

    def test_load_failure_notifies_and_aborts(self):
        notices = []
        bridge = calls.CallBridge(FakeWidget(fail_on_join=True), notify=lambda title, description: notices.append(title))

        with pytest.raises(calls.WidgetLoadError):
            bridge.start("Alice")

        assert notices == ["Error"]
        assert bridge.state.room_url is None


class TestJitsiWidget:
    """Test the Jitsi adapter's command forwarding."""

    def test_join_sends_embed_options(self):
        sent = []
        widget = calls.JitsiWidget(sent.append)

        widget.join("room-1", "Alice")

        assert sent[0]["command"] == "init"
        assert sent[0]["options"]["roomName"] == "room-1"
        assert sent[0]["options"]["configOverwrite"]["prejoinPageEnabled"] is False

    def test_toggles_only_when_state_differs(self):
        sent = []
        widget = calls.JitsiWidget(sent.append)

        widget.set_audio(True)
        widget.set_audio(False)
        widget.dispatch("audioMuteStatusChanged", {"muted": True})
        widget.set_audio(False)

        assert sent == [{"command": "toggleAudio"}]

    def test_dispatch_reaches_bridge(self):
        widget = calls.JitsiWidget(lambda command: None)
        bridge = calls.CallBridge(widget)
        bridge.start("Alice", url="https://meet.jit.si/room-1")

        widget.dispatch("videoMuteStatusChanged", {"muted": True})

        assert bridge.state.camera_on is False

    def test_script_failure(self):
        widget = calls.JitsiWidget(lambda command: None)

        with pytest.raises(calls.WidgetLoadError):
            widget.dispatch("scriptLoadFailed", {"reason": "offline"})


class TestInvitationRegistry:
    """Test invitation expiry."""

    def test_expiry_and_prune(self):
        registry = calls.InvitationRegistry()
        invitation = registry.create("https://meet.jit.si/r", "c1", "u1", ["u2"], ring_seconds=30)

        assert not invitation.expired()
        assert invitation.expired(utcnow() + timedelta(seconds=31))
        assert registry.prune(utcnow() + timedelta(seconds=31)) == 1
        assert registry.get(invitation.invite_id) is None


class TestCallRoutes:
    """Test starting calls and answering invitations over HTTP and the feed."""

    def test_invite_delivered_to_subscribed_peer(self, client, alice, bob, direct_chat, realtime_url):
        with client.websocket_connect(realtime_url(bob)) as ws:
            ws.send_json({"type": "subscribe", "channel": f"calls:{bob['user_id']}"})
            assert ws.receive_json()["type"] == "subscribed"

            response = client.post(f"/conversations/{direct_chat['id']}/calls", headers=alice["headers"])

            assert response.status_code == 201
            data = response.json()
            assert data["delivered_to"] == [bob["user_id"]]
            assert data["missed"] == []
            assert data["message"]["message_type"] == "call"
            assert data["message"]["content"] == f"Video call started: {data['room_url']}"

            frame = ws.receive_json()
            assert frame["event"] == "BROADCAST"
            assert frame["name"] == "call_invite"
            assert frame["payload"]["room_url"] == data["room_url"]
            assert frame["payload"]["caller_id"] == alice["user_id"]

    def test_offline_peer_reported_missed(self, client, alice, bob, direct_chat):
        response = client.post(f"/conversations/{direct_chat['id']}/calls", headers=alice["headers"])

        data = response.json()
        assert data["delivered_to"] == []
        assert data["missed"] == [bob["user_id"]]

        # The call notice stays in the conversation for later
        messages = client.get(f"/conversations/{direct_chat['id']}/messages", headers=bob["headers"]).json()
        assert [m["message_type"] for m in messages] == ["call"]

    def test_outsider_cannot_start_call(self, client, carol, direct_chat):
        response = client.post(f"/conversations/{direct_chat['id']}/calls", headers=carol["headers"])

        assert response.status_code == 404

    def test_accept_notifies_caller(self, client, alice, bob, direct_chat, realtime_url):
        invite = client.post(f"/conversations/{direct_chat['id']}/calls", headers=alice["headers"]).json()

        with client.websocket_connect(realtime_url(alice)) as ws:
            ws.send_json({"type": "subscribe", "channel": f"calls:{alice['user_id']}"})
            ws.receive_json()

            response = client.post(f"/calls/{invite['invite_id']}/respond", json={"accept": True}, headers=bob["headers"])

            assert response.status_code == 200
            assert response.json()["room_url"] == invite["room_url"]
            frame = ws.receive_json()
            assert frame["name"] == "call_response"
            assert frame["payload"] == {"invite_id": invite["invite_id"], "user_id": bob["user_id"], "accepted": True}

    def test_decline(self, client, alice, bob, direct_chat):
        invite = client.post(f"/conversations/{direct_chat['id']}/calls", headers=alice["headers"]).json()

        response = client.post(f"/calls/{invite['invite_id']}/respond", json={"accept": False}, headers=bob["headers"])

        assert response.json() == {"invite_id": invite["invite_id"], "accepted": False, "room_url": None}

    def test_only_callees_respond(self, client, alice, direct_chat):
        invite = client.post(f"/conversations/{direct_chat['id']}/calls", headers=alice["headers"]).json()

        response = client.post(f"/calls/{invite['invite_id']}/respond", json={"accept": True}, headers=alice["headers"])

        assert response.status_code == 403

    def test_expired_invitation(self, client, alice, bob, direct_chat):
        invite = client.post(f"/conversations/{direct_chat['id']}/calls", headers=alice["headers"]).json()
        calls.invitations.get(invite["invite_id"]).expires_at = "2000-01-01T00:00:00.000000Z"

        response = client.post(f"/calls/{invite['invite_id']}/respond", json={"accept": True}, headers=bob["headers"])

        assert response.status_code == 410

    def test_unknown_invitation(self, client, bob):
        response = client.post("/calls/missing/respond", json={"accept": True}, headers=bob["headers"])

        assert response.status_code == 404

"""
Client-side chat session.

ChatSession talks to the HTTP API through an httpx.Client (FastAPI's
TestClient is one) and to the realtime feed through any object with
send_json()/receive_json() (a Starlette WebSocketTestSession, or a thin
wrapper over a websocket client).

The message list is keyed by message id: the same row can arrive twice,
once as the direct response to our own insert and once from the feed, and is
kept only once. A full reload sorts by creation time.
"""

import logging
from typing import Any, Iterable, Optional, Protocol

import httpx

from chatapp.buckets import UploadRejected, validate_image

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """A backend call was rejected. Show `detail` to the user; nothing is retried."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class FeedTransport(Protocol):
    def send_json(self, data: Any) -> None: ...

    def receive_json(self) -> Any: ...


class MessageList:
    """Messages of the selected conversation, unique by id."""

    def __init__(self):
        self._by_id: dict[str, dict[str, Any]] = {}
        self._order: list[str] = []

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._by_id

    def add(self, message: dict[str, Any]) -> bool:
        """Append in arrival order. Returns False for an id already present."""
        message_id = message["id"]
        if message_id in self._by_id:
            existing = self._by_id[message_id]
            if existing.get("sender_profile") is None and message.get("sender_profile") is not None:
                existing["sender_profile"] = message["sender_profile"]
            return False
        self._by_id[message_id] = message
        self._order.append(message_id)
        return True

    def replace_all(self, messages: Iterable[dict[str, Any]]) -> None:
        self._by_id = {}
        self._order = []
        for message in sorted(messages, key=lambda m: (m["created_at"], m["id"])):
            self.add(message)

    def clear(self) -> None:
        self.replace_all([])

    def items(self) -> list[dict[str, Any]]:
        return [self._by_id[message_id] for message_id in self._order]


class ConversationSubscription:
    """
    The feed subscription for one selected conversation. Opening waits for the
    server's acknowledgement; closing always unsubscribes.
    """

    def __init__(self, transport: FeedTransport, conversation_id: str, on_event=None):
        self.transport = transport
        self.conversation_id = conversation_id
        self.channel = f"messages:{conversation_id}"
        self.active = False
        self._on_event = on_event

    def open(self) -> "ConversationSubscription":
        self.transport.send_json({"type": "subscribe", "channel": self.channel})
        while True:
            frame = self.transport.receive_json()
            if frame.get("type") == "subscribed" and frame.get("channel") == self.channel:
                break
            if frame.get("type") == "error" and frame.get("channel") == self.channel:
                raise ChatError(403, frame.get("detail", "subscription denied"))
            # Events for other channels that were already in flight
            if frame.get("type") == "event" and self._on_event is not None:
                self._on_event(frame)
        self.active = True
        logger.debug(f"Subscribed to {self.channel}")
        return self

    def close(self) -> None:
        if not self.active:
            return
        self.active = False
        self.transport.send_json({"type": "unsubscribe", "channel": self.channel})
        logger.debug(f"Unsubscribed from {self.channel}")

    def __enter__(self) -> "ConversationSubscription":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ChatSession:
    """
    One signed-in user's view: the selected conversation, its messages and
    the profile cache used to label senders.
    """

    def __init__(self, http: httpx.Client, access_token: str, api_key: str, feed: Optional[FeedTransport] = None):
        self.http = http
        self.headers = {"apikey": api_key, "Authorization": f"Bearer {access_token}"}
        self.feed = feed
        self.messages = MessageList()
        self.conversation_id: Optional[str] = None
        self.subscription: Optional[ConversationSubscription] = None
        self._profiles: dict[str, dict[str, Any]] = {}

    def _request(self, method: str, url: str, **kwargs) -> Any:
        response = self.http.request(method, url, headers=self.headers, **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            logger.warning(f"{method} {url} failed: {response.status_code} {detail}")
            raise ChatError(response.status_code, str(detail))
        if response.status_code == 204:
            return None
        return response.json()

    def conversations(self) -> list[dict[str, Any]]:
        conversations = self._request("GET", "/conversations")
        for conversation in conversations:
            for profile in conversation.get("participants", []):
                self._profiles[profile["user_id"]] = profile
        return conversations

    def select_conversation(self, conversation_id: str) -> None:
        """Switch conversations: tear down the old subscription, then subscribe and reload."""
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None
        self.conversation_id = conversation_id
        if self.feed is not None:
            self.subscription = ConversationSubscription(self.feed, conversation_id, self.handle_event).open()
        self.reload()

    def reload(self) -> None:
        if self.conversation_id is None:
            self.messages.clear()
            return
        self.messages.replace_all(self._request("GET", f"/conversations/{self.conversation_id}/messages"))

    def send_text(self, content: str) -> dict[str, Any]:
        if self.conversation_id is None:
            raise ChatError(400, "no conversation selected")
        message = self._request(
            "POST", f"/conversations/{self.conversation_id}/messages", json={"content": content}
        )
        self.messages.add(message)
        return message

    def send_image(self, filename: str, data: bytes, content_type: str) -> dict[str, Any]:
        """Upload an image message. Type and size are checked before anything is sent."""
        if self.conversation_id is None:
            raise ChatError(400, "no conversation selected")
        try:
            validate_image(content_type, len(data))
        except UploadRejected as e:
            logger.info(f"Image {filename} rejected locally: {e.detail}")
            raise ChatError(e.status_code, e.detail) from e
        message = self._request(
            "POST",
            f"/conversations/{self.conversation_id}/images",
            files={"file": (filename, data, content_type)},
        )
        self.messages.add(message)
        return message

    def sender_profile(self, user_id: str) -> Optional[dict[str, Any]]:
        if user_id not in self._profiles:
            try:
                self._profiles[user_id] = self._request("GET", f"/profiles/{user_id}")
            except ChatError:
                return None
        profile = self._profiles[user_id]
        return {"display_name": profile.get("display_name"), "avatar_url": profile.get("avatar_url")}

    def handle_event(self, frame: dict[str, Any]) -> bool:
        """
        Apply a feed frame. Returns True when it added a new message to the
        selected conversation.
        """
        if frame.get("type") != "event" or frame.get("table") != "messages" or frame.get("event") != "INSERT":
            return False
        record = dict(frame.get("record") or {})
        if record.get("conversation_id") != self.conversation_id:
            return False
        if record.get("sender_profile") is None:
            record["sender_profile"] = self.sender_profile(record["sender_id"])
        return self.messages.add(record)

    def poll_feed(self) -> dict[str, Any]:
        """Block for the next feed frame and apply it."""
        if self.feed is None:
            raise ChatError(400, "no realtime feed attached")
        frame = self.feed.receive_json()
        self.handle_event(frame)
        return frame

    def online_user_ids(self) -> set[str]:
        return set(self._request("GET", "/presence/online")["user_ids"])

    def close(self) -> None:
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None
        self.conversation_id = None
        self.messages.clear()

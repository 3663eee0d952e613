"""
Realtime change feed over WebSocket.

Clients connect to /realtime?token=...&apikey=... and exchange JSON frames:

    -> {"type": "subscribe", "channel": "messages:<conversation_id>"}
    <- {"type": "subscribed", "channel": "messages:<conversation_id>"}
    <- {"type": "event", "channel": ..., "event": "INSERT", "table": "messages", "record": {...}}

Channels:
- messages:<conversation_id>  message inserts, participants only
- participants:<user_id>      participant rows naming that user, own channel only
- presence                    profile last_seen updates
- calls:<user_id>             call invitation broadcasts, own channel only

Every frame for a connection goes through one FIFO queue, so a pong is never
sent ahead of an event that was published before the ping arrived.
The queue is bounded (REALTIME_QUEUE_SIZE); a connection that stops reading
is unsubscribed from everything and closed with 1013.
"""

import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from sqlalchemy.orm import Session

from chatapp import policies, repository
from chatapp.config import settings
from chatapp.metrics import realtime_connections, record_realtime_event
from chatapp.storage import SessionLocal
from chatapp.utils import new_id, verify_api_key

logger = logging.getLogger(__name__)

PRESENCE_CHANNEL = "presence"

router = APIRouter()


def messages_channel(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


def participants_channel(user_id: str) -> str:
    return f"participants:{user_id}"


def calls_channel(user_id: str) -> str:
    return f"calls:{user_id}"


class FeedConnection:
    """One live WebSocket session and the channels it listens to."""

    def __init__(self, user_id: str, queue_size: Optional[int] = None):
        self.id = new_id()
        self.user_id = user_id
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=settings.REALTIME_QUEUE_SIZE if queue_size is None else queue_size
        )
        self.channels: set[str] = set()
        self.overflowed = False

    def send(self, frame: dict[str, Any]) -> bool:
        """Queue a frame for the writer. Returns False once the buffer is full."""
        if self.overflowed:
            return False
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.overflowed = True
            logger.warning(f"Feed connection {self.id} is not reading, buffer of {self.queue.maxsize} full")
            return False
        return True


class ChangeFeed:
    """Channel registry and fan-out of row changes and broadcasts."""

    def __init__(self):
        self._subscribers: dict[str, set[FeedConnection]] = {}
        self._connections: dict[str, FeedConnection] = {}

    def connect(self, user_id: str, queue_size: Optional[int] = None) -> FeedConnection:
        connection = FeedConnection(user_id, queue_size)
        self._connections[connection.id] = connection
        realtime_connections.inc()
        logger.info(f"Feed connection opened: {connection.id} for {user_id}")
        return connection

    def disconnect(self, connection: FeedConnection) -> None:
        for channel in list(connection.channels):
            self.unsubscribe(connection, channel)
        if self._connections.pop(connection.id, None) is not None:
            realtime_connections.dec()
        logger.info(f"Feed connection closed: {connection.id}")

    def subscribe(self, connection: FeedConnection, channel: str) -> None:
        self._subscribers.setdefault(channel, set()).add(connection)
        connection.channels.add(channel)
        logger.debug(f"{connection.id} subscribed to {channel}")

    def unsubscribe(self, connection: FeedConnection, channel: str) -> None:
        subscribers = self._subscribers.get(channel)
        if subscribers is not None:
            subscribers.discard(connection)
            if not subscribers:
                del self._subscribers[channel]
        connection.channels.discard(channel)

    def has_subscribers(self, channel: str) -> bool:
        return bool(self._subscribers.get(channel))

    def _fan_out(self, channel: str, frame: dict[str, Any]) -> int:
        delivered = 0
        for connection in list(self._subscribers.get(channel, ())):
            if connection.send(frame):
                delivered += 1
            else:
                # Stalled reader: stop buffering for it, the writer closes the socket
                self.disconnect(connection)
        return delivered

    def publish(self, channel: str, event: str, table: str, record: dict[str, Any]) -> int:
        """Push a row change to every subscriber of `channel`. Returns the number of receivers."""
        delivered = self._fan_out(
            channel,
            {"type": "event", "channel": channel, "event": event, "table": table, "record": record},
        )
        record_realtime_event(table)
        logger.debug(f"Published {event} on {channel} to {delivered} subscriber(s)")
        return delivered

    def broadcast(self, channel: str, name: str, payload: dict[str, Any]) -> int:
        """Push a transient event that is not tied to a table row."""
        delivered = self._fan_out(
            channel,
            {"type": "event", "channel": channel, "event": "BROADCAST", "name": name, "payload": payload},
        )
        record_realtime_event("broadcast")
        logger.debug(f"Broadcast {name} on {channel} to {delivered} subscriber(s)")
        return delivered


# Process-wide feed instance
feed = ChangeFeed()


def authorize_channel(db: Session, user_id: str, channel: str) -> None:
    """
    Apply the SELECT policy of the table behind `channel`.

    Raises:
        PolicyViolation: caller may not read the rows this channel carries
        ValueError: unknown channel name
    """
    if channel == PRESENCE_CHANNEL:
        return
    kind, _, key = channel.partition(":")
    if not key:
        raise ValueError(f"unknown channel '{channel}'")
    if kind == "messages":
        if not policies.is_conversation_participant(db, key, user_id):
            raise policies.PolicyViolation("messages", "SELECT", "not a participant of this conversation")
        return
    if kind in ("participants", "calls"):
        if key != user_id:
            raise policies.PolicyViolation(kind, "SELECT", "can only subscribe to your own channel")
        return
    raise ValueError(f"unknown channel '{channel}'")


def _handle_frame(connection: FeedConnection, frame: Any) -> None:
    if not isinstance(frame, dict):
        connection.send({"type": "error", "detail": "frames must be JSON objects"})
        return

    frame_type = frame.get("type")
    channel = frame.get("channel")

    if frame_type == "ping":
        connection.send({"type": "pong"})
    elif frame_type == "subscribe" and isinstance(channel, str):
        try:
            with SessionLocal() as db:
                authorize_channel(db, connection.user_id, channel)
        except policies.PolicyViolation as e:
            logger.warning(f"Subscription denied: {connection.user_id} -> {channel}: {e.detail}")
            connection.send({"type": "error", "channel": channel, "detail": e.detail})
            return
        except ValueError as e:
            connection.send({"type": "error", "channel": channel, "detail": str(e)})
            return
        feed.subscribe(connection, channel)
        connection.send({"type": "subscribed", "channel": channel})
    elif frame_type == "unsubscribe" and isinstance(channel, str):
        feed.unsubscribe(connection, channel)
        connection.send({"type": "unsubscribed", "channel": channel})
    else:
        connection.send({"type": "error", "detail": f"unsupported frame type '{frame_type}'"})


async def _pump(websocket: WebSocket, connection: FeedConnection) -> None:
    try:
        while True:
            frame = await connection.queue.get()
            await websocket.send_json(frame)
            if connection.overflowed and connection.queue.empty():
                logger.warning(f"Closing stalled feed connection {connection.id}")
                await websocket.close(code=1013)
                return
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug(f"Feed writer stopped for {connection.id}: {e!r}")


def _resolve_identity(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    with SessionLocal() as db:
        return repository.resolve_token(db, token)


@router.websocket("/realtime")
async def realtime(websocket: WebSocket, token: Optional[str] = None, apikey: Optional[str] = None):
    if not verify_api_key(apikey, settings.PUBLIC_API_KEY):
        logger.warning("Realtime connection rejected: invalid api key")
        await websocket.close(code=4401)
        return
    user_id = _resolve_identity(token)
    if user_id is None:
        logger.warning("Realtime connection rejected: invalid token")
        await websocket.close(code=4401)
        return

    await websocket.accept()
    connection = feed.connect(user_id)
    writer = asyncio.create_task(_pump(websocket, connection))
    stalled = False
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                connection.send({"type": "error", "detail": "invalid JSON"})
                continue
            _handle_frame(connection, frame)
            if connection.overflowed:
                stalled = True
                break
    except WebSocketDisconnect:
        logger.info(f"Realtime client disconnected: {user_id}")
    finally:
        feed.disconnect(connection)
        writer.cancel()

    if stalled and websocket.application_state == WebSocketState.CONNECTED:
        await websocket.close(code=1013)

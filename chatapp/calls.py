"""
Video calls.

Media, signalling and NAT traversal all live in the embedded Jitsi Meet
widget. This module only:

- mints room names and URLs (chatapp-<epoch ms>-<9 base36 chars>)
- wraps the widget behind CallWidget {join, leave, set_audio, set_video, on}
  and keeps UI state in CallBridge
- tracks call invitations broadcast to callees' calls:<user_id> channels

Missed calls: an invitation is broadcast once and never queued. Callees with
no live calls: subscription are reported as missed, every invitation expires
after CALL_RING_SECONDS, and the `call` message written to the conversation
is the durable record an offline callee sees on next load.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from chatapp.config import settings
from chatapp.utils import new_id, parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

ROOM_PREFIX = "chatapp"
ROOM_SUFFIX_LENGTH = 9
_BASE36 = string.digits + string.ascii_lowercase

WIDGET_EVENTS = (
    "participantJoined",
    "participantLeft",
    "videoConferenceJoined",
    "videoConferenceLeft",
    "audioMuteStatusChanged",
    "videoMuteStatusChanged",
    "readyToClose",
)


# =============================================================================
# Rooms
# =============================================================================

def generate_room_name() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(ROOM_SUFFIX_LENGTH))
    return f"{ROOM_PREFIX}-{int(time.time() * 1000)}-{suffix}"


def room_url(room_name: str, base_url: Optional[str] = None) -> str:
    return f"{(base_url or settings.VIDEO_BASE_URL).rstrip('/')}/{room_name}"


def room_name_from_url(url: str) -> str:
    return url.rstrip("/").rsplit("/", 1)[-1]


def call_notice(url: str) -> str:
    return f"Video call started: {url}"


# =============================================================================
# Widget capability interface
# =============================================================================

class WidgetLoadError(Exception):
    """The external widget (script or iframe) could not be loaded."""


class CallWidget(Protocol):
    def join(self, room_name: str, display_name: str) -> None: ...

    def leave(self) -> None: ...

    def set_audio(self, enabled: bool) -> None: ...

    def set_video(self, enabled: bool) -> None: ...

    def on(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None: ...


class JitsiWidget:
    """
    Adapter for the Jitsi Meet external API running in the page that hosts
    the iframe. Commands are forwarded through `send` (e.g. a WebSocket to
    that page); events the page reports back enter through `dispatch`.
    """

    def __init__(self, send: Callable[[dict[str, Any]], None], domain: str = "meet.jit.si"):
        self._send = send
        self.domain = domain
        self._handlers: dict[str, list[Callable[[dict[str, Any]], None]]] = {}
        self.audio_enabled = True
        self.video_enabled = True

    def embed_options(self, room_name: str, display_name: str) -> dict[str, Any]:
        return {
            "roomName": room_name,
            "width": "100%",
            "height": 400,
            "configOverwrite": {
                "startWithAudioMuted": False,
                "startWithVideoMuted": False,
                "prejoinPageEnabled": False,
                "enableWelcomePage": False,
                "disableDeepLinking": True,
            },
            "interfaceConfigOverwrite": {
                "TOOLBAR_BUTTONS": ["microphone", "camera", "hangup", "chat", "filmstrip", "tileview"],
                "SHOW_JITSI_WATERMARK": False,
                "SHOW_WATERMARK_FOR_GUESTS": False,
                "SHOW_BRAND_WATERMARK": False,
                "SHOW_POWERED_BY": False,
                "SETTINGS_SECTIONS": ["devices"],
                "DISABLE_JOIN_LEAVE_NOTIFICATIONS": True,
            },
            "userInfo": {"displayName": display_name},
        }

    def join(self, room_name: str, display_name: str) -> None:
        self._send({"command": "init", "domain": self.domain, "options": self.embed_options(room_name, display_name)})

    def leave(self) -> None:
        self._send({"command": "dispose"})

    # Jitsi only exposes toggles, so only send one when the state differs
    def set_audio(self, enabled: bool) -> None:
        if enabled != self.audio_enabled:
            self._send({"command": "toggleAudio"})

    def set_video(self, enabled: bool) -> None:
        if enabled != self.video_enabled:
            self._send({"command": "toggleVideo"})

    def on(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def dispatch(self, event: str, payload: Optional[dict[str, Any]] = None) -> None:
        """Deliver an event reported by the page hosting the widget."""
        payload = payload or {}
        if event == "scriptLoadFailed":
            raise WidgetLoadError(payload.get("reason", "video widget failed to load"))
        if event == "audioMuteStatusChanged":
            self.audio_enabled = not payload.get("muted", False)
        elif event == "videoMuteStatusChanged":
            self.video_enabled = not payload.get("muted", False)
        for handler in self._handlers.get(event, []):
            handler(payload)


# =============================================================================
# Bridge
# =============================================================================

@dataclass
class CallState:
    room_url: Optional[str] = None
    joined: bool = False
    mic_on: bool = True
    camera_on: bool = True
    participants: list[dict[str, Any]] = field(default_factory=list)


class CallBridge:
    """
    Turns UI intents into widget commands and widget events into CallState.

    `notify(title, description)` surfaces user-facing messages; `on_close`
    runs when the conference ends from either side.
    """

    def __init__(
        self,
        widget: CallWidget,
        notify: Optional[Callable[[str, str], None]] = None,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.widget = widget
        self.state = CallState()
        self._notify = notify or (lambda title, description: None)
        self._on_close = on_close or (lambda: None)

        widget.on("participantJoined", self._participant_joined)
        widget.on("participantLeft", self._participant_left)
        widget.on("videoConferenceJoined", self._conference_joined)
        widget.on("videoConferenceLeft", self._conference_left)
        widget.on("readyToClose", self._conference_left)
        widget.on("audioMuteStatusChanged", self._audio_changed)
        widget.on("videoMuteStatusChanged", self._video_changed)

    def start(self, display_name: str, url: Optional[str] = None) -> str:
        """
        Join `url`, or a freshly generated room when no URL is given.

        Returns:
            The room URL, to be shared with the other participants
        """
        url = url or room_url(generate_room_name())
        self.state = CallState(room_url=url)
        try:
            self.widget.join(room_name_from_url(url), display_name)
        except WidgetLoadError as e:
            logger.error(f"Video widget failed to load: {e}")
            self.state = CallState()
            self._notify("Error", "Failed to load video call. Please check your internet connection.")
            raise
        logger.info(f"Joining video room {url}")
        return url

    def toggle_camera(self) -> None:
        if self.state.room_url:
            self.widget.set_video(not self.state.camera_on)

    def toggle_mic(self) -> None:
        if self.state.room_url:
            self.widget.set_audio(not self.state.mic_on)

    def leave(self) -> None:
        if self.state.room_url:
            self.widget.leave()
        self.state = CallState()
        self._on_close()

    def _participant_joined(self, payload: dict[str, Any]) -> None:
        self.state.participants.append(payload)

    def _participant_left(self, payload: dict[str, Any]) -> None:
        self.state.participants = [p for p in self.state.participants if p.get("id") != payload.get("id")]

    def _conference_joined(self, payload: dict[str, Any]) -> None:
        self.state.joined = True
        self._notify("Call Connected", "Video call connected successfully!")

    def _conference_left(self, payload: dict[str, Any]) -> None:
        self.state = CallState()
        self._on_close()

    def _audio_changed(self, payload: dict[str, Any]) -> None:
        self.state.mic_on = not payload.get("muted", False)

    def _video_changed(self, payload: dict[str, Any]) -> None:
        self.state.camera_on = not payload.get("muted", False)


# =============================================================================
# Invitations
# =============================================================================

@dataclass
class CallInvitation:
    invite_id: str
    room_url: str
    conversation_id: str
    caller_id: str
    callee_ids: list[str]
    expires_at: str
    responses: dict[str, bool] = field(default_factory=dict)

    def expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= parse_iso(self.expires_at)

    def payload(self) -> dict[str, Any]:
        return {
            "invite_id": self.invite_id,
            "room_url": self.room_url,
            "conversation_id": self.conversation_id,
            "caller_id": self.caller_id,
            "expires_at": self.expires_at,
        }


class InvitationRegistry:
    """In-memory invitations, pruned once they stop ringing."""

    def __init__(self):
        self._invitations: dict[str, CallInvitation] = {}

    def create(
        self,
        room_url: str,
        conversation_id: str,
        caller_id: str,
        callee_ids: list[str],
        ring_seconds: Optional[int] = None,
    ) -> CallInvitation:
        self.prune()
        ring = settings.CALL_RING_SECONDS if ring_seconds is None else ring_seconds
        invitation = CallInvitation(
            invite_id=new_id(),
            room_url=room_url,
            conversation_id=conversation_id,
            caller_id=caller_id,
            callee_ids=list(callee_ids),
            expires_at=to_iso(utcnow() + timedelta(seconds=ring)),
        )
        self._invitations[invitation.invite_id] = invitation
        return invitation

    def get(self, invite_id: str) -> Optional[CallInvitation]:
        return self._invitations.get(invite_id)

    def prune(self, now: Optional[datetime] = None) -> int:
        stale = [key for key, inv in self._invitations.items() if inv.expired(now)]
        for key in stale:
            del self._invitations[key]
        if stale:
            logger.debug(f"Pruned {len(stale)} expired call invitation(s)")
        return len(stale)


invitations = InvitationRegistry()

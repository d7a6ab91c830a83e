"""
Media transport boundary.

The conferencing SDK is an opaque signalling + media channel. Coordinators talk
to it through ``ChannelSession``, which enforces a single outstanding join per
client and records what the SDK reports through its delegate callbacks.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional, Protocol, Set

from services.errors import TransportError

logger = logging.getLogger(__name__)


class ChannelRole(str, Enum):
    BROADCASTER = "broadcaster"
    AUDIENCE = "audience"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class TransportDelegate(Protocol):
    def remote_user_joined(self, uid: int) -> None: ...

    def remote_user_left(self, uid: int) -> None: ...

    def error(self, code: int) -> None: ...

    def connection_state_changed(self, state: ConnectionState) -> None: ...


class MediaTransport(Protocol):
    def set_delegate(self, delegate: TransportDelegate) -> None: ...

    async def join_channel(self, token: str, role: ChannelRole) -> None: ...

    async def leave_channel(self) -> None: ...

    async def switch_camera(self) -> None: ...

    async def mute_local_audio(self, muted: bool) -> None: ...

    async def mute_remote_audio(self, muted: bool) -> None: ...


_KNOWN_ERRORS = {
    17: "Join channel request was rejected",
    18: "Leave channel request was rejected",
    101: "Invalid App ID",
    102: "Invalid channel ID",
    103: "No server resources available",
    109: "Token has expired",
    110: "Invalid token",
    113: "Not in channel",
}


def describe_transport_error(code: int) -> str:
    if code in _KNOWN_ERRORS:
        return _KNOWN_ERRORS[code]
    if 1001 <= code <= 1009:
        family = "Channel join error"
    elif 1010 <= code <= 1019:
        family = "Channel connection error"
    elif 1020 <= code <= 1029:
        family = "Video error"
    elif 1030 <= code <= 1039:
        family = "Audio error"
    else:
        family = "General error"
    return f"{family} (Code: {code})"


class ChannelSession:
    """Tracks one client's membership in at most one transport channel."""

    def __init__(self, transport: MediaTransport):
        self._transport = transport
        self._lock = asyncio.Lock()
        self.channel: Optional[str] = None
        self.role: Optional[ChannelRole] = None
        self.remote_users: Set[int] = set()
        self.connection_state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.local_audio_muted = False
        self.remote_audio_muted = False
        transport.set_delegate(self)

    @property
    def in_channel(self) -> bool:
        return self.channel is not None

    async def join(self, token: str, role: ChannelRole) -> None:
        async with self._lock:
            if self.channel == token and self.role == role:
                return
            if self.channel is not None:
                raise TransportError(f"Already in channel {self.channel}; leave it before joining {token}.")
            self.connection_state = ConnectionState.CONNECTING
            try:
                await self._transport.join_channel(token, role)
            except TransportError:
                self.connection_state = ConnectionState.FAILED
                raise
            except Exception as exc:
                self.connection_state = ConnectionState.FAILED
                raise TransportError(f"Failed to join channel {token}: {exc}") from exc
            self.channel = token
            self.role = role
            logger.info("Joined channel %s as %s", token, role.value)

    async def leave(self) -> None:
        async with self._lock:
            if self.channel is None:
                return
            channel = self.channel
            try:
                await self._transport.leave_channel()
            finally:
                self.channel = None
                self.role = None
                self.remote_users.clear()
                self.connection_state = ConnectionState.DISCONNECTED
            logger.info("Left channel %s", channel)

    async def switch_camera(self) -> None:
        if self.role != ChannelRole.BROADCASTER:
            return
        await self._transport.switch_camera()

    async def toggle_local_audio(self) -> bool:
        self.local_audio_muted = not self.local_audio_muted
        await self._transport.mute_local_audio(self.local_audio_muted)
        return self.local_audio_muted

    async def toggle_remote_audio(self) -> bool:
        self.remote_audio_muted = not self.remote_audio_muted
        await self._transport.mute_remote_audio(self.remote_audio_muted)
        return self.remote_audio_muted

    # Delegate callbacks

    def remote_user_joined(self, uid: int) -> None:
        self.remote_users.add(uid)

    def remote_user_left(self, uid: int) -> None:
        self.remote_users.discard(uid)

    def error(self, code: int) -> None:
        self.last_error = describe_transport_error(code)
        logger.warning("Transport error on %s: %s", self.channel or "no channel", self.last_error)

    def connection_state_changed(self, state: ConnectionState) -> None:
        self.connection_state = state

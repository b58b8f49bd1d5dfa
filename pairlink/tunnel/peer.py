# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2025 Pairlink
#
# This file is part of Pairlink.
#
# Pairlink is free software: you can redistribute it and/or modify it under
# the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# Pairlink is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranty of MERCHANTABILITY
# or FITNESS FOR A PARTICULAR PURPOSE. See the GNU Affero General
# Public License for more details.

"""Peer-side entry point: join a room and keep a DataChannel to the other member.

PeerLink ties together the signaling client, the negotiator and the reliable
layer. Roles pushed by the relay decide who opens the channel and offers; any
change of role or remote peer tears the connection down and starts over.
"""

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..protocol import MessageType, Role
from .config import TunnelSettings
from .config import settings as default_settings
from .errors import RoomFullError, SignalingError
from .negotiation import Negotiator
from .reliable import DeliveryFailure, MessageHandler, ReliableChannel
from .session import SessionTracker
from .signaling_client import SignalingClient
from .transport import AiortcTransport, PeerTransport

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Peer link states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class PeerLink:
    """Two-peer room member with a self-healing reliable DataChannel.

    Example:
        link = PeerLink("ws://localhost:3000/ws")
        link.on_reliable(lambda message_type, payload: print(message_type, payload))
        role = await link.connect("lobby-42")
        await link.send_reliable("move", {"x": 1, "y": 2})
    """

    def __init__(
        self,
        signal_url: str | None = None,
        settings: TunnelSettings | None = None,
        peer_id: str | None = None,
        transport_factory: Callable[[list[dict[str, Any]]], PeerTransport] | None = None,
        signaling: SignalingClient | None = None,
    ) -> None:
        """Initialize the peer link.

        Args:
            signal_url: Relay WebSocket URL (settings.signal_url if omitted)
            settings: Tunnel settings (module defaults if omitted)
            peer_id: Stable local identity; random if omitted
            transport_factory: Builds a peer connection from ICE servers
                (aiortc by default)
            signaling: Signaling client to use instead of a new one
        """
        self.settings = settings or default_settings
        self.signal_url = signal_url or self.settings.signal_url
        self.session = SessionTracker(peer_id)

        # ICE servers configuration (preserved across resets)
        self.ice_servers: list[dict[str, Any]] = list(self.settings.ice_servers)
        self._transport_factory = transport_factory or AiortcTransport

        self.signaling = signaling or SignalingClient(self.signal_url, self.settings)
        self.signaling.on_message = self._process_signaling_message
        self.signaling.on_reconnected = self._on_signaling_reconnected

        self.negotiator = Negotiator(
            self.session,
            lambda: self._transport_factory(self.ice_servers),
            self._send_signal,
            self.settings,
        )
        self.negotiator.on_transport = self._on_transport
        self.negotiator.on_remote_reset = self._on_remote_reset
        self.negotiator.on_restart_exhausted = self._on_restart_exhausted
        self.negotiator.on_restart_unsupported = self._on_restart_unsupported
        self.negotiator.on_connection_state_change = self._on_connection_state_change

        self.reliable = ReliableChannel(self.session, self.settings)
        self.reliable.on_open = self._on_channel_open
        self.reliable.on_close = self._on_channel_close
        self.reliable.on_liveness_lost = self._on_liveness_lost
        self.data_channel: Any = None

        # Connection state
        self.state: ConnectionState = ConnectionState.DISCONNECTED

        # Callbacks
        self.on_state_change: Callable[[ConnectionState], None] | None = None
        self._channel_open_handler: Callable[[], None] | None = None
        self._channel_close_handler: Callable[[], None] | None = None

        self._joined: asyncio.Future[Role] | None = None
        self._rejoining = False

    @property
    def role(self) -> Role | None:
        return self.session.role

    @property
    def peer_id(self) -> str:
        return self.session.peer_id

    async def connect(self, room_id: str, ice_servers: list[dict[str, Any]] | None = None) -> Role:
        """Join a room and wait for the relay to assign a role.

        Connection establishment with the other member continues in the
        background; use on_channel_open to learn when the channel is usable.

        Args:
            room_id: Room to join
            ice_servers: ICE servers configuration (STUN/TURN)

        Returns:
            Role assigned by the relay

        Raises:
            SignalingError: If the relay is unreachable or never assigns a role
            RoomFullError: If the room already has two members
        """
        if ice_servers is not None:
            self.ice_servers = ice_servers

        self.session.room_id = room_id
        self._joined = asyncio.get_running_loop().create_future()
        self._set_state(ConnectionState.CONNECTING)

        try:
            await self.signaling.connect(room_id, self.session.peer_id)
            role = await asyncio.wait_for(
                asyncio.shield(self._joined), timeout=self.settings.join_timeout
            )
        except TimeoutError:
            await self.close()
            self._set_state(ConnectionState.FAILED)
            raise SignalingError(f"No role assigned for room {room_id}") from None
        except (SignalingError, RoomFullError):
            await self.close()
            self._set_state(ConnectionState.FAILED)
            raise

        logger.info(f"Joined room {room_id} as {role.value} ({self.session.peer_id})")
        return role

    async def send_reliable(self, message_type: str, payload: Any) -> list[int]:
        """Send a message that survives loss, duplication and reconnects.

        Args:
            message_type: Application message type
            payload: JSON-serialisable payload

        Returns:
            Sequence numbers used for the message
        """
        return await self.reliable.send_reliable(message_type, payload)

    def send_raw(self, message_type: str, payload: Any) -> None:
        """Send a best-effort message.

        Raises:
            ChannelNotOpenError: If the DataChannel is gone or closing
        """
        self.reliable.send_raw(message_type, payload)

    def on_reliable(self, handler: MessageHandler) -> None:
        """Register the handler for reliable messages (message_type, payload)."""
        self.reliable.on_reliable = handler

    def on_raw(self, handler: MessageHandler) -> None:
        """Register the handler for best-effort messages (message_type, payload)."""
        self.reliable.on_raw = handler

    def on_channel_open(self, handler: Callable[[], None]) -> None:
        self._channel_open_handler = handler

    def on_channel_close(self, handler: Callable[[], None]) -> None:
        self._channel_close_handler = handler

    def on_delivery_failed(self, handler: Callable[[DeliveryFailure], None]) -> None:
        """Register the handler for reliable messages that were given up on."""
        self.reliable.on_delivery_failed = handler

    async def close(self) -> None:
        """Leave the room and release every resource."""
        await self.signaling.close()
        self._close_data_channel()
        self.reliable.close()
        await self.negotiator.close()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("PeerLink closed")

    def get_state(self) -> ConnectionState:
        """Get current connection state.

        Returns:
            Current ConnectionState
        """
        return self.state

    def is_connected(self) -> bool:
        """Check if the DataChannel to the remote peer is usable.

        Returns:
            True if connected, False otherwise
        """
        return self.state == ConnectionState.CONNECTED

    def get_data_channel_state(self) -> str:
        """Get DataChannel ready state.

        Returns:
            DataChannel state string, "none" without a channel
        """
        if self.data_channel is None:
            return "none"
        return self.data_channel.readyState

    # ----------------- signaling -----------------

    async def _process_signaling_message(self, message: dict[str, Any]) -> None:
        """Process incoming relay message.

        Args:
            message: Relay message
        """
        msg_type = message.get("type")

        if msg_type == MessageType.ROLE:
            await self._handle_role(message)

        elif msg_type == MessageType.SIGNAL:
            sender = message.get("from")
            if sender is None or sender != self.session.remote_peer_id:
                logger.debug(f"Dropping signal from {sender}: not the current remote")
                return
            await self.negotiator.handle_signal(message)

        elif msg_type == MessageType.PEER_JOINED:
            joined = message.get("peer_id")
            logger.info(f"Peer joined: {joined}")
            if joined is not None and joined == self.session.remote_peer_id:
                # Same identity on a new connection: a fresh session with its own epochs
                self.session.forget_remote()

        elif msg_type == MessageType.PEER_LEFT:
            # The role update that follows resets the connection
            logger.info(f"Peer left: {message.get('peer_id')}")

        elif msg_type == MessageType.ROOM_FULL:
            error = RoomFullError(
                message.get("room_id", self.session.room_id or ""), message.get("capacity", 2)
            )
            if self._joined is not None and not self._joined.done():
                self._joined.set_exception(error)
            else:
                logger.error(str(error))
                self._set_state(ConnectionState.FAILED)

        elif msg_type == MessageType.KICKED:
            logger.warning(f"Evicted from room {message.get('room_id')}")
            self._close_data_channel()
            self.reliable.reset("kicked")
            await self.negotiator.close()
            self._set_state(ConnectionState.CLOSED)

        elif msg_type != MessageType.ERROR:
            logger.warning(f"Unknown signaling message type: {msg_type}")

    async def _handle_role(self, message: dict[str, Any]) -> None:
        """Apply a role assignment and start over if anything changed."""
        try:
            role = Role(message["role"])
        except (KeyError, ValueError):
            logger.warning(f"Ignoring malformed role message: {message.get('role')}")
            return

        changed = self.session.assign(role, list(message.get("peers") or []))
        rejoining, self._rejoining = self._rejoining, False

        if changed or rejoining or self.negotiator.transport is None:
            if changed:
                reason = f"role {role.value}, remote {self.session.remote_peer_id}"
            else:
                reason = "signaling reconnected"
            # Same role and remote after a reconnect: keep unacked messages for the new channel
            await self._reset(reason, keep_pending=not changed)

            if self.session.remote_peer_id is not None and (
                role is Role.FIRST or not changed
            ):
                await self._open_channel_and_negotiate(reason)

        if self._joined is not None and not self._joined.done():
            self._joined.set_result(role)

    def _on_signaling_reconnected(self) -> None:
        self._rejoining = True

    async def _send_signal(self, message: dict[str, Any]) -> bool:
        remote = self.session.remote_peer_id
        if remote is None:
            logger.debug(f"No remote peer, dropping {message.get('kind')}")
            return False
        return await self.signaling.send(
            {"type": MessageType.SIGNAL.value, "to": remote, **message}
        )

    # ----------------- connection lifecycle -----------------

    async def _reset(self, reason: str, keep_pending: bool) -> None:
        """Bump the epoch and rebuild the peer connection."""
        logger.info(f"Resetting peer connection ({reason})")
        self.session.bump()
        self._close_data_channel()
        if not keep_pending:
            self.reliable.reset("reset")
        await self.negotiator.rebuild()

    async def _open_channel_and_negotiate(self, reason: str) -> None:
        transport = self.negotiator.transport
        if transport is None:
            return
        self._setup_data_channel(transport.create_channel(self.settings.channel_label))
        await self.negotiator.negotiate(reason)

    def _on_transport(self, transport: PeerTransport) -> None:
        # A rebuilt connection never carries the old channel
        self._close_data_channel()
        transport.on_channel = self._setup_data_channel

    def _setup_data_channel(self, channel: Any) -> None:
        """Adopt a DataChannel, created locally or announced by the remote.

        Args:
            channel: aiortc RTCDataChannel
        """
        if self.data_channel is not None and self.data_channel is not channel:
            logger.info(f"Replacing DataChannel '{self.data_channel.label}' with '{channel.label}'")
            self._close_data_channel()
        self.data_channel = channel
        self.reliable.attach(channel)

    def _close_data_channel(self) -> None:
        if self.data_channel is None:
            return
        channel, self.data_channel = self.data_channel, None
        self.reliable.detach()
        try:
            channel.close()
        except Exception as e:
            logger.warning(f"Error closing DataChannel: {e}")

    async def _on_remote_reset(self) -> None:
        # The negotiator already rebuilt the connection; unacked messages ride on the next channel
        self._close_data_channel()

    async def _on_restart_exhausted(self) -> None:
        await self._hard_reset("restart attempts exhausted")

    async def _on_restart_unsupported(self) -> None:
        await self._hard_reset("ICE restart unsupported")

    async def _hard_reset(self, reason: str) -> None:
        """Rebuild the connection and offer again, keeping unacked messages."""
        await self._reset(reason, keep_pending=True)
        if self.session.remote_peer_id is not None:
            await self._open_channel_and_negotiate(f"hard reset: {reason}")

    async def _on_liveness_lost(self) -> None:
        await self.negotiator.restart("channel idle")

    def _on_connection_state_change(self, state: str) -> None:
        if state == "failed":
            self._set_state(ConnectionState.FAILED)

    def _on_channel_open(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        if self._channel_open_handler:
            self._channel_open_handler()

    def _on_channel_close(self) -> None:
        if self.state == ConnectionState.CONNECTED:
            self._set_state(ConnectionState.CONNECTING)
        if self._channel_close_handler:
            self._channel_close_handler()

    def _set_state(self, state: ConnectionState) -> None:
        """Update connection state and notify callback.

        Args:
            state: New connection state
        """
        if self.state != state:
            old_state = self.state
            self.state = state
            logger.info(f"State change: {old_state.value} -> {state.value}")

            if self.on_state_change:
                self.on_state_change(state)

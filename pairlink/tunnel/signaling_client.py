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

"""WebSocket client for the signaling relay.

Keeps one socket to the relay open for the lifetime of a session, re-joins the
room after every reconnect, and hands relay messages to a single callback.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import aiohttp

from ..protocol import MessageType
from .backoff import Backoff
from .config import TunnelSettings
from .config import settings as default_settings
from .errors import SignalingError

logger = logging.getLogger(__name__)


class SignalingState(str, Enum):
    """Signaling connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class SignalingClient:
    """Self-healing WebSocket connection to the signaling relay."""

    def __init__(self, signal_url: str, settings: TunnelSettings | None = None) -> None:
        """Initialize the signaling client.

        Args:
            signal_url: Relay WebSocket URL (e.g. ws://localhost:3000/ws)
            settings: Tunnel settings (module defaults if omitted)
        """
        self.signal_url = signal_url
        self.settings = settings or default_settings
        self.room_id: str | None = None
        self.peer_id: str | None = None

        # WebSocket connection
        self.ws: aiohttp.ClientWebSocketResponse | None = None
        self.ws_session: aiohttp.ClientSession | None = None

        # Connection state
        self.state: SignalingState = SignalingState.DISCONNECTED
        self.connections: int = 0

        # Callbacks
        self.on_message: Callable[[dict[str, Any]], Awaitable[None]] | None = None
        self.on_state_change: Callable[[SignalingState], None] | None = None
        self.on_reconnected: Callable[[], None] | None = None

        # Reconnection
        self.should_reconnect: bool = True
        self.backoff = Backoff(
            base_delay=self.settings.reconnect_base_delay,
            max_delay=self.settings.reconnect_max_delay,
            jitter=self.settings.reconnect_jitter,
        )

        self._connected = asyncio.Event()
        self._run_task: asyncio.Task[None] | None = None

    async def connect(self, room_id: str, peer_id: str) -> None:
        """Open the signaling socket and join a room.

        The socket is kept open in the background and re-established with
        backoff whenever it drops.

        Args:
            room_id: Room to join
            peer_id: Local peer identity

        Raises:
            SignalingError: If no connection is made within the connect timeout
        """
        self.room_id = room_id
        self.peer_id = peer_id
        self.should_reconnect = True
        self._connected.clear()

        self._run_task = asyncio.create_task(self._run())

        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self.settings.connect_timeout)
        except TimeoutError:
            await self.close()
            raise SignalingError(
                f"Could not reach signaling server {self.signal_url} "
                f"within {self.settings.connect_timeout}s"
            ) from None

    async def send(self, message: dict[str, Any]) -> bool:
        """Send a JSON message to the relay.

        Messages are not queued while disconnected; callers re-send what they
        need after the reconnect.

        Args:
            message: Message to send

        Returns:
            True if the message was written to an open socket
        """
        if self.ws is None or self.ws.closed:
            logger.warning(f"Cannot send {message.get('type')}: signaling not connected")
            return False

        try:
            await self.ws.send_json(message)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.warning(f"Failed to send {message.get('type')}: {e}")
            return False

        logger.debug(f"Sent signaling message: {message.get('type')}")
        return True

    async def close(self) -> None:
        """Leave the room, close the socket and stop reconnecting."""
        self.should_reconnect = False

        if self.ws and not self.ws.closed:
            await self.send({"type": MessageType.LEAVE.value})

        await self._close_socket()

        task, self._run_task = self._run_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._connected.clear()
        await self._set_state(SignalingState.DISCONNECTED)
        logger.info("SignalingClient disconnected")

    def get_state(self) -> SignalingState:
        """Get current connection state.

        Returns:
            Current SignalingState
        """
        return self.state

    def is_connected(self) -> bool:
        """Check if the signaling socket is open.

        Returns:
            True if connected, False otherwise
        """
        return self.state == SignalingState.CONNECTED

    async def _run(self) -> None:
        """Connect, pump messages, and reconnect with backoff until closed."""
        while self.should_reconnect:
            try:
                await self._open()
            except (aiohttp.ClientError, OSError) as e:
                logger.warning(f"Failed to connect to signaling server: {e}")
                await self._set_state(SignalingState.FAILED)
            else:
                await self._handle_messages()

            if not self.should_reconnect:
                break

            delay = self.backoff.next_delay()
            logger.info(f"Attempting signaling reconnect in {delay:.2f}s...")
            await asyncio.sleep(delay)

    async def _open(self) -> None:
        """Open a fresh socket and send the join request."""
        await self._set_state(SignalingState.CONNECTING)
        await self._close_socket()

        self.ws_session = aiohttp.ClientSession()
        try:
            self.ws = await self.ws_session.ws_connect(
                self.signal_url, heartbeat=self.settings.signaling_heartbeat
            )
        except Exception:
            await self.ws_session.close()
            self.ws_session = None
            raise

        logger.info(f"Connected to signaling server: {self.signal_url}")
        self.connections += 1
        self.backoff.reset()
        await self._set_state(SignalingState.CONNECTED)
        self._connected.set()

        if self.connections > 1 and self.on_reconnected:
            self.on_reconnected()

        await self.send(
            {"type": MessageType.JOIN.value, "room_id": self.room_id, "peer_id": self.peer_id}
        )

    async def _handle_messages(self) -> None:
        """Read relay messages until the socket closes."""
        if self.ws is None:
            return

        try:
            async for msg in self.ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("Ignoring non-JSON signaling message")
                        continue
                    if isinstance(message, dict):
                        await self._process_message(message)

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"Signaling WebSocket error: {self.ws.exception()}")
                    break

        except Exception as e:
            logger.error(f"Error handling signaling messages: {e!r}")

        self._connected.clear()
        logger.info("Signaling WebSocket closed")
        await self._set_state(SignalingState.CLOSED)

    async def _process_message(self, message: dict[str, Any]) -> None:
        """Handle terminal relay notices, then forward to the callback.

        Args:
            message: Decoded relay message
        """
        msg_type = message.get("type")

        if msg_type in (MessageType.ROOM_FULL, MessageType.KICKED):
            # Rejoining would only bounce again or evict the other member
            logger.warning(f"Signaling stopped: {msg_type} for room {message.get('room_id')}")
            self.should_reconnect = False
        elif msg_type == MessageType.ERROR:
            logger.error(f"Signaling error: {message.get('message')}")

        if self.on_message:
            try:
                await self.on_message(message)
            except Exception as e:
                logger.error(f"Error processing signaling message {msg_type}: {e}")

        if msg_type == MessageType.ROOM_FULL and self.ws and not self.ws.closed:
            await self.ws.close()

    async def _close_socket(self) -> None:
        if self.ws and not self.ws.closed:
            try:
                await self.ws.close()
            except Exception as e:
                logger.warning(f"Error closing old WebSocket: {e}")
        self.ws = None

        if self.ws_session and not self.ws_session.closed:
            try:
                await self.ws_session.close()
            except Exception as e:
                logger.warning(f"Error closing old session: {e}")
        self.ws_session = None

    async def _set_state(self, state: SignalingState) -> None:
        """Update connection state and notify callback.

        Args:
            state: New connection state
        """
        if self.state != state:
            old_state = self.state
            self.state = state
            logger.info(f"Signaling state change: {old_state.value} -> {state.value}")

            if self.on_state_change:
                self.on_state_change(state)

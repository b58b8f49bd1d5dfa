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

"""Transport capability consumed by the negotiator, and its aiortc binding.

Session descriptions travel as plain dicts ``{"type": ..., "sdp": ...}`` and
candidates as ``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}``, the
same shapes a browser peer puts on the wire.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .errors import IceRestartUnsupportedError, RollbackUnsupportedError

logger = logging.getLogger(__name__)

CandidateCallback = Callable[[dict[str, Any] | None], Awaitable[None] | None]
ChannelCallback = Callable[[Any], None]
StateCallback = Callable[[str], Awaitable[None] | None]


class PeerTransport(Protocol):
    """One peer connection, as consumed by the negotiator."""

    on_candidate: CandidateCallback | None
    on_channel: ChannelCallback | None
    on_connection_state_change: StateCallback | None

    @property
    def signaling_state(self) -> str: ...

    @property
    def connection_state(self) -> str: ...

    @property
    def local_description(self) -> dict[str, str] | None: ...

    @property
    def has_remote_description(self) -> bool: ...

    async def create_offer(self, ice_restart: bool = False) -> dict[str, str]: ...

    async def create_answer(self) -> dict[str, str]: ...

    async def set_local_description(self, description: dict[str, str]) -> None: ...

    async def set_remote_description(self, description: dict[str, str]) -> None: ...

    async def rollback(self) -> None: ...

    async def add_candidate(self, candidate: dict[str, Any]) -> None: ...

    def create_channel(self, label: str) -> Any: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[], PeerTransport]


def build_ice_servers(ice_servers: list[dict[str, Any]]) -> list[RTCIceServer]:
    """Convert STUN/TURN server dicts into aiortc RTCIceServer objects.

    Args:
        ice_servers: Entries with "urls" and optional "username"/"credential"

    Returns:
        List of RTCIceServer
    """
    return [
        RTCIceServer(urls=server["urls"])
        if "username" not in server
        else RTCIceServer(
            urls=server["urls"],
            username=server.get("username", ""),
            credential=server.get("credential", ""),
        )
        for server in ice_servers
    ]


class AiortcTransport:
    """PeerTransport backed by an aiortc RTCPeerConnection."""

    def __init__(self, ice_servers: list[dict[str, Any]]) -> None:
        """Create the peer connection and wire its events.

        Args:
            ice_servers: ICE servers configuration (STUN/TURN)
        """
        self.on_candidate: CandidateCallback | None = None
        self.on_channel: ChannelCallback | None = None
        self.on_connection_state_change: StateCallback | None = None

        config = RTCConfiguration(iceServers=build_ice_servers(ice_servers))
        self.pc = RTCPeerConnection(configuration=config)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            """Forward connection state changes."""
            logger.info(f"Connection state: {self.pc.connectionState}")
            if self.on_connection_state_change:
                result = self.on_connection_state_change(self.pc.connectionState)
                if result is not None:
                    await result

        @self.pc.on("icecandidate")
        async def on_icecandidate(candidate: RTCIceCandidate | None) -> None:
            """Forward locally gathered candidates (None marks the end)."""
            if self.on_candidate is None:
                return
            payload = None
            if candidate is not None:
                payload = {
                    "candidate": "candidate:" + candidate_to_sdp(candidate),
                    "sdpMid": candidate.sdpMid,
                    "sdpMLineIndex": candidate.sdpMLineIndex,
                }
            result = self.on_candidate(payload)
            if result is not None:
                await result

        @self.pc.on("datachannel")
        def on_datachannel(channel: RTCDataChannel) -> None:
            """Hand over a DataChannel opened by the remote peer."""
            logger.info(f"DataChannel received: {channel.label}")
            if self.on_channel:
                self.on_channel(channel)

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def local_description(self) -> dict[str, str] | None:
        description = self.pc.localDescription
        if description is None:
            return None
        return {"type": description.type, "sdp": description.sdp}

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    async def create_offer(self, ice_restart: bool = False) -> dict[str, str]:
        """Create an SDP offer.

        aiortc reuses the ICE credentials of the existing transports for every
        offer, and an ICE transport that has failed stays failed, so it cannot
        restart ICE in place.

        Raises:
            IceRestartUnsupportedError: If ice_restart is requested
        """
        if ice_restart:
            raise IceRestartUnsupportedError("aiortc cannot restart ICE on a live connection")
        offer = await self.pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> dict[str, str]:
        answer = await self.pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: dict[str, str]) -> None:
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def set_remote_description(self, description: dict[str, str]) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )
        logger.info(f"Set remote description: {description['type']}")

    async def rollback(self) -> None:
        """aiortc has no rollback; callers rebuild the connection instead.

        Raises:
            RollbackUnsupportedError: Always
        """
        raise RollbackUnsupportedError("aiortc does not support rolling back a local description")

    async def add_candidate(self, candidate: dict[str, Any]) -> None:
        """Add a remote ICE candidate.

        Args:
            candidate: ICE candidate data with 'candidate' SDP string
        """
        candidate_sdp = candidate.get("candidate") or ""
        if candidate_sdp.startswith("candidate:"):
            candidate_sdp = candidate_sdp[len("candidate:") :]
        if not candidate_sdp:
            # End-of-candidates marker
            return

        ice = candidate_from_sdp(candidate_sdp)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")

        await self.pc.addIceCandidate(ice)
        logger.debug("Added ICE candidate")

    def create_channel(self, label: str) -> RTCDataChannel:
        return self.pc.createDataChannel(label, ordered=True)

    async def close(self) -> None:
        await self.pc.close()

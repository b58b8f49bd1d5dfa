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

"""Room table for the signaling relay.

Rooms hold at most two members. A member's role is derived from its position
in the room's member list, so the list is the only state the server keeps.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from ...protocol import ROOM_CAPACITY, MessageType, Role, role_for_index
from .config import settings

logger = logging.getLogger(__name__)


class MemberSocket(Protocol):
    """Outbound channel to a room member (a FastAPI WebSocket in production)."""

    async def send_json(self, data: Any, mode: str = "text") -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class Room:
    """A signaling room with up to two members in join order."""

    def __init__(self, room_id: str) -> None:
        """Initialize room.

        Args:
            room_id: Room identifier.
        """
        self.room_id = room_id
        self.members: list[str] = []
        self.connections: dict[str, MemberSocket] = {}

    def __len__(self) -> int:
        return len(self.members)

    def is_full(self) -> bool:
        """Check whether the room is at capacity.

        Returns:
            True if no more members can be admitted.
        """
        return len(self.members) >= ROOM_CAPACITY

    def is_empty(self) -> bool:
        """Check whether the room has no members.

        Returns:
            True if the room can be deleted.
        """
        return not self.members

    def role_of(self, peer_id: str) -> Role:
        """Get the role of a member.

        Args:
            peer_id: Member identifier.

        Returns:
            Role derived from the member's join position.

        Raises:
            KeyError: If the peer is not a member.
        """
        if peer_id not in self.connections:
            raise KeyError(peer_id)
        return role_for_index(self.members.index(peer_id))

    def other_member(self, peer_id: str) -> str | None:
        """Get the member that is not peer_id, if any."""
        for member in self.members:
            if member != peer_id:
                return member
        return None


@dataclass
class JoinOutcome:
    """Result of a join attempt."""

    admitted: bool
    role: Role | None = None
    peers: list[str] | None = None
    evicted: str | None = None


class RoomManager:
    """Manages all active rooms, role assignment and signal relaying."""

    def __init__(
        self,
        room_full_policy: Literal["reject", "evict"] = "reject",
        evict_close_code: int = 4000,
    ) -> None:
        """Initialize room manager.

        Args:
            room_full_policy: "reject" refuses a third joiner with room-full,
                "evict" removes the oldest member to admit the newcomer.
            evict_close_code: WebSocket close code sent to an evicted member.
        """
        self.room_full_policy = room_full_policy
        self.evict_close_code = evict_close_code
        self._rooms: dict[str, Room] = {}
        self._lock = asyncio.Lock()

    async def join(self, room_id: str, peer_id: str, websocket: MemberSocket) -> JoinOutcome:
        """Admit a peer into a room and push roles to all members.

        Args:
            room_id: Room identifier.
            peer_id: Joining peer identity.
            websocket: Outbound channel to the joining peer.

        Returns:
            JoinOutcome describing whether the peer was admitted.
        """
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id)
                self._rooms[room_id] = room
                logger.info(f"Created new room: {room_id}")

            evicted: str | None = None

            if peer_id in room.connections:
                # Same identity rejoining: keep its position, swap the socket
                old_ws = room.connections[peer_id]
                room.connections[peer_id] = websocket
                logger.info(f"Room {room_id}: peer {peer_id} rejoined, replacing connection")
                if old_ws is not websocket:
                    await self._close_quietly(old_ws, 1000, "replaced by new connection")
                    # The other member sees the new connection as a fresh session
                    other = room.other_member(peer_id)
                    if other is not None:
                        for announcement in (MessageType.PEER_LEFT, MessageType.PEER_JOINED):
                            await self._send(
                                room.connections[other],
                                {"type": announcement.value, "peer_id": peer_id},
                            )

            elif room.is_full():
                if self.room_full_policy == "reject":
                    logger.warning(f"Room {room_id}: full, rejecting peer {peer_id}")
                    await self._send(
                        websocket,
                        {
                            "type": MessageType.ROOM_FULL.value,
                            "room_id": room_id,
                            "capacity": ROOM_CAPACITY,
                        },
                    )
                    return JoinOutcome(admitted=False, peers=list(room.members))

                evicted = room.members.pop(0)
                evicted_ws = room.connections.pop(evicted)
                logger.warning(f"Room {room_id}: full, evicting oldest peer {evicted}")
                await self._send(evicted_ws, {"type": MessageType.KICKED.value, "room_id": room_id})
                await self._close_quietly(
                    evicted_ws, self.evict_close_code, "room full, replaced"
                )
                for member in room.members:
                    await self._send(
                        room.connections[member],
                        {"type": MessageType.PEER_LEFT.value, "peer_id": evicted},
                    )

            if peer_id not in room.connections:
                room.members.append(peer_id)
                room.connections[peer_id] = websocket
                logger.info(
                    f"Room {room_id}: peer {peer_id} joined "
                    f"({len(room)}/{ROOM_CAPACITY})"
                )
                for member in room.members:
                    if member != peer_id:
                        await self._send(
                            room.connections[member],
                            {"type": MessageType.PEER_JOINED.value, "peer_id": peer_id},
                        )

            await self._broadcast_roles(room)

            return JoinOutcome(
                admitted=True,
                role=room.role_of(peer_id),
                peers=list(room.members),
                evicted=evicted,
            )

    async def leave(
        self, room_id: str, peer_id: str, websocket: MemberSocket | None = None
    ) -> Room | None:
        """Remove a peer from a room and notify the remaining member.

        Args:
            room_id: Room identifier.
            peer_id: Leaving peer identity.
            websocket: Connection that is leaving. When given, the peer is only
                removed if this is still its registered connection.

        Returns:
            The room if it still has members, otherwise None.
        """
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or peer_id not in room.connections:
                return None

            if websocket is not None and room.connections[peer_id] is not websocket:
                # A newer connection for this identity owns the slot
                logger.debug(f"Room {room_id}: ignoring stale leave for {peer_id}")
                return room

            room.members.remove(peer_id)
            del room.connections[peer_id]
            logger.info(f"Room {room_id}: peer {peer_id} left")

            if room.is_empty():
                del self._rooms[room_id]
                logger.info(f"Removed room: {room_id}")
                return None

            for member in room.members:
                await self._send(
                    room.connections[member],
                    {"type": MessageType.PEER_LEFT.value, "peer_id": peer_id},
                )
            await self._broadcast_roles(room)
            return room

    async def relay(self, room_id: str, from_peer: str, message: dict[str, Any]) -> bool:
        """Forward a signal envelope to its addressed room member.

        The envelope is passed through untouched apart from the added ``from``
        stamp. Undeliverable envelopes are dropped, never queued.

        Args:
            room_id: Room of the sender.
            from_peer: Sender identity.
            message: Signal envelope with a ``to`` field.

        Returns:
            True if the envelope was handed to the target connection.
        """
        room = self._rooms.get(room_id)
        target = message.get("to")
        if room is None or from_peer not in room.connections:
            logger.debug(f"Dropping signal from {from_peer}: not a member of {room_id}")
            return False
        if not target or target == from_peer or target not in room.connections:
            logger.debug(f"Room {room_id}: dropping signal from {from_peer} to {target}")
            return False

        forwarded = dict(message)
        forwarded["type"] = MessageType.SIGNAL.value
        forwarded["from"] = from_peer
        return await self._send(room.connections[target], forwarded)

    def get_room(self, room_id: str) -> Room | None:
        """Get a room by identifier."""
        return self._rooms.get(room_id)

    def get_room_count(self) -> int:
        """Get the number of active rooms.

        Returns:
            Number of active rooms.
        """
        return len(self._rooms)

    def get_peer_count(self) -> int:
        """Get the number of connected peers across all rooms.

        Returns:
            Number of room members.
        """
        return sum(len(room) for room in self._rooms.values())

    async def _broadcast_roles(self, room: Room) -> None:
        """Push each member its current role and the room's member list."""
        peers = list(room.members)
        for index, member in enumerate(peers):
            await self._send(
                room.connections[member],
                {
                    "type": MessageType.ROLE.value,
                    "role": role_for_index(index).value,
                    "peer_id": member,
                    "room_id": room.room_id,
                    "peers": peers,
                },
            )

    async def _send(self, websocket: MemberSocket, message: dict[str, Any]) -> bool:
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            # The member's own handler cleans up when its socket dies
            logger.warning(f"Failed to send {message.get('type')}: {e}")
            return False

    async def _close_quietly(self, websocket: MemberSocket, code: int, reason: str) -> None:
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")


# Global room manager instance
room_manager = RoomManager(
    room_full_policy=settings.room_full_policy,
    evict_close_code=settings.evict_close_code,
)

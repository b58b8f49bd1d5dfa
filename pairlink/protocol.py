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

"""Signaling wire vocabulary shared by the relay server and peers.

Client -> server:
- join {room_id, peer_id?}
- signal {to, epoch, kind, data}
- leave {}

Server -> client:
- role {role, peer_id, room_id, peers}
- room-full {room_id, capacity}
- peer-joined {peer_id}
- peer-left {peer_id}
- kicked {room_id}
- signal {from, to, epoch, kind, data}
- error {message}
"""

from enum import Enum

# A room never holds more than two members
ROOM_CAPACITY = 2


class Role(str, Enum):
    """Negotiation role of a room member.

    FIRST joined earlier and never yields during an offer collision.
    SECOND joined later and always yields (rolls back its own offer).
    """

    FIRST = "first"
    SECOND = "second"


class MessageType(str, Enum):
    """Signaling message types."""

    JOIN = "join"
    LEAVE = "leave"
    SIGNAL = "signal"
    ROLE = "role"
    ROOM_FULL = "room-full"
    PEER_JOINED = "peer-joined"
    PEER_LEFT = "peer-left"
    KICKED = "kicked"
    ERROR = "error"


class SignalKind(str, Enum):
    """Kinds of handshake payloads carried inside a signal envelope."""

    DESCRIPTION = "description"
    CANDIDATE = "candidate"
    CANDIDATE_BATCH = "candidate-batch"


def role_for_index(index: int) -> Role:
    """Derive a member's role from its position in the room.

    Args:
        index: Zero-based join position within the room

    Returns:
        Role.FIRST for index 0, Role.SECOND for index 1

    Raises:
        ValueError: If index is outside the room capacity
    """
    if index == 0:
        return Role.FIRST
    if index == 1:
        return Role.SECOND
    raise ValueError(f"No role for member index {index} (capacity {ROOM_CAPACITY})")

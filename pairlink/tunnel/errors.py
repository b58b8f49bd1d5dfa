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

"""Exceptions raised by the peer-side tunnel."""


class PairlinkError(Exception):
    """Base error for peer-side failures surfaced to the application."""


class SignalingError(PairlinkError):
    """Signaling socket could not be established or was closed for good."""


class RoomFullError(PairlinkError):
    """The relay refused to admit this peer because the room is full."""

    def __init__(self, room_id: str, capacity: int) -> None:
        super().__init__(f"Room {room_id} is full (capacity {capacity})")
        self.room_id = room_id
        self.capacity = capacity


class RollbackUnsupportedError(PairlinkError):
    """The transport cannot roll back a local description."""


class IceRestartUnsupportedError(PairlinkError):
    """The transport cannot issue an offer with fresh ICE credentials."""


class ChannelNotOpenError(PairlinkError):
    """An operation needed an open DataChannel."""

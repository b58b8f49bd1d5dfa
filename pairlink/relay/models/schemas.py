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

"""Pydantic models for signaling messages and API responses."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ...protocol import SignalKind


class JoinMessage(BaseModel):
    """Room join request."""

    type: Literal["join"]
    room_id: str = Field(min_length=1, description="Room identifier")
    peer_id: str | None = Field(
        default=None, min_length=1, description="Peer identity (server assigns one if omitted)"
    )


class LeaveMessage(BaseModel):
    """Explicit room leave."""

    type: Literal["leave"]


class SignalMessage(BaseModel):
    """Handshake envelope relayed verbatim to another room member."""

    # Unknown fields travel with the envelope untouched
    model_config = ConfigDict(extra="allow")

    type: Literal["signal"]
    to: str = Field(min_length=1, description="Target peer identity")
    epoch: int | None = Field(default=None, ge=0, description="Sender session epoch")
    kind: SignalKind = Field(description="description, candidate or candidate-batch")
    data: Any = Field(default=None, description="Opaque SDP or ICE candidate payload")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    rooms: int
    peers: int
    timestamp: datetime

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

"""WebSocket signaling endpoint: room join, role assignment and signal relay."""

import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ...protocol import MessageType
from ..core.config import settings
from ..core.room_manager import room_manager
from ..models.schemas import JoinMessage, LeaveMessage, SignalMessage

router = APIRouter(tags=["signaling"])
logger = logging.getLogger(__name__)


async def send_error(websocket: WebSocket, message: str) -> None:
    """Send an error notice to a client.

    Args:
        websocket: Client connection.
        message: Human-readable error description.
    """
    await websocket.send_json({"type": MessageType.ERROR.value, "message": message})


@router.websocket("/ws")
async def websocket_signal_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for two-peer rooms.

    Peers send ``join`` to enter a room and receive their role, then exchange
    ``signal`` envelopes that are forwarded to the addressed room member.

    Args:
        websocket: WebSocket connection.
    """
    await websocket.accept()

    room_id: str | None = None
    peer_id: str | None = None

    try:
        while True:
            data = await websocket.receive_text()

            if len(data.encode("utf-8")) > settings.max_message_bytes:
                await send_error(
                    websocket, f"Message exceeds {settings.max_message_bytes // 1024} KB limit"
                )
                continue

            try:
                message: Any = json.loads(data)
            except json.JSONDecodeError:
                await send_error(websocket, "Invalid JSON format")
                continue

            if not isinstance(message, dict) or "type" not in message:
                await send_error(websocket, "Invalid message format: missing type")
                continue

            msg_type = message["type"]

            try:
                if msg_type == MessageType.JOIN:
                    join = JoinMessage.model_validate(message)

                    if room_id is not None and peer_id is not None and room_id != join.room_id:
                        await room_manager.leave(room_id, peer_id, websocket)
                        room_id = None

                    joining_id = join.peer_id or peer_id or str(uuid.uuid4())
                    outcome = await room_manager.join(join.room_id, joining_id, websocket)
                    if outcome.admitted:
                        room_id, peer_id = join.room_id, joining_id

                elif msg_type == MessageType.SIGNAL:
                    if room_id is None or peer_id is None:
                        logger.debug("Dropping signal from a connection that has not joined")
                        continue

                    SignalMessage.model_validate(message)
                    delivered = await room_manager.relay(room_id, peer_id, message)
                    if delivered:
                        logger.debug(
                            f"Relayed {message.get('kind')} from {peer_id} to {message.get('to')}"
                        )

                elif msg_type == MessageType.LEAVE:
                    LeaveMessage.model_validate(message)
                    if room_id is not None and peer_id is not None:
                        await room_manager.leave(room_id, peer_id, websocket)
                    room_id = None

                else:
                    await send_error(websocket, f"Unknown message type: {msg_type}")

            except ValidationError as e:
                logger.info(f"Rejected {msg_type} message: {e.error_count()} validation error(s)")
                await send_error(websocket, f"Invalid {msg_type} message")

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for peer {peer_id}")
    except Exception as e:
        logger.error(f"Unexpected error in WebSocket handler: {e}")
    finally:
        if room_id is not None and peer_id is not None:
            await room_manager.leave(room_id, peer_id, websocket)

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

"""Session tracking: identity, role and the session epoch.

The epoch is a per-peer generation counter. Every (re)initialisation of the
connection bumps it, every outgoing signal carries it, and inbound signals
carrying an epoch older than the last one seen from the remote are dropped.
"""

import logging
import uuid
from enum import Enum
from typing import Any

from ..protocol import Role

logger = logging.getLogger(__name__)


class EpochVerdict(str, Enum):
    """How an inbound epoch compares with the last one seen from the remote."""

    CURRENT = "current"
    STALE = "stale"
    ADVANCED = "advanced"


class SessionTracker:
    """Owns the local identity, role assignment and epoch counters."""

    def __init__(self, peer_id: str | None = None) -> None:
        """Initialize the session tracker.

        Args:
            peer_id: Stable local identity; a random UUID if omitted
        """
        self.peer_id: str = peer_id or str(uuid.uuid4())
        self.room_id: str | None = None
        self.role: Role | None = None
        self.remote_peer_id: str | None = None
        self.epoch: int = 0
        self.remote_epoch: int | None = None

    def bump(self) -> int:
        """Advance the local epoch.

        Returns:
            The new epoch
        """
        self.epoch += 1
        logger.info(f"Session epoch advanced to {self.epoch}")
        return self.epoch

    def assign(self, role: Role, peers: list[str]) -> bool:
        """Apply a role assignment pushed by the relay.

        Args:
            role: Role assigned to this peer
            peers: Room member list in join order

        Returns:
            True if the role or the remote peer changed
        """
        remote = next((p for p in peers if p != self.peer_id), None)
        changed = role != self.role or remote != self.remote_peer_id

        if remote != self.remote_peer_id:
            # A different remote has its own epoch sequence
            self.remote_epoch = None

        self.role = role
        self.remote_peer_id = remote
        return changed

    def forget_remote(self) -> None:
        """Drop the current remote so the next role assignment treats it as new."""
        logger.info(f"Forgetting remote {self.remote_peer_id}")
        self.remote_peer_id = None
        self.remote_epoch = None

    def stamp(self, message: dict[str, Any]) -> dict[str, Any]:
        """Tag an outgoing signal with the current epoch."""
        message["epoch"] = self.epoch
        return message

    def observe_remote_epoch(self, epoch: int | None) -> EpochVerdict:
        """Compare an inbound epoch with the last seen remote epoch.

        Envelopes without an epoch are treated as current.

        Args:
            epoch: Epoch carried by the inbound envelope

        Returns:
            EpochVerdict for the envelope
        """
        if epoch is None:
            return EpochVerdict.CURRENT
        if self.remote_epoch is None:
            self.remote_epoch = epoch
            return EpochVerdict.CURRENT
        if epoch < self.remote_epoch:
            return EpochVerdict.STALE
        if epoch > self.remote_epoch:
            logger.info(f"Remote epoch advanced {self.remote_epoch} -> {epoch}")
            self.remote_epoch = epoch
            return EpochVerdict.ADVANCED
        return EpochVerdict.CURRENT

    @property
    def is_restart_owner(self) -> bool:
        """The second role owns ICE restarts by default."""
        return self.role is Role.SECOND

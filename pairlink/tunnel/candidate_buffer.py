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

"""Queue for remote ICE candidates that arrive before they can be applied."""

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


def candidate_fingerprint(candidate: dict[str, Any]) -> str:
    """Canonical key used to deduplicate candidates."""
    return json.dumps(candidate, sort_keys=True, separators=(",", ":"))


class CandidateBuffer:
    """Holds early candidates in arrival order, deduplicated by fingerprint."""

    def __init__(self, apply: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        """Initialize the buffer.

        Args:
            apply: Coroutine that adds one candidate to the connection
        """
        self._apply = apply
        self._queue: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._queue)

    def offer(self, candidate: dict[str, Any]) -> bool:
        """Queue a candidate.

        Args:
            candidate: Candidate descriptor as received from the remote

        Returns:
            False if an identical candidate is already queued
        """
        key = candidate_fingerprint(candidate)
        if key in self._queue:
            logger.debug("Dropping duplicate buffered candidate")
            return False
        self._queue[key] = candidate
        return True

    async def on_remote_description_applied(self) -> int:
        """Drain the queue into the connection in arrival order.

        Apply failures are logged and do not stop the drain.

        Returns:
            Number of candidates applied successfully
        """
        if not self._queue:
            return 0

        queued = list(self._queue.values())
        self._queue.clear()

        applied = 0
        for candidate in queued:
            try:
                await self._apply(candidate)
                applied += 1
            except Exception as e:
                logger.warning(f"Failed to apply buffered candidate: {e}")

        logger.debug(f"Flushed {applied}/{len(queued)} buffered candidates")
        return applied

    def reset(self) -> None:
        """Discard all queued candidates."""
        self._queue.clear()

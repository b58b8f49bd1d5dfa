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

"""Shared fixtures for relay tests."""

import asyncio
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from pairlink.relay.core.room_manager import room_manager
from pairlink.relay.main import app


class FakeSocket:
    """Records what the room manager pushes to one member."""

    def __init__(self, fail_sends: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed_with: tuple[int, str | None] | None = None
        self.fail_sends = fail_sends

    async def send_json(self, data: Any, mode: str = "text") -> None:
        if self.fail_sends:
            raise ConnectionError("socket gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = (code, reason)

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["type"] == message_type]


@pytest.fixture
def make_socket() -> Callable[..., FakeSocket]:
    """Factory for fake member sockets."""
    return FakeSocket


@pytest.fixture(autouse=True)
def clean_rooms() -> Iterator[None]:
    """Start every test with an empty global room table."""
    room_manager._rooms.clear()
    room_manager._lock = asyncio.Lock()
    yield
    room_manager._rooms.clear()


@pytest.fixture
def client() -> Iterator[TestClient]:
    """Test client whose WebSocket sessions share one event loop."""
    with TestClient(app) as test_client:
        yield test_client

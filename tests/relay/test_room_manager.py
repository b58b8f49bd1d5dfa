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

"""Tests for the relay room table."""

from collections.abc import Callable
from typing import Any

import pytest

from pairlink.protocol import Role
from pairlink.relay.core.room_manager import RoomManager


@pytest.fixture
def manager() -> RoomManager:
    return RoomManager()


class TestJoin:
    """Admission and role assignment."""

    @pytest.mark.asyncio
    async def test_first_member_is_first(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that the first joiner is told it holds the first role."""
        alice = make_socket()

        outcome = await manager.join("lobby", "alice", alice)

        assert outcome.admitted
        assert outcome.role is Role.FIRST
        assert alice.sent == [
            {
                "type": "role",
                "role": "first",
                "peer_id": "alice",
                "room_id": "lobby",
                "peers": ["alice"],
            }
        ]

    @pytest.mark.asyncio
    async def test_second_member_is_second_and_first_is_notified(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that both members learn the new member list and their roles."""
        alice, bob = make_socket(), make_socket()
        await manager.join("lobby", "alice", alice)
        alice.sent.clear()

        outcome = await manager.join("lobby", "bob", bob)

        assert outcome.role is Role.SECOND
        assert alice.sent[0] == {"type": "peer-joined", "peer_id": "bob"}
        assert alice.sent[1]["role"] == "first"
        assert alice.sent[1]["peers"] == ["alice", "bob"]
        assert bob.sent == [
            {
                "type": "role",
                "role": "second",
                "peer_id": "bob",
                "room_id": "lobby",
                "peers": ["alice", "bob"],
            }
        ]

    @pytest.mark.asyncio
    async def test_third_member_rejected_with_room_full(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that a full room turns newcomers away and stays untouched."""
        alice, bob, carol = make_socket(), make_socket(), make_socket()
        await manager.join("lobby", "alice", alice)
        await manager.join("lobby", "bob", bob)
        alice.sent.clear()
        bob.sent.clear()

        outcome = await manager.join("lobby", "carol", carol)

        assert not outcome.admitted
        assert carol.sent == [{"type": "room-full", "room_id": "lobby", "capacity": 2}]
        assert manager.get_room("lobby").members == ["alice", "bob"]
        assert alice.sent == []
        assert bob.sent == []

    @pytest.mark.asyncio
    async def test_evict_policy_replaces_oldest_member(
        self, make_socket: Callable[..., Any]
    ) -> None:
        """Test that the evict policy kicks the oldest member and promotes the next."""
        manager = RoomManager(room_full_policy="evict", evict_close_code=4000)
        alice, bob, carol = make_socket(), make_socket(), make_socket()
        await manager.join("lobby", "alice", alice)
        await manager.join("lobby", "bob", bob)
        bob.sent.clear()

        outcome = await manager.join("lobby", "carol", carol)

        assert outcome.admitted
        assert outcome.evicted == "alice"
        assert outcome.role is Role.SECOND
        assert alice.of_type("kicked") == [{"type": "kicked", "room_id": "lobby"}]
        assert alice.closed_with is not None and alice.closed_with[0] == 4000
        assert {"type": "peer-left", "peer_id": "alice"} in bob.sent
        assert bob.of_type("role")[-1]["role"] == "first"
        assert bob.of_type("role")[-1]["peers"] == ["bob", "carol"]
        assert manager.get_room("lobby").members == ["bob", "carol"]

    @pytest.mark.asyncio
    async def test_rejoin_with_same_identity_keeps_position(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that a returning member keeps its role and its old socket is closed."""
        alice_old, alice_new, bob = make_socket(), make_socket(), make_socket()
        await manager.join("lobby", "alice", alice_old)
        await manager.join("lobby", "bob", bob)

        outcome = await manager.join("lobby", "alice", alice_new)

        assert outcome.role is Role.FIRST
        assert alice_old.closed_with is not None
        assert manager.get_room("lobby").members == ["alice", "bob"]
        assert alice_new.of_type("role")[-1]["peers"] == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_rejoin_on_new_connection_is_announced(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that the other member hears leave, join and role for a replaced connection."""
        alice_old, alice_new, bob = make_socket(), make_socket(), make_socket()
        await manager.join("lobby", "alice", alice_old)
        await manager.join("lobby", "bob", bob)
        bob.sent.clear()

        await manager.join("lobby", "alice", alice_new)

        assert [message["type"] for message in bob.sent] == ["peer-left", "peer-joined", "role"]
        assert bob.sent[0]["peer_id"] == bob.sent[1]["peer_id"] == "alice"
        assert bob.sent[2]["role"] == "second"

    @pytest.mark.asyncio
    async def test_repeated_join_on_same_connection_is_quiet(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that a duplicate join over the same socket only refreshes roles."""
        alice, bob = make_socket(), make_socket()
        await manager.join("lobby", "alice", alice)
        await manager.join("lobby", "bob", bob)
        bob.sent.clear()

        await manager.join("lobby", "alice", alice)

        assert [message["type"] for message in bob.sent] == ["role"]
        assert alice.closed_with is None

    @pytest.mark.asyncio
    async def test_failed_send_does_not_break_join(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that a dead member socket is logged, not raised."""
        alice, bob = make_socket(fail_sends=True), make_socket()
        await manager.join("lobby", "alice", alice)

        outcome = await manager.join("lobby", "bob", bob)

        assert outcome.admitted
        assert bob.of_type("role")[-1]["role"] == "second"


class TestLeave:
    """Departure and role promotion."""

    @pytest.mark.asyncio
    async def test_second_promoted_when_first_leaves(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that the remaining member becomes first."""
        alice, bob = make_socket(), make_socket()
        await manager.join("lobby", "alice", alice)
        await manager.join("lobby", "bob", bob)
        bob.sent.clear()

        room = await manager.leave("lobby", "alice", alice)

        assert room is not None
        assert bob.sent == [
            {"type": "peer-left", "peer_id": "alice"},
            {
                "type": "role",
                "role": "first",
                "peer_id": "bob",
                "room_id": "lobby",
                "peers": ["bob"],
            },
        ]

    @pytest.mark.asyncio
    async def test_empty_room_is_deleted(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that the last member leaving removes the room."""
        alice = make_socket()
        await manager.join("lobby", "alice", alice)

        assert await manager.leave("lobby", "alice", alice) is None
        assert manager.get_room("lobby") is None
        assert manager.get_room_count() == 0

    @pytest.mark.asyncio
    async def test_stale_socket_leave_is_ignored(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that a replaced connection closing does not remove its successor."""
        alice_old, alice_new = make_socket(), make_socket()
        await manager.join("lobby", "alice", alice_old)
        await manager.join("lobby", "alice", alice_new)

        await manager.leave("lobby", "alice", alice_old)

        assert manager.get_room("lobby").members == ["alice"]

    @pytest.mark.asyncio
    async def test_leave_unknown_room(self, manager: RoomManager) -> None:
        """Test leaving a room that does not exist."""
        assert await manager.leave("nowhere", "alice") is None


class TestRelay:
    """Signal forwarding."""

    @pytest.mark.asyncio
    async def test_signal_forwarded_with_sender(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that the target receives the envelope stamped with its sender."""
        alice, bob = make_socket(), make_socket()
        await manager.join("lobby", "alice", alice)
        await manager.join("lobby", "bob", bob)
        alice.sent.clear()
        bob.sent.clear()
        message = {
            "type": "signal",
            "to": "bob",
            "epoch": 3,
            "kind": "description",
            "data": {"type": "offer", "sdp": "v=0"},
            "extra": "kept",
        }

        delivered = await manager.relay("lobby", "alice", message)

        assert delivered
        assert bob.sent == [{**message, "from": "alice"}]
        assert alice.sent == []
        assert "from" not in message

    @pytest.mark.asyncio
    async def test_signal_to_self_or_stranger_dropped(
        self, manager: RoomManager, make_socket: Callable[..., Any]
    ) -> None:
        """Test that undeliverable envelopes are dropped."""
        alice, bob = make_socket(), make_socket()
        await manager.join("lobby", "alice", alice)
        await manager.join("lobby", "bob", bob)

        assert not await manager.relay("lobby", "alice", {"type": "signal", "to": "alice"})
        assert not await manager.relay("lobby", "alice", {"type": "signal", "to": "mallory"})
        assert not await manager.relay("lobby", "mallory", {"type": "signal", "to": "bob"})
        assert not await manager.relay("other", "alice", {"type": "signal", "to": "bob"})

    @pytest.mark.asyncio
    async def test_counts(self, manager: RoomManager, make_socket: Callable[..., Any]) -> None:
        """Test room and peer counters."""
        await manager.join("a", "alice", make_socket())
        await manager.join("a", "bob", make_socket())
        await manager.join("b", "carol", make_socket())

        assert manager.get_room_count() == 2
        assert manager.get_peer_count() == 3

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

"""Tests for session identity, roles and epochs."""

from pairlink.protocol import Role
from pairlink.tunnel.session import EpochVerdict, SessionTracker


def test_generated_identity() -> None:
    """Test that a random identity is generated when none is given."""
    assert SessionTracker().peer_id != SessionTracker().peer_id
    assert SessionTracker("alice").peer_id == "alice"


def test_assign_reports_changes() -> None:
    """Test that only role or remote changes count as changes."""
    session = SessionTracker("alice")

    assert session.assign(Role.FIRST, ["alice"])
    assert session.remote_peer_id is None
    assert session.assign(Role.FIRST, ["alice", "bob"])
    assert session.remote_peer_id == "bob"
    assert not session.assign(Role.FIRST, ["alice", "bob"])
    assert session.assign(Role.SECOND, ["bob", "alice"])


def test_new_remote_forgets_remote_epoch() -> None:
    """Test that a different remote starts a fresh epoch sequence."""
    session = SessionTracker("alice")
    session.assign(Role.FIRST, ["alice", "bob"])
    session.observe_remote_epoch(9)

    session.assign(Role.FIRST, ["alice", "carol"])

    assert session.remote_epoch is None
    assert session.observe_remote_epoch(1) is EpochVerdict.CURRENT


def test_forgotten_remote_returns_as_new() -> None:
    """Test that a remote seen again after being forgotten counts as a change."""
    session = SessionTracker("alice")
    session.assign(Role.FIRST, ["alice", "bob"])
    session.observe_remote_epoch(7)

    session.forget_remote()

    assert session.assign(Role.FIRST, ["alice", "bob"])
    assert session.remote_peer_id == "bob"
    assert session.observe_remote_epoch(1) is EpochVerdict.CURRENT


def test_epoch_verdicts() -> None:
    """Test stale, current and advanced epochs."""
    session = SessionTracker("alice")

    assert session.observe_remote_epoch(None) is EpochVerdict.CURRENT
    assert session.observe_remote_epoch(3) is EpochVerdict.CURRENT
    assert session.observe_remote_epoch(3) is EpochVerdict.CURRENT
    assert session.observe_remote_epoch(2) is EpochVerdict.STALE
    assert session.observe_remote_epoch(4) is EpochVerdict.ADVANCED
    assert session.remote_epoch == 4


def test_bump_and_stamp() -> None:
    """Test that outgoing signals carry the current epoch."""
    session = SessionTracker("alice")
    session.bump()
    session.bump()

    assert session.stamp({"kind": "candidate"}) == {"kind": "candidate", "epoch": 2}


def test_second_role_owns_restarts() -> None:
    """Test restart ownership."""
    session = SessionTracker("bob")
    session.assign(Role.SECOND, ["alice", "bob"])
    assert session.is_restart_owner

    session.assign(Role.FIRST, ["bob"])
    assert not session.is_restart_owner

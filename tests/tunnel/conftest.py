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

"""Shared fakes and fixtures for peer-side tests."""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from pairlink.tunnel.config import TunnelSettings
from pairlink.tunnel.errors import IceRestartUnsupportedError, RollbackUnsupportedError


class FakeChannel:
    """In-memory stand-in for an aiortc RTCDataChannel."""

    def __init__(self, label: str = "game", ready_state: str = "connecting") -> None:
        self.label = label
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.sent: list[str] = []
        self._handlers: dict[str, list[Callable[..., Any]]] = {}

    def on(self, event: str, handler: Callable[..., Any] | None = None) -> Any:
        if handler is None:
            def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
                self._handlers.setdefault(event, []).append(fn)
                return fn

            return decorator
        self._handlers.setdefault(event, []).append(handler)
        return handler

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            handler(*args)

    def open(self) -> None:
        self.readyState = "open"
        self.emit("open")

    def close(self) -> None:
        if self.readyState != "closed":
            self.readyState = "closed"
            self.emit("close")

    def send(self, message: str) -> None:
        if self.readyState != "open":
            raise RuntimeError("DataChannel is not open")
        self.sent.append(message)

    def frames(self) -> list[dict[str, Any]]:
        return [json.loads(message) for message in self.sent]


class FakeTransport:
    """Peer connection double that enforces the offer/answer signaling states."""

    def __init__(self, supports_rollback: bool = True, supports_ice_restart: bool = True) -> None:
        self.on_candidate: Callable[..., Any] | None = None
        self.on_channel: Callable[..., Any] | None = None
        self.on_connection_state_change: Callable[..., Any] | None = None

        self.signaling_state = "stable"
        self.connection_state = "new"
        self.local_description: dict[str, str] | None = None
        self.remote_description: dict[str, str] | None = None
        self.supports_rollback = supports_rollback
        self.supports_ice_restart = supports_ice_restart
        self.added_candidates: list[dict[str, Any]] = []
        self.channels: list[FakeChannel] = []
        self.offers: list[dict[str, str]] = []
        self.closed = False

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    async def create_offer(self, ice_restart: bool = False) -> dict[str, str]:
        await asyncio.sleep(0)
        if ice_restart and not self.supports_ice_restart:
            raise IceRestartUnsupportedError("no ice restart")
        offer = {
            "type": "offer",
            "sdp": f"offer-{len(self.offers) + 1}" + ("-restart" if ice_restart else ""),
        }
        self.offers.append(offer)
        return offer

    async def create_answer(self) -> dict[str, str]:
        await asyncio.sleep(0)
        if self.signaling_state != "have-remote-offer":
            raise RuntimeError(f"Cannot answer in {self.signaling_state}")
        return {"type": "answer", "sdp": "answer"}

    async def set_local_description(self, description: dict[str, str]) -> None:
        await asyncio.sleep(0)
        if description["type"] == "offer":
            if self.signaling_state not in ("stable", "have-local-offer"):
                raise RuntimeError(f"Cannot set local offer in {self.signaling_state}")
            self.signaling_state = "have-local-offer"
        else:
            if self.signaling_state != "have-remote-offer":
                raise RuntimeError(f"Cannot set local answer in {self.signaling_state}")
            self.signaling_state = "stable"
        self.local_description = description

    async def set_remote_description(self, description: dict[str, str]) -> None:
        await asyncio.sleep(0)
        if description["type"] == "offer":
            if self.signaling_state not in ("stable", "have-remote-offer"):
                raise RuntimeError(f"Cannot set remote offer in {self.signaling_state}")
            self.signaling_state = "have-remote-offer"
        else:
            if self.signaling_state != "have-local-offer":
                raise RuntimeError(f"Cannot set remote answer in {self.signaling_state}")
            self.signaling_state = "stable"
        self.remote_description = description

    async def rollback(self) -> None:
        if not self.supports_rollback:
            raise RollbackUnsupportedError("no rollback")
        self.signaling_state = "stable"
        self.local_description = None

    async def add_candidate(self, candidate: dict[str, Any]) -> None:
        if self.remote_description is None:
            raise RuntimeError("No remote description")
        self.added_candidates.append(candidate)

    def create_channel(self, label: str) -> FakeChannel:
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.closed = True
        self.signaling_state = "closed"


@pytest.fixture
def make_channel() -> Callable[..., FakeChannel]:
    """Factory for fake DataChannels."""
    return FakeChannel


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    """Factory for fake peer connections."""
    return FakeTransport


@pytest.fixture
def fast_settings() -> TunnelSettings:
    """Tunnel settings with timers short enough for tests."""
    return TunnelSettings(
        connect_timeout=0.2,
        join_timeout=0.2,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.02,
        reconnect_jitter=0.0,
        candidate_batch_delay=0.01,
        restart_debounce=0.02,
        restart_cooldown=0.0,
        restart_window=60.0,
        restart_max_attempts=2,
        retransmit_base_delay=0.01,
        retransmit_max_delay=0.04,
        retransmit_attempts=3,
        keepalive_interval=10.0,
        keepalive_idle=30.0,
    )

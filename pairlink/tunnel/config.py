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

"""Configuration settings for the peer-side tunnel."""

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TunnelSettings(BaseSettings):
    """Peer settings: signaling, negotiation and reliable-delivery tunables.

    Durations are in seconds, sizes in bytes or characters.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="PAIRLINK_", extra="ignore"
    )

    # Signaling
    signal_url: str = "ws://localhost:3000/ws"
    connect_timeout: float = 10.0
    join_timeout: float = 10.0
    signaling_heartbeat: float = 20.0
    reconnect_base_delay: float = 0.5
    reconnect_max_delay: float = 5.0
    reconnect_jitter: float = 0.2

    # Transport
    ice_servers: list[dict[str, Any]] = Field(
        default_factory=lambda: [{"urls": "stun:stun.l.google.com:19302"}]
    )
    channel_label: str = "game"

    # Negotiation
    candidate_batch_delay: float = 0.03
    restart_debounce: float = 2.0
    restart_cooldown: float = 5.0
    restart_window: float = 60.0
    restart_max_attempts: int = 3

    # Reliable delivery
    retransmit_base_delay: float = 0.4
    retransmit_max_delay: float = 4.0
    retransmit_attempts: int = 5
    seen_window: int = 256
    # Bytes: whole serialized frame for the threshold, encoded fragment text for chunk_size
    chunk_threshold: int = 12000
    chunk_size: int = 12000
    reassembly_timeout: float = 30.0
    max_reassemblies: int = 8

    # Backpressure
    high_water_mark: int = 4 * 1024 * 1024
    low_water_mark: int = 512 * 1024

    # Keepalive
    keepalive_interval: float = 2.5
    keepalive_idle: float = 8.0


settings = TunnelSettings()

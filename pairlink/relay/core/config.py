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

"""Configuration settings for the relay server."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class RelaySettings(BaseSettings):
    """Relay server settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="PAIRLINK_RELAY_", extra="ignore"
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 3000

    # CORS (comma-separated origins or "*")
    cors_origins: str = "*"

    # What to do when a third peer joins a room that already has two members:
    # "reject" answers the newcomer with room-full, "evict" kicks the oldest member
    room_full_policy: Literal["reject", "evict"] = "reject"

    # Signaling messages larger than this are refused
    max_message_bytes: int = 64 * 1024

    # Close code sent to a member evicted by a newcomer
    evict_close_code: int = 4000


settings = RelaySettings()

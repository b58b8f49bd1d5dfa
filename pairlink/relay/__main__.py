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

"""Run the relay server: ``python -m pairlink.relay``."""

import uvicorn

from .core.config import settings


def main() -> None:
    """Serve the relay app on the configured host and port."""
    uvicorn.run("pairlink.relay.main:app", host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()

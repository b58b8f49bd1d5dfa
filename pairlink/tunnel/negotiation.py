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

"""Perfect Negotiation state machine for one peer connection.

Offer collisions ("glare") are resolved by role alone: the first room member
never yields and drops a colliding remote offer, the second member always
yields by rolling back its own offer and accepting the remote one. Exactly one
offer survives no matter how the two offers interleave.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from typing import Any

from ..protocol import Role, SignalKind
from .backoff import AttemptWindow
from .candidate_buffer import CandidateBuffer
from .config import TunnelSettings
from .config import settings as default_settings
from .errors import IceRestartUnsupportedError, RollbackUnsupportedError
from .session import EpochVerdict, SessionTracker
from .transport import PeerTransport, TransportFactory

logger = logging.getLogger(__name__)


class NegotiationState(str, Enum):
    """Local negotiation progress for the current connection."""

    IDLE = "idle"
    MAKING_OFFER = "making-offer"
    OFFER_PENDING = "offer-pending"
    ROLLING_BACK = "rolling-back"
    APPLYING_REMOTE_OFFER = "applying-remote-offer"
    APPLYING_REMOTE_ANSWER = "applying-remote-answer"


def ready_for_offer(state: NegotiationState, signaling_state: str) -> bool:
    """Whether a remote offer can be applied without colliding with local work."""
    return state is not NegotiationState.MAKING_OFFER and (
        signaling_state == "stable" or state is NegotiationState.APPLYING_REMOTE_ANSWER
    )


def offer_collision(
    description_type: str | None, state: NegotiationState, signaling_state: str
) -> bool:
    """Whether an incoming description is an offer that collides with ours."""
    return description_type == "offer" and not ready_for_offer(state, signaling_state)


def should_ignore_offer(role: Role | None, collision: bool) -> bool:
    """Only the first role discards a colliding offer; the second always yields."""
    return role is Role.FIRST and collision


def can_negotiate(state: NegotiationState, signaling_state: str) -> bool:
    """Whether a fresh local offer may be generated now."""
    return state is NegotiationState.IDLE and signaling_state == "stable"


class Negotiator:
    """Drives one peer connection to a usable state.

    Owns the transport (rebuilt from a factory on reset), the candidate
    buffer and the ICE-restart pacing. All description and candidate
    processing is serialised by a lock, so a collision shows up as a
    non-stable signaling state rather than a race.
    """

    def __init__(
        self,
        session: SessionTracker,
        create_transport: TransportFactory,
        send_signal: Callable[[dict[str, Any]], Awaitable[bool]],
        settings: TunnelSettings | None = None,
        restart_owner: bool | None = None,
    ) -> None:
        """Initialize the negotiator.

        Args:
            session: Session tracker providing role and epochs
            create_transport: Factory for a fresh peer connection
            send_signal: Coroutine that relays a signal envelope to the remote
            settings: Tunnel settings (module defaults if omitted)
            restart_owner: Force (or forbid) ICE-restart ownership; by default
                the second role owns restarts
        """
        self.session = session
        self.settings = settings or default_settings
        self.restart_owner = restart_owner
        self._create_transport = create_transport
        self._send_signal = send_signal

        self.transport: PeerTransport | None = None
        self.state: NegotiationState = NegotiationState.IDLE
        self.ignore_offer: bool = False
        self.negotiation_pending: bool = False
        self.remote_description_applied: bool = False

        self.candidates = CandidateBuffer(self._add_candidate)
        self.restart_window = AttemptWindow(
            cooldown=self.settings.restart_cooldown,
            window=self.settings.restart_window,
            max_attempts=self.settings.restart_max_attempts,
        )

        self._lock = asyncio.Lock()
        self._restart_timer: asyncio.TimerHandle | None = None
        self._batch_timer: asyncio.TimerHandle | None = None
        self._candidate_batch: list[dict[str, Any]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

        # Callbacks
        self.on_state_change: Callable[[NegotiationState], None] | None = None
        self.on_transport: Callable[[PeerTransport], None] | None = None
        self.on_connection_state_change: Callable[[str], None] | None = None
        self.on_remote_reset: Callable[[], Awaitable[None]] | None = None
        self.on_restart_exhausted: Callable[[], Awaitable[None]] | None = None
        self.on_restart_unsupported: Callable[[], Awaitable[None]] | None = None

    @property
    def making_offer(self) -> bool:
        return self.state is NegotiationState.MAKING_OFFER

    @property
    def setting_remote_answer_pending(self) -> bool:
        return self.state is NegotiationState.APPLYING_REMOTE_ANSWER

    @property
    def is_idle(self) -> bool:
        """True when no negotiation is in flight on the current connection."""
        return self.transport is not None and can_negotiate(
            self.state, self.transport.signaling_state
        )

    @property
    def is_restart_owner(self) -> bool:
        if self.restart_owner is not None:
            return self.restart_owner
        return self.session.is_restart_owner

    async def rebuild(self) -> PeerTransport:
        """Tear down the connection and start over with a fresh one.

        Returns:
            The new transport
        """
        async with self._lock:
            return await self._rebuild()

    async def close(self) -> None:
        """Close the connection and cancel every timer and background task."""
        self._cancel_timers()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()
        self.candidates.reset()
        self._candidate_batch.clear()
        await self._close_transport()
        self.restart_window.reset()
        self._set_state(NegotiationState.IDLE)

    async def negotiate(
        self, reason: str = "negotiation-needed", ice_restart: bool = False
    ) -> bool:
        """Generate and send a local offer, or defer if negotiation is busy.

        Args:
            reason: Why negotiation is needed (for logs)
            ice_restart: Request fresh ICE credentials

        Returns:
            True if an offer was applied locally and handed to signaling

        Raises:
            IceRestartUnsupportedError: If ice_restart is requested and the
                transport cannot restart ICE
        """
        async with self._lock:
            return await self._make_offer(reason, ice_restart)

    async def handle_signal(self, message: dict[str, Any]) -> None:
        """Process a relayed signal envelope.

        Args:
            message: Envelope with epoch, kind and data
        """
        async with self._lock:
            kind = message.get("kind")
            epoch = message.get("epoch")

            verdict = self.session.observe_remote_epoch(epoch)
            if verdict is EpochVerdict.STALE:
                logger.debug(
                    f"Dropping stale {kind} from epoch {epoch} "
                    f"(remote is at {self.session.remote_epoch})"
                )
                return

            if verdict is EpochVerdict.ADVANCED and self.remote_description_applied:
                logger.info("Remote session restarted, rebuilding peer connection")
                self.session.bump()
                await self._rebuild()
                if self.on_remote_reset:
                    await self.on_remote_reset()

            data = message.get("data")

            if kind == SignalKind.DESCRIPTION:
                if not isinstance(data, dict) or "type" not in data:
                    logger.warning("Ignoring malformed description signal")
                    return
                await self._apply_description(data)

            elif kind == SignalKind.CANDIDATE:
                if isinstance(data, dict):
                    await self._apply_candidate(data)

            elif kind == SignalKind.CANDIDATE_BATCH:
                for candidate in data if isinstance(data, list) else []:
                    if isinstance(candidate, dict):
                        await self._apply_candidate(candidate)

            else:
                logger.warning(f"Unknown signal kind: {kind}")

    async def handle_connection_state(self, state: str) -> None:
        """React to transport connection state changes.

        A brief ``disconnected`` is debounced before restarting; ``failed``
        restarts right away; recovering cancels any scheduled restart.

        Args:
            state: Transport connection state
        """
        if state == "disconnected":
            self._schedule_restart(self.settings.restart_debounce, "disconnected")
        elif state == "failed":
            self._cancel_restart_timer()
            await self.restart("failed")
        elif state in ("connecting", "connected"):
            self._cancel_restart_timer()

        if self.on_connection_state_change:
            self.on_connection_state_change(state)

    async def restart(self, reason: str) -> bool:
        """Issue an ICE-restart offer if this peer owns restarts.

        Restarts reuse the normal offer path, so they only start from an idle
        connection, and they are rate-limited by a cooldown and a ceiling per
        window. Exhausting the window hands over to ``on_restart_exhausted``.
        A transport that cannot restart ICE hands over to
        ``on_restart_unsupported``, which rebuilds the connection instead.

        Args:
            reason: What triggered the restart (for logs)

        Returns:
            True if a restart offer was sent
        """
        if not self.is_restart_owner:
            logger.debug(f"Not restart owner, leaving restart ({reason}) to the remote")
            return False

        if self.transport is None or self._lock.locked() or not self.is_idle:
            logger.info(f"Skipping restart ({reason}): negotiation in progress")
            return False

        now = asyncio.get_running_loop().time()
        if not self.restart_window.try_acquire(now):
            if self.restart_window.exhausted(now):
                logger.warning(
                    f"Restart attempts exhausted ({self.restart_window.max_attempts} "
                    f"per {self.restart_window.window:.0f}s)"
                )
                self.restart_window.reset()
                if self.on_restart_exhausted:
                    await self.on_restart_exhausted()
            else:
                logger.debug(f"Restart ({reason}) suppressed by cooldown")
            return False

        logger.info(f"ICE restart: {reason}")
        try:
            return await self.negotiate(f"ice-restart:{reason}", ice_restart=True)
        except IceRestartUnsupportedError:
            logger.info("Transport cannot restart ICE, handing over to a full rebuild")
            if self.on_restart_unsupported:
                await self.on_restart_unsupported()
            return False

    # ----------------- internals -----------------

    def _require_transport(self) -> PeerTransport:
        if self.transport is None:
            raise RuntimeError("Peer connection not initialized")
        return self.transport

    async def _rebuild(self) -> PeerTransport:
        await self._close_transport()
        self._cancel_timers()
        self.candidates.reset()
        self._candidate_batch.clear()
        self.ignore_offer = False
        self.negotiation_pending = False
        self.remote_description_applied = False
        self._set_state(NegotiationState.IDLE)

        transport = self._create_transport()
        transport.on_candidate = self._on_local_candidate
        transport.on_connection_state_change = self.handle_connection_state
        self.transport = transport

        if self.on_transport:
            self.on_transport(transport)

        logger.info("Peer connection rebuilt")
        return transport

    async def _close_transport(self) -> None:
        if self.transport is None:
            return
        transport, self.transport = self.transport, None
        transport.on_candidate = None
        transport.on_connection_state_change = None
        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"Error closing peer connection: {e}")

    async def _make_offer(self, reason: str, ice_restart: bool = False) -> bool:
        transport = self._require_transport()

        if not can_negotiate(self.state, transport.signaling_state):
            self.negotiation_pending = True
            logger.info(
                f"Deferring negotiation ({reason}): state={self.state.value}, "
                f"signaling={transport.signaling_state}"
            )
            return False

        self.negotiation_pending = False
        self._set_state(NegotiationState.MAKING_OFFER)
        sent = False
        try:
            offer = await transport.create_offer(ice_restart=ice_restart)
            await transport.set_local_description(offer)
            sent = await self._send_description(transport.local_description or offer)
            logger.info(f"Sent offer ({reason})")
        except IceRestartUnsupportedError:
            raise
        except Exception as e:
            logger.error(f"Failed to create offer ({reason}): {e}")
        finally:
            self._set_state(self._settled_state(transport))
        return sent

    async def _apply_description(self, description: dict[str, Any]) -> None:
        transport = self._require_transport()
        description_type = description.get("type")

        collision = offer_collision(description_type, self.state, transport.signaling_state)
        self.ignore_offer = should_ignore_offer(self.session.role, collision)
        if self.ignore_offer:
            logger.info("Offer collision: keeping local offer, ignoring remote offer")
            return

        try:
            if collision:
                transport = await self._rollback(transport)

            if description_type == "answer":
                self._set_state(NegotiationState.APPLYING_REMOTE_ANSWER)
                await transport.set_remote_description(description)
                self._set_state(NegotiationState.IDLE)
            else:
                self._set_state(NegotiationState.APPLYING_REMOTE_OFFER)
                await transport.set_remote_description(description)
                answer = await transport.create_answer()
                await transport.set_local_description(answer)
                self._set_state(NegotiationState.IDLE)
                await self._send_description(transport.local_description or answer)
                logger.info("Sent answer")

            self.remote_description_applied = True

        except Exception as e:
            self._set_state(self._settled_state(transport))
            if collision:
                logger.warning(f"Failed to accept remote offer after collision: {e}")
            else:
                logger.error(f"Failed to apply remote {description_type}: {e}")
                self._schedule_restart(self.settings.restart_debounce, "description-error")
            return

        await self.candidates.on_remote_description_applied()

        if self.negotiation_pending:
            await self._make_offer("deferred")

    async def _rollback(self, transport: PeerTransport) -> PeerTransport:
        self._set_state(NegotiationState.ROLLING_BACK)
        logger.info("Offer collision: rolling back local offer to accept remote offer")
        try:
            await transport.rollback()
            return transport
        except RollbackUnsupportedError:
            logger.info("Transport cannot roll back, rebuilding peer connection")
            rebuilt = await self._rebuild()
            self._set_state(NegotiationState.ROLLING_BACK)
            return rebuilt

    async def _apply_candidate(self, candidate: dict[str, Any]) -> None:
        transport = self._require_transport()
        if (
            not transport.has_remote_description
            or self.setting_remote_answer_pending
            or self.ignore_offer
        ):
            self.candidates.offer(candidate)
            return

        try:
            await transport.add_candidate(candidate)
        except Exception as e:
            logger.warning(f"Failed to add ICE candidate: {e}")

    async def _add_candidate(self, candidate: dict[str, Any]) -> None:
        await self._require_transport().add_candidate(candidate)

    def _settled_state(self, transport: PeerTransport) -> NegotiationState:
        if transport.signaling_state == "have-local-offer":
            return NegotiationState.OFFER_PENDING
        return NegotiationState.IDLE

    def _set_state(self, state: NegotiationState) -> None:
        if self.state != state:
            logger.debug(f"Negotiation state: {self.state.value} -> {state.value}")
            self.state = state
            if self.on_state_change:
                self.on_state_change(state)

    async def _send(self, message: dict[str, Any]) -> bool:
        self.session.stamp(message)
        try:
            return bool(await self._send_signal(message))
        except Exception as e:
            logger.warning(f"Failed to send {message.get('kind')} signal: {e}")
            return False

    async def _send_description(self, description: dict[str, Any]) -> bool:
        return await self._send({"kind": SignalKind.DESCRIPTION.value, "data": description})

    async def _on_local_candidate(self, candidate: dict[str, Any] | None) -> None:
        if candidate is None:
            # Gathering complete: send what is left right away
            self._cancel_batch_timer()
            await self._flush_candidate_batch()
            return

        self._candidate_batch.append(candidate)
        if self._batch_timer is None:
            loop = asyncio.get_running_loop()
            self._batch_timer = loop.call_later(
                self.settings.candidate_batch_delay,
                lambda: self._spawn(self._flush_candidate_batch()),
            )

    async def _flush_candidate_batch(self) -> None:
        self._batch_timer = None
        if not self._candidate_batch:
            return
        batch, self._candidate_batch = self._candidate_batch, []
        await self._send({"kind": SignalKind.CANDIDATE_BATCH.value, "data": batch})

    def _schedule_restart(self, delay: float, reason: str) -> None:
        self._cancel_restart_timer()
        loop = asyncio.get_running_loop()
        self._restart_timer = loop.call_later(delay, lambda: self._spawn(self.restart(reason)))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_restart_timer(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None

    def _cancel_batch_timer(self) -> None:
        if self._batch_timer is not None:
            self._batch_timer.cancel()
            self._batch_timer = None

    def _cancel_timers(self) -> None:
        self._cancel_restart_timer()
        self._cancel_batch_timer()

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

"""Reliable, ordered-enough messaging over an unreliable-by-lifecycle DataChannel.

Every reliable message gets a monotonically increasing sequence number and is
retransmitted with exponential backoff until the remote acknowledges it.
Receivers acknowledge every copy but deliver each sequence number once.
Everything at or below a contiguous floor counts as handled, and only the
sequence numbers received above it are remembered individually.
Payloads larger than the chunk threshold are split into chunk frames that
share a message id and are reassembled by index, in any arrival order.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .backoff import Backoff
from .config import TunnelSettings
from .config import settings as default_settings
from .errors import ChannelNotOpenError
from .frames import (
    CHUNK_TYPE,
    Frame,
    FrameKind,
    ack_frame,
    chunk_meta,
    decode_payload,
    deserialize_frame,
    encode_payload,
    frame_size,
    is_chunk_meta,
    ping_frame,
    raw_frame,
    reliable_frame,
    serialize_frame,
    split_payload,
)
from .session import SessionTracker

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, Any], None]


@dataclass
class DeliveryFailure:
    """A reliable message that will not be delivered."""

    seq: int
    message_type: str
    message_id: str | None
    attempts: int
    reason: str


@dataclass
class PendingEntry:
    """An unacknowledged reliable frame."""

    seq: int
    frame_type: str
    data: Any
    message_type: str
    message_id: str | None
    backoff: Backoff
    timer: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


@dataclass
class Reassembly:
    """Fragments collected so far for one chunked message."""

    message_type: str
    total: int
    encoding: str
    started: float
    parts: dict[int, str] = field(default_factory=dict)


class ReliableChannel:
    """Reliable and best-effort messaging on top of one DataChannel at a time.

    The channel object follows aiortc's RTCDataChannel surface: ``readyState``,
    ``bufferedAmount``, ``bufferedAmountLowThreshold``, ``send()`` and
    ``on(event)``. Pending messages survive channel replacement and are
    re-sent when the next channel opens.
    """

    def __init__(self, session: SessionTracker, settings: TunnelSettings | None = None) -> None:
        """Initialize the reliable layer.

        Args:
            session: Session tracker supplying the current epoch
            settings: Tunnel settings (module defaults if omitted)
        """
        self.session = session
        self.settings = settings or default_settings
        self.channel: Any = None

        self._next_seq = 1
        self._next_message_id = 1
        self._pending: dict[int, PendingEntry] = {}
        # Every seq <= _seen_floor has been handled; _seen holds the ones above it
        self._seen_floor = 0
        self._seen: set[int] = set()
        self._reassembly: dict[str, Reassembly] = {}
        self._closed_messages: set[str] = set()
        self._closed_order: deque[str] = deque()

        self._queue: deque[str] = deque()
        self._wakeup = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()
        self._pump_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._last_seen = time.monotonic()

        # Callbacks
        self.on_reliable: MessageHandler | None = None
        self.on_raw: MessageHandler | None = None
        self.on_delivery_failed: Callable[[DeliveryFailure], None] | None = None
        self.on_liveness_lost: Callable[[], Awaitable[None]] | None = None
        self.on_open: Callable[[], None] | None = None
        self.on_close: Callable[[], None] | None = None

    @property
    def is_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def reassembly_count(self) -> int:
        """Chunked messages that are partially received."""
        return len(self._reassembly)

    def attach(self, channel: Any) -> None:
        """Start using a DataChannel, replacing any previous one.

        Args:
            channel: aiortc RTCDataChannel (or compatible object)
        """
        self.detach()
        self.channel = channel
        channel.bufferedAmountLowThreshold = self.settings.low_water_mark

        @channel.on("open")
        def on_open() -> None:
            if self.channel is channel:
                self._handle_open()

        @channel.on("close")
        def on_close() -> None:
            if self.channel is channel:
                self._handle_close()

        @channel.on("message")
        def on_message(message: str | bytes) -> None:
            if self.channel is channel:
                self.handle_message(message)

        @channel.on("bufferedamountlow")
        def on_bufferedamountlow() -> None:
            if self.channel is channel:
                self._drained.set()

        if channel.readyState == "open":
            self._handle_open()

    def detach(self) -> None:
        """Stop using the current channel. Pending messages are kept."""
        if self.channel is None:
            return
        was_open = self.is_open
        self.channel = None
        self._queue.clear()
        if was_open:
            self._handle_close()

    async def send_reliable(self, message_type: str, payload: Any) -> list[int]:
        """Send a message that is retransmitted until acknowledged.

        Args:
            message_type: Application message type
            payload: JSON-serialisable payload

        Returns:
            Sequence numbers used (more than one when the payload was chunked)
        """
        whole = reliable_frame(self._next_seq, self.session.epoch, message_type, payload)
        if frame_size(whole) <= self.settings.chunk_threshold:
            return [self._send_new(message_type, payload, message_type, None)]

        text, encoding = encode_payload(payload)
        message_id = f"{self.session.epoch}-{self._next_message_id}"
        self._next_message_id += 1
        fragments = split_payload(text, self.settings.chunk_size)
        logger.debug(f"Chunking {message_type} into {len(fragments)} fragments ({message_id})")

        return [
            self._send_new(
                CHUNK_TYPE,
                chunk_meta(message_id, message_type, index, len(fragments), fragment, encoding),
                message_type,
                message_id,
            )
            for index, fragment in enumerate(fragments)
        ]

    def send_raw(self, message_type: str, payload: Any) -> None:
        """Send a best-effort message: no sequence number, no ack, no retry.

        Raises:
            ChannelNotOpenError: If there is no usable channel
        """
        if self.channel is None or self.channel.readyState in ("closing", "closed"):
            raise ChannelNotOpenError("DataChannel not open")
        self._enqueue(raw_frame(message_type, payload))

    def handle_message(self, message: str | bytes) -> None:
        """Process one message received on the channel."""
        self._last_seen = time.monotonic()

        try:
            frame = deserialize_frame(message)
        except ValueError as e:
            logger.warning(f"Ignoring malformed DataChannel message: {e}")
            return

        kind = frame["kind"]
        if kind == FrameKind.ACK:
            self._handle_ack(frame["ack"])
        elif kind == FrameKind.RELIABLE:
            self._handle_reliable(frame)
        elif kind == FrameKind.PING:
            self._enqueue(ping_frame(FrameKind.PONG, time.time()))
        elif kind == FrameKind.RAW:
            self._deliver(self.on_raw, frame["type"], frame.get("data"))

    def resend_pending(self) -> int:
        """Re-send every unacknowledged message under the current epoch.

        Each message starts a fresh retry budget.

        Returns:
            Number of frames re-sent
        """
        if not self.is_open:
            return 0

        entries = sorted(self._pending.values(), key=lambda entry: entry.seq)
        for entry in entries:
            entry.cancel()
            entry.backoff.reset()
            self._transmit(entry)
            self._schedule_retry(entry)

        if entries:
            logger.info(f"Re-sent {len(entries)} pending reliable frames")
        return len(entries)

    def reset(self, reason: str = "reset") -> None:
        """Drop all pending, dedup and reassembly state.

        Every dropped message is reported once to the failure handler.
        """
        reported: set[str | int] = set()
        for entry in sorted(self._pending.values(), key=lambda entry: entry.seq):
            entry.cancel()
            key = entry.message_id or entry.seq
            if key in reported:
                continue
            reported.add(key)
            self._report_failure(entry, reason)

        self._pending.clear()
        self._seen_floor = 0
        self._seen.clear()
        self._reassembly.clear()
        self._closed_messages.clear()
        self._closed_order.clear()
        self._queue.clear()

    def close(self) -> None:
        """Detach from the channel and stop background tasks."""
        self.detach()
        self.reset("closed")
        for task in (self._pump_task, self._keepalive_task):
            if task is not None and not task.done():
                task.cancel()
        self._pump_task = None
        self._keepalive_task = None

    # ----------------- sending -----------------

    def _send_new(
        self, frame_type: str, data: Any, message_type: str, message_id: str | None
    ) -> int:
        seq = self._next_seq
        self._next_seq += 1

        entry = PendingEntry(
            seq=seq,
            frame_type=frame_type,
            data=data,
            message_type=message_type,
            message_id=message_id,
            backoff=Backoff(
                base_delay=self.settings.retransmit_base_delay,
                max_delay=self.settings.retransmit_max_delay,
                max_attempts=self.settings.retransmit_attempts,
            ),
        )
        self._pending[seq] = entry

        # A closed channel gets everything pending once it opens
        if self.is_open:
            self._transmit(entry)
        self._schedule_retry(entry)
        return seq

    def _transmit(self, entry: PendingEntry) -> None:
        self._enqueue(reliable_frame(entry.seq, self.session.epoch, entry.frame_type, entry.data))

    def _schedule_retry(self, entry: PendingEntry) -> None:
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(entry.backoff.peek(), self._on_retry_timer, entry.seq)

    def _on_retry_timer(self, seq: int) -> None:
        entry = self._pending.get(seq)
        if entry is None:
            return
        entry.timer = None

        if not self.is_open:
            # Attempts are only spent on a channel that can carry them
            self._schedule_retry(entry)
            return

        if entry.backoff.exhausted:
            self._fail(entry, "retry-limit")
            return

        entry.backoff.next_delay()
        logger.debug(f"Retransmitting seq {seq} (attempt {entry.backoff.attempts})")
        self._transmit(entry)
        self._schedule_retry(entry)

    def _fail(self, entry: PendingEntry, reason: str) -> None:
        self._pending.pop(entry.seq, None)
        entry.cancel()
        if entry.message_id is not None:
            # The other fragments of this message are useless now
            for sibling in [e for e in self._pending.values() if e.message_id == entry.message_id]:
                sibling.cancel()
                del self._pending[sibling.seq]
        self._report_failure(entry, reason)

    def _report_failure(self, entry: PendingEntry, reason: str) -> None:
        failure = DeliveryFailure(
            seq=entry.seq,
            message_type=entry.message_type,
            message_id=entry.message_id,
            attempts=entry.backoff.attempts,
            reason=reason,
        )
        logger.warning(
            f"Reliable delivery failed for {failure.message_type} "
            f"(seq {failure.seq}, {reason})"
        )
        if self.on_delivery_failed is None:
            return
        try:
            self.on_delivery_failed(failure)
        except Exception as e:
            logger.error(f"Delivery failure handler raised: {e}")

    def _enqueue(self, frame: Frame) -> None:
        message = serialize_frame(frame)
        channel = self.channel

        if (
            not self._queue
            and self.is_open
            and channel.bufferedAmount <= self.settings.high_water_mark
        ):
            self._write(channel, message)
            return

        self._queue.append(message)
        self._wakeup.set()
        self._ensure_pump()

    def _write(self, channel: Any, message: str) -> None:
        try:
            channel.send(message)
        except Exception as e:
            # Reliable frames are covered by retransmission
            logger.warning(f"DataChannel send failed: {e}")

    def _ensure_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())

    async def _pump(self) -> None:
        """Drain the send queue while the channel is open and below the high-water mark."""
        while True:
            while not self._queue or not self.is_open:
                self._wakeup.clear()
                await self._wakeup.wait()

            channel = self.channel
            if channel.bufferedAmount > self.settings.high_water_mark:
                self._drained.clear()
                await self._drained.wait()
                continue

            self._write(channel, self._queue.popleft())

    # ----------------- receiving -----------------

    def _handle_ack(self, seq: int) -> None:
        entry = self._pending.pop(seq, None)
        if entry is not None:
            entry.cancel()
            logger.debug(f"Acknowledged seq {seq}")

    def _handle_reliable(self, frame: Frame) -> None:
        seq = frame["seq"]
        # Every copy is acknowledged; the sender may have lost our earlier ack
        self._enqueue(ack_frame(seq, self.session.epoch))

        if not self._mark_seen(seq):
            logger.debug(f"Dropping duplicate seq {seq}")
            return

        if frame["type"] == CHUNK_TYPE:
            self._handle_chunk(frame.get("data"))
        else:
            self._deliver(self.on_reliable, frame["type"], frame.get("data"))

    def _mark_seen(self, seq: int) -> bool:
        """Record a sequence number as handled.

        Returns:
            False if it was handled before
        """
        if seq <= self._seen_floor or seq in self._seen:
            return False
        self._seen.add(seq)
        self._advance_seen_floor()

        if len(self._seen) > self.settings.seen_window:
            # Give up on the oldest gap to keep the window bounded
            lowest = min(self._seen)
            logger.info(f"Abandoning missing seqs {self._seen_floor + 1}..{lowest - 1}")
            self._seen_floor = lowest - 1
            self._advance_seen_floor()
        return True

    def _advance_seen_floor(self) -> None:
        while self._seen_floor + 1 in self._seen:
            self._seen_floor += 1
            self._seen.discard(self._seen_floor)

    def _handle_chunk(self, data: Any) -> None:
        if not is_chunk_meta(data):
            logger.warning("Ignoring malformed chunk frame")
            return

        message_id = data["message_id"]
        if message_id in self._closed_messages:
            logger.debug(f"Dropping late fragment of {message_id}")
            return

        now = time.monotonic()
        self._expire_reassemblies(now)

        record = self._reassembly.get(message_id)
        if record is None:
            if len(self._reassembly) >= self.settings.max_reassemblies:
                oldest = next(iter(self._reassembly))
                logger.warning(f"Too many partial messages, discarding {oldest}")
                self._discard_reassembly(oldest)
            record = Reassembly(
                message_type=data["type"],
                total=data["total"],
                encoding=data["encoding"],
                started=now,
            )
            self._reassembly[message_id] = record
        elif record.total != data["total"]:
            logger.warning(f"Chunk total mismatch for {message_id}, dropping fragment")
            return

        record.parts.setdefault(data["index"], data["fragment"])
        if len(record.parts) < record.total:
            return

        self._discard_reassembly(message_id)
        text = "".join(record.parts[index] for index in range(record.total))
        try:
            payload = decode_payload(text, record.encoding)
        except ValueError as e:
            logger.error(f"Failed to reassemble {message_id}: {e}")
            return
        self._deliver(self.on_reliable, record.message_type, payload)

    def _expire_reassemblies(self, now: float) -> None:
        timeout = self.settings.reassembly_timeout
        expired = [
            message_id
            for message_id, record in self._reassembly.items()
            if now - record.started > timeout
        ]
        for message_id in expired:
            logger.warning(f"Discarding partial message {message_id} after {timeout:.0f}s")
            self._discard_reassembly(message_id)

    def _discard_reassembly(self, message_id: str) -> None:
        """Forget a chunked message, finished or not; later fragments are dropped."""
        self._reassembly.pop(message_id, None)
        self._closed_messages.add(message_id)
        self._closed_order.append(message_id)
        while len(self._closed_order) > self.settings.seen_window:
            self._closed_messages.discard(self._closed_order.popleft())

    def _deliver(self, handler: MessageHandler | None, message_type: str, payload: Any) -> None:
        if handler is None:
            logger.debug(f"No handler for {message_type}")
            return
        try:
            handler(message_type, payload)
        except Exception as e:
            logger.error(f"Handler for {message_type} raised: {e}")

    # ----------------- lifecycle -----------------

    def _handle_open(self) -> None:
        logger.info(f"DataChannel opened: {getattr(self.channel, 'label', '?')}")
        self._last_seen = time.monotonic()
        self._drained.set()
        self._wakeup.set()
        if self._queue:
            self._ensure_pump()
        self._start_keepalive()
        self.resend_pending()
        if self.on_open:
            self.on_open()

    def _handle_close(self) -> None:
        logger.info("DataChannel closed")
        self._stop_keepalive()
        # Unblock the pump so it parks on the wakeup event
        self._drained.set()
        if self.on_close:
            self.on_close()

    def _start_keepalive(self) -> None:
        self._stop_keepalive()
        self._keepalive_task = asyncio.get_running_loop().create_task(self._keepalive())

    def _stop_keepalive(self) -> None:
        if self._keepalive_task is not None and self._keepalive_task is not asyncio.current_task():
            self._keepalive_task.cancel()
        self._keepalive_task = None

    async def _keepalive(self) -> None:
        """Ping periodically and report a channel that has gone quiet."""
        while self.is_open:
            await asyncio.sleep(self.settings.keepalive_interval)
            if not self.is_open:
                return

            self._enqueue(ping_frame(FrameKind.PING, time.time()))
            self._expire_reassemblies(time.monotonic())

            idle = time.monotonic() - self._last_seen
            if idle > self.settings.keepalive_idle:
                logger.warning(f"DataChannel silent for {idle:.1f}s")
                self._last_seen = time.monotonic()
                if self.on_liveness_lost:
                    await self.on_liveness_lost()

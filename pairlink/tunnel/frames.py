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

"""DataChannel frame serialization for the reliable-delivery layer.

Frames are JSON text messages tagged with a protocol version and a kind:

- r:    {"v": 1, "kind": "r", "seq": int, "epoch": int, "type": str, "data": any}
- ack:  {"v": 1, "kind": "ack", "ack": int, "epoch": int}
- ping: {"v": 1, "kind": "ping", "t": float}
- pong: {"v": 1, "kind": "pong", "t": float}
- raw:  {"v": 1, "kind": "raw", "type": str, "data": any}

A reliable frame of type "chunk" carries one fragment of an oversized message:

    data = {"message_id": str, "type": str, "index": int, "total": int,
            "fragment": str, "encoding": "text" | "json"}
"""

import json
from enum import Enum
from typing import Any, NotRequired, TypedDict

FRAME_VERSION = 1
CHUNK_TYPE = "chunk"


class FrameKind(str, Enum):
    """Frame kind constants."""

    RELIABLE = "r"
    ACK = "ack"
    PING = "ping"
    PONG = "pong"
    RAW = "raw"


class Frame(TypedDict):
    """Any DataChannel frame."""

    v: int
    kind: str
    seq: NotRequired[int]
    ack: NotRequired[int]
    epoch: NotRequired[int]
    type: NotRequired[str]
    data: NotRequired[Any]
    t: NotRequired[float]


class ChunkMeta(TypedDict):
    """Payload of a chunk frame."""

    message_id: str
    type: str
    index: int
    total: int
    fragment: str
    encoding: str


def reliable_frame(seq: int, epoch: int, message_type: str, data: Any) -> Frame:
    """Build a reliable frame."""
    return {
        "v": FRAME_VERSION,
        "kind": FrameKind.RELIABLE.value,
        "seq": seq,
        "epoch": epoch,
        "type": message_type,
        "data": data,
    }


def ack_frame(seq: int, epoch: int) -> Frame:
    """Build an acknowledgment for a reliable frame."""
    return {"v": FRAME_VERSION, "kind": FrameKind.ACK.value, "ack": seq, "epoch": epoch}


def ping_frame(kind: FrameKind, timestamp: float) -> Frame:
    """Build a keepalive ping or pong."""
    return {"v": FRAME_VERSION, "kind": kind.value, "t": timestamp}


def raw_frame(message_type: str, data: Any) -> Frame:
    """Build a best-effort frame that is never acknowledged."""
    return {"v": FRAME_VERSION, "kind": FrameKind.RAW.value, "type": message_type, "data": data}


def serialize_frame(frame: Frame) -> str:
    """Serialize a frame to its JSON text form.

    Args:
        frame: Frame to serialize

    Returns:
        Compact JSON string
    """
    return json.dumps(frame, separators=(",", ":"), ensure_ascii=False)


def deserialize_frame(message: str | bytes) -> Frame:
    """Parse and validate a DataChannel message.

    Args:
        message: Text (or UTF-8 bytes) received from the channel

    Returns:
        Parsed frame

    Raises:
        ValueError: If the message is not a well-formed frame
    """
    if isinstance(message, bytes):
        message = message.decode("utf-8")

    try:
        frame = json.loads(message)
    except json.JSONDecodeError as e:
        raise ValueError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(frame, dict):
        raise ValueError("Frame must be a JSON object")
    if frame.get("v") != FRAME_VERSION:
        raise ValueError(f"Unsupported frame version: {frame.get('v')!r}")

    kind = frame.get("kind")
    if kind == FrameKind.RELIABLE:
        if not isinstance(frame.get("seq"), int) or not isinstance(frame.get("type"), str):
            raise ValueError("Reliable frame requires integer seq and string type")
    elif kind == FrameKind.ACK:
        if not isinstance(frame.get("ack"), int):
            raise ValueError("Ack frame requires integer ack")
    elif kind == FrameKind.RAW:
        if not isinstance(frame.get("type"), str):
            raise ValueError("Raw frame requires string type")
    elif kind not in (FrameKind.PING, FrameKind.PONG):
        raise ValueError(f"Unknown frame kind: {kind!r}")

    return frame  # type: ignore[return-value]


def encode_payload(payload: Any) -> tuple[str, str]:
    """Text form of a payload, used for size checks and chunking.

    Returns:
        Tuple of (text, encoding) where encoding is "text" for str payloads
        and "json" for everything else
    """
    if isinstance(payload, str):
        return payload, "text"
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False), "json"


def decode_payload(text: str, encoding: str) -> Any:
    """Inverse of encode_payload.

    Raises:
        ValueError: If a json-encoded payload does not parse
    """
    if encoding == "text":
        return text
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Reassembled payload is not valid JSON: {e}") from e


def frame_size(frame: Frame) -> int:
    """Bytes a frame occupies on the channel once serialized."""
    return len(serialize_frame(frame).encode("utf-8"))


def encoded_size(text: str) -> int:
    """Bytes a string occupies inside a serialized frame, quotes excluded.

    JSON escapes and multi-byte UTF-8 sequences are counted.
    """
    return len(json.dumps(text, ensure_ascii=False).encode("utf-8")) - 2


def split_payload(text: str, chunk_size: int) -> list[str]:
    """Split text into ordered fragments of at most chunk_size encoded bytes.

    Each fragment is measured with encoded_size, the way it travels inside a
    chunk frame.

    Args:
        text: Payload text
        chunk_size: Byte budget for one fragment

    Returns:
        Fragments in order (a single empty fragment for empty text)

    Raises:
        ValueError: If chunk_size is not positive or a single character does
            not fit in it
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    fragments: list[str] = []
    start = 0
    while start < len(text):
        # Every character encodes to at least one byte
        end = min(len(text), start + chunk_size)
        size = encoded_size(text[start:end])
        while size > chunk_size:
            length = end - start
            end = start + min(length - 1, length * chunk_size // size)
            if end <= start:
                raise ValueError(f"Character at {start} does not fit in {chunk_size} bytes")
            size = encoded_size(text[start:end])
        fragments.append(text[start:end])
        start = end
    return fragments or [""]


def chunk_meta(
    message_id: str, message_type: str, index: int, total: int, fragment: str, encoding: str
) -> ChunkMeta:
    """Build the data block of one chunk frame."""
    return {
        "message_id": message_id,
        "type": message_type,
        "index": index,
        "total": total,
        "fragment": fragment,
        "encoding": encoding,
    }


def is_chunk_meta(data: Any) -> bool:
    """Check that a chunk frame's data block is well formed."""
    return (
        isinstance(data, dict)
        and isinstance(data.get("message_id"), str)
        and isinstance(data.get("type"), str)
        and isinstance(data.get("index"), int)
        and isinstance(data.get("total"), int)
        and isinstance(data.get("fragment"), str)
        and data.get("encoding") in ("text", "json")
        and 0 <= data["index"] < data["total"]
    )

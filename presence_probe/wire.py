"""Length-prefixed framing shared by every transport and the reference server.

Each frame is a 5-byte ``!BI`` header (frame type, payload length) followed by
the payload. Control frames carry compact JSON objects with a ``type`` key;
data frames carry raw bytes (avatar images).
"""

from __future__ import annotations

import asyncio
import json
import struct
from typing import Any, Dict, List, Optional, Tuple

FRAME_TYPE_CONTROL = 0x01
FRAME_TYPE_DATA = 0x02
MAX_FRAME_BYTES = 16 * 1024 * 1024
HEADER = struct.Struct("!BI")

Frame = Tuple[int, bytes]


class FrameError(ValueError):
    pass


def encode_frame(frame_type: int, payload: bytes) -> bytes:
    if len(payload) > MAX_FRAME_BYTES:
        raise FrameError(f"frame exceeds limit: {len(payload)} bytes")
    return HEADER.pack(frame_type, len(payload)) + payload


def encode_control(message: Dict[str, Any]) -> bytes:
    payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
    return encode_frame(FRAME_TYPE_CONTROL, payload)


def decode_control(payload: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FrameError(f"invalid control payload: {exc}") from exc
    if not isinstance(message, dict) or "type" not in message:
        raise FrameError("control payload is not a typed object")
    return message


async def write_control(writer: asyncio.StreamWriter, message: Dict[str, Any]) -> None:
    writer.write(encode_control(message))
    await writer.drain()


async def write_data(writer: asyncio.StreamWriter, payload: bytes) -> None:
    writer.write(encode_frame(FRAME_TYPE_DATA, payload))
    await writer.drain()


async def read_frame(reader: asyncio.StreamReader) -> Optional[Frame]:
    try:
        header = await reader.readexactly(HEADER.size)
    except asyncio.IncompleteReadError:
        return None
    frame_type, length = HEADER.unpack(header)
    if length > MAX_FRAME_BYTES:
        raise FrameError(f"peer frame exceeds limit: {length} bytes")
    try:
        payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError:
        return None
    return frame_type, payload


class FrameDecoder:
    """Incremental decoder for transports that hand over arbitrary chunks."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[Frame]:
        self._buffer.extend(data)
        frames: List[Frame] = []
        while len(self._buffer) >= HEADER.size:
            frame_type, length = HEADER.unpack_from(self._buffer)
            if length > MAX_FRAME_BYTES:
                raise FrameError(f"peer frame exceeds limit: {length} bytes")
            end = HEADER.size + length
            if len(self._buffer) < end:
                break
            frames.append((frame_type, bytes(self._buffer[HEADER.size:end])))
            del self._buffer[:end]
        return frames

    @property
    def pending(self) -> int:
        return len(self._buffer)

"""Client side of the presence service: connection, sign-on and place calls.

Outbound calls raise :class:`TransportError` when they cannot be delivered.
Inbound traffic is never returned to the caller; it is translated into event
objects and put on the queue handed to :meth:`PresenceTransport.open`.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Dict, Optional

from .config import ProbeConfig, TransportConfig, create_ssl_context
from .errors import TransportError, TransportTimeout
from .events import (
    Disconnecting,
    LinkConnected,
    Navigated,
    PlaceConnected,
    Position,
    Reason,
    RoomChat,
    Whispered,
)
from .wire import (
    FRAME_TYPE_CONTROL,
    FRAME_TYPE_DATA,
    FrameError,
    decode_control,
    encode_control,
    encode_frame,
    read_frame,
)

PROTOCOL_VERSION = 1


class PresenceTransport(abc.ABC):
    """Operations the probe needs from the presence service."""

    def __init__(self, config: TransportConfig, op_timeout: float = 10.0) -> None:
        self.config = config
        self.op_timeout = op_timeout
        self._events: Optional[asyncio.Queue] = None

    @abc.abstractmethod
    async def open(self, events: asyncio.Queue) -> None:
        """Establish the link; ``LinkConnected`` follows on ``events``."""

    @abc.abstractmethod
    async def sign_on(self, name: str, password: str) -> None: ...

    @abc.abstractmethod
    async def navigate(self, room: str, position: Position, copy: int) -> None: ...

    @abc.abstractmethod
    async def whisper(self, member_id: int, text: str) -> None: ...

    @abc.abstractmethod
    async def chat(self, text: str) -> None: ...

    @abc.abstractmethod
    async def move(self, position: Position) -> None: ...

    @abc.abstractmethod
    async def set_face(self, image: bytes) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...


class FramedPresenceTransport(PresenceTransport):
    """Maps the presence operations onto control/data frames.

    Subclasses supply the byte pipe: :meth:`_send_bytes` for output and a
    receive path that calls :meth:`_handle_frame` for every inbound frame.
    """

    def __init__(self, config: TransportConfig, op_timeout: float = 10.0) -> None:
        super().__init__(config, op_timeout)
        self._closing = False
        self._lost_posted = False

    @abc.abstractmethod
    async def _send_bytes(self, data: bytes) -> None: ...

    async def _send(self, data: bytes, what: str) -> None:
        if self._closing:
            raise TransportError(f"{what}: transport closed")
        try:
            await asyncio.wait_for(self._send_bytes(data), timeout=self.op_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportTimeout(f"{what}: no progress within {self.op_timeout:g}s", Reason.TIMEOUT) from exc
        except (ConnectionError, OSError, RuntimeError) as exc:
            raise TransportError(f"{what}: {exc}", Reason.CONNECTION_LOST) from exc

    async def _send_control(self, message: Dict[str, Any]) -> None:
        await self._send(encode_control(message), str(message.get("type")))

    async def sign_on(self, name: str, password: str) -> None:
        await self._send_control({"type": "sign_on", "name": name, "password": password})

    async def navigate(self, room: str, position: Position, copy: int) -> None:
        await self._send_control({"type": "navigate", "room": room, "x": position.x, "y": position.y, "copy": copy})

    async def whisper(self, member_id: int, text: str) -> None:
        await self._send_control({"type": "whisper", "to": member_id, "text": text})

    async def chat(self, text: str) -> None:
        await self._send_control({"type": "chat", "text": text})

    async def move(self, position: Position) -> None:
        await self._send_control({"type": "move", "x": position.x, "y": position.y})

    async def set_face(self, image: bytes) -> None:
        await self._send(encode_frame(FRAME_TYPE_DATA, image), "set_face")

    def _post(self, event: object) -> None:
        if self._events is not None:
            self._events.put_nowait(event)

    def _post_lost(self, reason: Reason) -> None:
        if self._closing or self._lost_posted:
            return
        self._lost_posted = True
        self._post(Disconnecting(reason=int(reason), scope="link"))

    def _handle_frame(self, frame_type: int, payload: bytes) -> None:
        if frame_type != FRAME_TYPE_CONTROL:
            raise FrameError(f"unexpected frame type {frame_type:#x} from server")
        message = decode_control(payload)
        msg_type = message["type"]
        try:
            event = self._to_event(msg_type, message)
        except (KeyError, TypeError, ValueError) as exc:
            raise FrameError(f"malformed {msg_type} message: {exc}") from exc
        if event is None:
            logging.debug("ignored control message %s", msg_type)
            return
        if isinstance(event, Disconnecting):
            self._lost_posted = True
        self._post(event)

    @staticmethod
    def _to_event(msg_type: str, message: Dict[str, Any]) -> Optional[object]:
        if msg_type == "welcome":
            attributes = {
                key: str(value)
                for key, value in message.items()
                if key != "type" and value is not None
            }
            return LinkConnected(attributes=attributes)
        if msg_type == "place_connected":
            return PlaceConnected(member_id=int(message["member_id"]))
        if msg_type == "disconnecting":
            return Disconnecting(reason=int(message.get("reason", 0)), scope=str(message.get("scope", "link")))
        if msg_type == "navigated":
            position = None
            if "x" in message and "y" in message:
                position = Position(int(message["x"]), int(message["y"]))
            return Navigated(
                reason=int(message["reason"]),
                room=str(message.get("room", "")),
                position=position,
                copy=int(message.get("copy", 0)),
                title=str(message.get("title", "")),
            )
        if msg_type == "whispered":
            return Whispered(
                sender_id=int(message["from_id"]),
                sender_name=str(message.get("from_name", "")),
                text=str(message["text"]),
            )
        if msg_type == "chat":
            return RoomChat(sender_name=str(message.get("from_name", "")), text=str(message.get("text", "")))
        return None


class TcpPresenceTransport(FramedPresenceTransport):
    """Presence link over a TCP stream, optionally wrapped in TLS."""

    def __init__(self, config: TransportConfig, op_timeout: float = 10.0) -> None:
        super().__init__(config, op_timeout)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None

    async def open(self, events: asyncio.Queue) -> None:
        self._events = events
        ssl_ctx = create_ssl_context(self.config.tls)
        try:
            self._reader, self._writer = await asyncio.open_connection(
                self.config.host, self.config.port, ssl=ssl_ctx
            )
        except OSError as exc:
            raise TransportError(f"connect to {self.config.label} failed: {exc}", Reason.CONNECTION_LOST) from exc
        await self._send_control({"type": "hello", "version": PROTOCOL_VERSION})
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _send_bytes(self, data: bytes) -> None:
        if self._writer is None:
            raise TransportError("transport not open")
        self._writer.write(data)
        await self._writer.drain()

    async def _read_loop(self) -> None:
        assert self._reader is not None
        try:
            while True:
                frame = await read_frame(self._reader)
                if frame is None:
                    logging.debug("connection to %s closed by server", self.config.label)
                    break
                self._handle_frame(*frame)
        except FrameError as exc:
            logging.error("protocol error from %s: %s", self.config.label, exc)
            self._post_lost(Reason.PROTOCOL_ERROR)
            return
        except (ConnectionError, OSError) as exc:
            logging.warning("connection to %s failed: %s", self.config.label, exc)
        self._post_lost(Reason.CONNECTION_LOST)

    async def close(self) -> None:
        if self._closing:
            return
        if self._writer is not None and not self._writer.is_closing():
            try:
                await self._send_control({"type": "bye"})
            except TransportError as exc:
                logging.debug("bye not delivered: %s", exc)
        self._closing = True
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self._writer is not None:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except Exception:  # pragma: no cover - best effort
                pass


def create_transport(config: ProbeConfig) -> PresenceTransport:
    transport_cfg = config.transport
    if transport_cfg.scheme == "quic":
        from .quic_transport import QuicPresenceTransport

        return QuicPresenceTransport(transport_cfg, op_timeout=config.op_timeout)
    return TcpPresenceTransport(transport_cfg, op_timeout=config.op_timeout)

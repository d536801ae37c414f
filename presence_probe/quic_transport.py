"""Presence link carried on a single bidirectional QUIC stream."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from typing import Callable, Optional

from aioquic.asyncio import connect
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import ConnectionTerminated, StreamDataReceived

from .config import TransportConfig
from .errors import TransportError
from .events import Reason
from .transport import PROTOCOL_VERSION, FramedPresenceTransport
from .wire import FrameDecoder, FrameError, encode_control

ALPN = "presence/1"


class PresenceQuicProtocol(QuicConnectionProtocol):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._decoder = FrameDecoder()
        self._stream_id: Optional[int] = None
        self._on_frame: Optional[Callable[[int, bytes], None]] = None
        self._on_closed: Optional[Callable[[Reason], None]] = None

    def attach(self,
               on_frame: Callable[[int, bytes], None],
               on_closed: Callable[[Reason], None]) -> None:
        self._on_frame = on_frame
        self._on_closed = on_closed
        self._stream_id = self._quic.get_next_available_stream_id(is_unidirectional=False)

    def send_frame(self, data: bytes) -> None:
        if self._stream_id is None:
            raise TransportError("QUIC stream not open")
        self._quic.send_stream_data(self._stream_id, data, end_stream=False)
        self.transmit()

    def quic_event_received(self, event) -> None:  # type: ignore[override]
        if isinstance(event, StreamDataReceived):
            if event.stream_id != self._stream_id or self._on_frame is None:
                return
            try:
                for frame_type, payload in self._decoder.feed(event.data):
                    self._on_frame(frame_type, payload)
            except FrameError as exc:
                logging.error("protocol error on QUIC stream: %s", exc)
                self._notify_closed(Reason.PROTOCOL_ERROR)
                self.close()
                return
            if event.end_stream:
                self._notify_closed(Reason.CONNECTION_LOST)
        elif isinstance(event, ConnectionTerminated):
            logging.debug("QUIC connection terminated error_code=%s reason=%s",
                          event.error_code, event.reason_phrase)
            self._notify_closed(Reason.CONNECTION_LOST)

    def _notify_closed(self, reason: Reason) -> None:
        if self._on_closed is not None:
            self._on_closed(reason)


class QuicPresenceTransport(FramedPresenceTransport):
    def __init__(self, config: TransportConfig, op_timeout: float = 10.0) -> None:
        super().__init__(config, op_timeout)
        self._stack = contextlib.AsyncExitStack()
        self._protocol: Optional[PresenceQuicProtocol] = None

    def _quic_configuration(self) -> QuicConfiguration:
        configuration = QuicConfiguration(is_client=True, alpn_protocols=[ALPN])
        configuration.server_name = self.config.host
        tls = self.config.tls
        if tls.ca_file:
            configuration.load_verify_locations(tls.ca_file)
        if not tls.verify:
            configuration.verify_mode = ssl.CERT_NONE
        if tls.cert_file:
            configuration.load_cert_chain(tls.cert_file, tls.key_file)
        return configuration

    async def open(self, events: asyncio.Queue) -> None:
        self._events = events
        try:
            protocol = await self._stack.enter_async_context(
                connect(
                    self.config.host,
                    self.config.port,
                    configuration=self._quic_configuration(),
                    create_protocol=PresenceQuicProtocol,
                    wait_connected=True,
                )
            )
        except (OSError, ConnectionError) as exc:
            raise TransportError(f"connect to {self.config.label} failed: {exc}", Reason.CONNECTION_LOST) from exc
        assert isinstance(protocol, PresenceQuicProtocol)
        protocol.attach(self._on_frame, self._post_lost)
        self._protocol = protocol
        await self._send(encode_control({"type": "hello", "version": PROTOCOL_VERSION}), "hello")

    def _on_frame(self, frame_type: int, payload: bytes) -> None:
        try:
            self._handle_frame(frame_type, payload)
        except FrameError as exc:
            logging.error("protocol error from %s: %s", self.config.label, exc)
            self._post_lost(Reason.PROTOCOL_ERROR)

    async def _send_bytes(self, data: bytes) -> None:
        if self._protocol is None:
            raise TransportError("transport not open")
        self._protocol.send_frame(data)

    async def close(self) -> None:
        if self._closing:
            return
        if self._protocol is not None:
            try:
                await self._send(encode_control({"type": "bye"}), "bye")
            except TransportError as exc:
                logging.debug("bye not delivered: %s", exc)
        self._closing = True
        if self._protocol is not None:
            self._protocol.close()
        try:
            await self._stack.aclose()
        except Exception:  # pragma: no cover - best effort
            pass

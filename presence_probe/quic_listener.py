"""QUIC side of the reference server.

Every bidirectional stream a client opens is handed to the same stream
handler the TCP listener uses, through a reader fed from QUIC events and a
writer that sends back on that stream.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import tempfile
from pathlib import Path
from typing import Callable, Dict

from aioquic.asyncio import serve
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.asyncio.server import QuicServer
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import ConnectionTerminated, StreamDataReceived

from .certs import write_self_signed
from .quic_transport import ALPN

StreamHandler = Callable[[asyncio.StreamReader, "QuicStreamWriter"], None]


class QuicStreamWriter:
    """Just enough of :class:`asyncio.StreamWriter` to answer on one stream."""

    def __init__(self, protocol: "PresenceQuicServerProtocol", stream_id: int) -> None:
        self._protocol = protocol
        self.stream_id = stream_id
        self._closed = False
        self._lost = False

    def write(self, data: bytes) -> None:
        if self.is_closing():
            raise ConnectionResetError(f"QUIC stream {self.stream_id} is closed")
        self._protocol.send_stream(self.stream_id, data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self._closed or self._lost

    def close(self) -> None:
        if self.is_closing():
            self._closed = True
            return
        self._closed = True
        self._protocol.send_stream(self.stream_id, b"", end_stream=True)

    async def wait_closed(self) -> None:
        return None

    def get_extra_info(self, name: str, default=None):
        if name == "peername":
            return ("quic", self.stream_id)
        return default

    def connection_lost(self) -> None:
        self._lost = True


class PresenceQuicServerProtocol(QuicConnectionProtocol):
    def __init__(self, *args, handle_stream: StreamHandler, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._handle_stream = handle_stream
        self._readers: Dict[int, asyncio.StreamReader] = {}
        self._writers: Dict[int, QuicStreamWriter] = {}

    def send_stream(self, stream_id: int, data: bytes, end_stream: bool = False) -> None:
        self._quic.send_stream_data(stream_id, data, end_stream=end_stream)
        self.transmit()

    def quic_event_received(self, event) -> None:  # type: ignore[override]
        if isinstance(event, StreamDataReceived):
            reader = self._readers.get(event.stream_id)
            if reader is None:
                reader = asyncio.StreamReader()
                writer = QuicStreamWriter(self, event.stream_id)
                self._readers[event.stream_id] = reader
                self._writers[event.stream_id] = writer
                self._handle_stream(reader, writer)
            if event.data:
                reader.feed_data(event.data)
            if event.end_stream:
                reader.feed_eof()
        elif isinstance(event, ConnectionTerminated):
            logging.debug("QUIC client gone error_code=%s reason=%s", event.error_code, event.reason_phrase)
            for writer in self._writers.values():
                writer.connection_lost()
            for reader in self._readers.values():
                reader.feed_eof()


def server_configuration(common_name: str) -> QuicConfiguration:
    configuration = QuicConfiguration(is_client=False, alpn_protocols=[ALPN])
    # load_cert_chain reads the files immediately
    with tempfile.TemporaryDirectory(prefix="presence-quic-") as tmp:
        crt_path, key_path = write_self_signed(Path(tmp), common_name)
        configuration.load_cert_chain(crt_path, key_path)
    return configuration


async def start_quic_listener(host: str, port: int, handle_stream: StreamHandler) -> QuicServer:
    return await serve(
        host,
        port,
        configuration=server_configuration(host),
        create_protocol=functools.partial(PresenceQuicServerProtocol, handle_stream=handle_stream),
    )


def listener_port(server: QuicServer) -> int:
    return server._transport.get_extra_info("sockname")[1]  # pylint: disable=protected-access

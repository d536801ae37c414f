from __future__ import annotations

import asyncio

import pytest
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.connection import QuicConnection
from aioquic.quic.events import ConnectionTerminated, StreamDataReceived

from presence_probe.config import parse_destination
from presence_probe.errors import TransportError
from presence_probe.events import Disconnecting, LinkConnected, Reason
from presence_probe.quic_transport import ALPN, PresenceQuicProtocol, QuicPresenceTransport
from presence_probe.wire import HEADER, MAX_FRAME_BYTES, FrameDecoder, decode_control, encode_control


class RecordingProtocol(PresenceQuicProtocol):
    """Keeps the QUIC connection offline; ``close`` is only recorded."""

    def __init__(self) -> None:
        super().__init__(QuicConnection(configuration=QuicConfiguration(is_client=True, alpn_protocols=[ALPN])))
        self.frames = []
        self.closed_with = []
        self.close_calls = 0
        self.attach(lambda frame_type, payload: self.frames.append((frame_type, payload)),
                    self.closed_with.append)

    def close(self, *args, **kwargs) -> None:
        self.close_calls += 1

    def data(self, data: bytes, end_stream: bool = False, stream_id=None) -> None:
        if stream_id is None:
            stream_id = self._stream_id
        self.quic_event_received(StreamDataReceived(data=data, end_stream=end_stream, stream_id=stream_id))


class StubProtocol:
    def __init__(self) -> None:
        self.sent = []
        self.closed = False

    def send_frame(self, data: bytes) -> None:
        self.sent.append(data)

    def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_frame_split_across_stream_events():
    protocol = RecordingProtocol()
    frame = encode_control({"type": "welcome", "community": "test"})
    protocol.data(frame[:3])
    assert protocol.frames == []
    protocol.data(frame[3:])
    assert len(protocol.frames) == 1
    assert decode_control(protocol.frames[0][1])["community"] == "test"
    assert protocol.closed_with == []


@pytest.mark.asyncio
async def test_coalesced_frames_in_one_stream_event():
    protocol = RecordingProtocol()
    protocol.data(encode_control({"type": "welcome"}) + encode_control({"type": "place_connected", "member_id": 3}))
    assert [decode_control(payload)["type"] for _, payload in protocol.frames] == ["welcome", "place_connected"]


@pytest.mark.asyncio
async def test_other_streams_are_ignored():
    protocol = RecordingProtocol()
    protocol.data(encode_control({"type": "welcome"}), stream_id=protocol._stream_id + 4)
    assert protocol.frames == []


@pytest.mark.asyncio
async def test_end_of_stream_reports_lost_connection_after_last_frame():
    protocol = RecordingProtocol()
    protocol.data(encode_control({"type": "welcome"}), end_stream=True)
    assert len(protocol.frames) == 1
    assert protocol.closed_with == [Reason.CONNECTION_LOST]


@pytest.mark.asyncio
async def test_connection_terminated_reports_lost_connection():
    protocol = RecordingProtocol()
    protocol.quic_event_received(ConnectionTerminated(error_code=0, frame_type=None, reason_phrase="bye"))
    assert protocol.closed_with == [Reason.CONNECTION_LOST]


@pytest.mark.asyncio
async def test_oversized_frame_is_a_protocol_error():
    protocol = RecordingProtocol()
    protocol.data(HEADER.pack(0x01, MAX_FRAME_BYTES + 1))
    assert protocol.closed_with == [Reason.PROTOCOL_ERROR]
    assert protocol.close_calls == 1
    assert protocol.frames == []


@pytest.mark.asyncio
async def test_send_before_attach_is_refused():
    protocol = PresenceQuicProtocol(QuicConnection(configuration=QuicConfiguration(is_client=True)))
    with pytest.raises(TransportError):
        protocol.send_frame(encode_control({"type": "hello"}))


@pytest.mark.asyncio
async def test_inbound_frames_become_events():
    transport = QuicPresenceTransport(parse_destination("quic://127.0.0.1"))
    transport._events = asyncio.Queue()
    transport._on_frame(0x01, encode_control({"type": "welcome", "lobby_url": "lobby"})[HEADER.size:])
    event = transport._events.get_nowait()
    assert isinstance(event, LinkConnected)
    assert event.attributes["lobby_url"] == "lobby"


@pytest.mark.asyncio
async def test_malformed_inbound_frame_disconnects_once():
    transport = QuicPresenceTransport(parse_destination("quic://127.0.0.1"))
    transport._events = asyncio.Queue()
    transport._on_frame(0x02, b"\x00")
    transport._on_frame(0x01, b"not json")
    event = transport._events.get_nowait()
    assert event == Disconnecting(reason=int(Reason.PROTOCOL_ERROR))
    assert transport._events.empty()


@pytest.mark.asyncio
async def test_close_says_bye_then_closes_the_connection():
    transport = QuicPresenceTransport(parse_destination("quic://127.0.0.1"))
    transport._events = asyncio.Queue()
    stub = StubProtocol()
    transport._protocol = stub
    await transport.close()
    frames = FrameDecoder().feed(b"".join(stub.sent))
    assert [decode_control(payload)["type"] for _, payload in frames] == ["bye"]
    assert stub.closed
    transport._post_lost(Reason.CONNECTION_LOST)
    assert transport._events.empty()
    with pytest.raises(TransportError):
        await transport.chat("too late")


@pytest.mark.asyncio
async def test_close_without_open_is_quiet():
    transport = QuicPresenceTransport(parse_destination("quic://127.0.0.1"))
    await transport.close()
    await transport.close()

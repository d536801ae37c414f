#!/usr/bin/env python3
"""Minimal presence server for running the probe locally.

It speaks the probe's framed protocol over TCP (optionally TLS) and, when a
QUIC port is configured, over QUIC as well: members sign on, navigate into
room copies, whisper to each other and chat in their room.
Room copies up to ``full_copies`` always answer ``ROOM_IS_FULL`` so overflow
handling can be exercised; ``capacity`` limits every other copy.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import ssl
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .events import Reason
from .wire import (
    FRAME_TYPE_CONTROL,
    FRAME_TYPE_DATA,
    FrameError,
    decode_control,
    read_frame,
    write_control,
)

RoomKey = Tuple[str, int]


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 9100
    community: str = "probe-community"
    lobby_url: str = "lobby"
    capacity: int = 0
    full_copies: int = 0
    whisper_delay: float = 0.0
    password: Optional[str] = None
    tls: bool = False
    quic_port: Optional[int] = None


@dataclass
class Member:
    member_id: int
    name: str
    writer: Any
    room: Optional[RoomKey] = None
    x: int = 0
    y: int = 0
    face: bytes = b""


@dataclass
class ServerLog:
    """What the server saw; used by tests and the shutdown summary."""

    sign_ons: List[str] = field(default_factory=list)
    navigations: List[Tuple[str, int, int, int]] = field(default_factory=list)
    whispers: List[Tuple[int, int, str]] = field(default_factory=list)
    chats: List[Tuple[str, str]] = field(default_factory=list)
    moves: int = 0
    faces: int = 0


class PresenceServer:
    def __init__(self, config: ServerConfig, ssl_context: Optional[ssl.SSLContext] = None) -> None:
        self.config = config
        self.ssl_context = ssl_context
        self.log = ServerLog()
        self.members: Dict[int, Member] = {}
        self.rooms: Dict[RoomKey, Set[int]] = {}
        self._next_id = 1
        self._server: Optional[asyncio.AbstractServer] = None
        self._quic_server: Any = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            return self.config.port
        return self._server.sockets[0].getsockname()[1]

    @property
    def quic_port(self) -> Optional[int]:
        if self._quic_server is None:
            return self.config.quic_port
        from .quic_listener import listener_port

        return listener_port(self._quic_server)

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_client, self.config.host, self.config.port, ssl=self.ssl_context
        )
        logging.info("presence server listening on %s:%d tls=%s",
                     self.config.host, self.port, self.ssl_context is not None)
        if self.config.quic_port is not None:
            from .quic_listener import start_quic_listener

            self._quic_server = await start_quic_listener(
                self.config.host, self.config.quic_port, self._spawn_stream_handler
            )
            logging.info("presence server listening on quic://%s:%d", self.config.host, self.quic_port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        async with self._server:
            await self._server.serve_forever()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for member in list(self.members.values()):
            member.writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
        if self._quic_server is not None:
            self._quic_server.close()
            self._quic_server = None

    def _spawn_stream_handler(self, reader: asyncio.StreamReader, writer: Any) -> None:
        task = asyncio.ensure_future(self._handle_client(reader, writer))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        member: Optional[Member] = None
        try:
            frame = await read_frame(reader)
            if frame is None:
                return
            frame_type, payload = frame
            if frame_type != FRAME_TYPE_CONTROL or decode_control(payload)["type"] != "hello":
                await self._refuse(writer, Reason.PROTOCOL_ERROR)
                return
            await write_control(writer, {
                "type": "welcome",
                "community": self.config.community,
                "lobby_url": self.config.lobby_url,
            })
            while True:
                frame = await read_frame(reader)
                if frame is None:
                    break
                frame_type, payload = frame
                if frame_type == FRAME_TYPE_DATA:
                    if member is not None:
                        member.face = payload
                        self.log.faces += 1
                    continue
                message = decode_control(payload)
                msg_type = message["type"]
                if msg_type == "bye":
                    break
                if msg_type == "sign_on":
                    member = await self._sign_on(message, writer)
                    if member is None:
                        break
                    continue
                if member is None:
                    await self._refuse(writer, Reason.PROTOCOL_ERROR)
                    break
                await self._handle_member_message(member, msg_type, message)
        except (FrameError, KeyError, TypeError, ValueError) as exc:
            logging.warning("client %s protocol error: %s", peer, exc)
        except (ConnectionError, OSError) as exc:
            logging.debug("client %s connection error: %s", peer, exc)
        finally:
            if member is not None:
                self._leave_room(member)
                self.members.pop(member.member_id, None)
                logging.info("member %d (%s) left", member.member_id, member.name)
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:  # pragma: no cover - best effort
                pass

    async def _refuse(self, writer: asyncio.StreamWriter, reason: Reason, scope: str = "link") -> None:
        await write_control(writer, {"type": "disconnecting", "reason": int(reason), "scope": scope})

    async def _sign_on(self, message: dict, writer: asyncio.StreamWriter) -> Optional[Member]:
        name = str(message.get("name", ""))
        if not name or (self.config.password is not None and message.get("password") != self.config.password):
            await self._refuse(writer, Reason.AUTH_FAILED, scope="place")
            return None
        member = Member(member_id=self._next_id, name=name, writer=writer)
        self._next_id += 1
        self.members[member.member_id] = member
        self.log.sign_ons.append(name)
        await write_control(writer, {"type": "place_connected", "member_id": member.member_id})
        logging.info("member %d signed on as %s", member.member_id, name)
        return member

    async def _handle_member_message(self, member: Member, msg_type: str, message: dict) -> None:
        if msg_type == "navigate":
            await self._navigate(member, str(message["room"]), int(message["copy"]),
                                 int(message["x"]), int(message["y"]))
        elif msg_type == "whisper":
            target = self.members.get(int(message["to"]))
            text = str(message["text"])
            self.log.whispers.append((member.member_id, int(message["to"]), text))
            if target is None:
                logging.debug("whisper to unknown member %s dropped", message["to"])
                return
            outgoing = {
                "type": "whispered",
                "from_id": member.member_id,
                "from_name": member.name,
                "text": text,
            }
            if self.config.whisper_delay > 0:
                task = asyncio.create_task(self._deliver_later(target, outgoing))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            else:
                await self._send_to(target, outgoing)
        elif msg_type == "chat":
            text = str(message["text"])
            self.log.chats.append((member.name, text))
            if member.room is None:
                return
            for other_id in self.rooms.get(member.room, set()):
                other = self.members.get(other_id)
                if other is not None and other_id != member.member_id:
                    await self._send_to(other, {"type": "chat", "from_name": member.name, "text": text})
        elif msg_type == "move":
            member.x = int(message["x"])
            member.y = int(message["y"])
            self.log.moves += 1
        else:
            logging.debug("ignored %s from member %d", msg_type, member.member_id)

    async def _deliver_later(self, target: Member, message: dict) -> None:
        await asyncio.sleep(self.config.whisper_delay)
        if target.member_id in self.members:
            await self._send_to(target, message)

    async def _send_to(self, member: Member, message: dict) -> None:
        try:
            await write_control(member.writer, message)
        except (ConnectionError, OSError) as exc:
            logging.debug("delivery to member %d failed: %s", member.member_id, exc)

    async def _navigate(self, member: Member, room: str, copy: int, x: int, y: int) -> None:
        self.log.navigations.append((room, copy, x, y))
        key = (room, copy)
        occupants = self.rooms.get(key, set())
        full = copy <= self.config.full_copies or (
            self.config.capacity > 0
            and len(occupants) >= self.config.capacity
            and member.member_id not in occupants
        )
        reply = {"type": "navigated", "room": room, "copy": copy, "x": x, "y": y}
        if full:
            reply.update(reason=int(Reason.ROOM_IS_FULL), title="")
        else:
            self._leave_room(member)
            self.rooms.setdefault(key, set()).add(member.member_id)
            member.room = key
            member.x, member.y = x, y
            reply.update(reason=int(Reason.OK), title=f"{room} #{copy}")
        await write_control(member.writer, reply)

    def _leave_room(self, member: Member) -> None:
        if member.room is None:
            return
        occupants = self.rooms.get(member.room)
        if occupants is not None:
            occupants.discard(member.member_id)
            if not occupants:
                del self.rooms[member.room]
        member.room = None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Local presence server for the latency probe")
    parser.add_argument("--host", default="127.0.0.1", help="Listen address")
    parser.add_argument("--port", type=int, default=9100, help="Listen port")
    parser.add_argument("--community", default="probe-community", help="Community name sent on connect")
    parser.add_argument("--lobby", dest="lobby_url", default="lobby", help="Lobby room offered to clients")
    parser.add_argument("--capacity", type=int, default=0, help="Members per room copy (0 = unlimited)")
    parser.add_argument("--full-copies", dest="full_copies", type=int, default=0,
                        help="Room copies that always report full")
    parser.add_argument("--whisper-delay", dest="whisper_delay", type=float, default=0.0,
                        help="Seconds to hold whispers before delivery")
    parser.add_argument("--password", help="Require this password on sign-on")
    parser.add_argument("--tls", action="store_true", help="Serve TLS with a generated self-signed certificate")
    parser.add_argument("--quic-port", dest="quic_port", type=int,
                        help="Also serve QUIC on this UDP port with a generated certificate")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser


async def serve(config: ServerConfig) -> None:
    ssl_context = None
    if config.tls:
        from .certs import server_ssl_context

        ssl_context = server_ssl_context(config.host)
    server = PresenceServer(config, ssl_context)
    try:
        await server.serve_forever()
    finally:
        await server.close()
        logging.info("served sign-ons=%d whispers=%d chats=%d navigations=%d",
                     len(server.log.sign_ons),
                     len(server.log.whispers),
                     len(server.log.chats),
                     len(server.log.navigations))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config = ServerConfig(
        host=args.host,
        port=args.port,
        community=args.community,
        lobby_url=args.lobby_url,
        capacity=args.capacity,
        full_copies=args.full_copies,
        whisper_delay=args.whisper_delay,
        password=args.password,
        tls=args.tls,
        quic_port=args.quic_port,
    )
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())

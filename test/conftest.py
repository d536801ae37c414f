from __future__ import annotations

import asyncio
import random
from pathlib import Path
from typing import List, Optional, Set, Tuple

import pytest

from presence_probe.config import ProbeConfig, TransportConfig
from presence_probe.errors import TransportError
from presence_probe.events import Position
from presence_probe.transport import PresenceTransport


class FakeTransport(PresenceTransport):
    """Records every call; ``fail_on`` names operations that raise."""

    def __init__(self, fail_on: Optional[Set[str]] = None) -> None:
        super().__init__(TransportConfig(), op_timeout=1.0)
        self.fail_on = set(fail_on or ())
        self.calls: List[Tuple[str, tuple]] = []
        self.closed = False

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise TransportError(f"{name} refused")

    def named(self, name: str) -> List[tuple]:
        return [args for call, args in self.calls if call == name]

    async def open(self, events: asyncio.Queue) -> None:
        self._events = events
        self._record("open")

    async def sign_on(self, name: str, password: str) -> None:
        self._record("sign_on", name, password)

    async def navigate(self, room: str, position: Position, copy: int) -> None:
        self._record("navigate", room, position, copy)

    async def whisper(self, member_id: int, text: str) -> None:
        self._record("whisper", member_id, text)

    async def chat(self, text: str) -> None:
        self._record("chat", text)

    async def move(self, position: Position) -> None:
        self._record("move", position)

    async def set_face(self, image: bytes) -> None:
        self._record("set_face", image)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def make_config(tmp_path: Path):
    def factory(**overrides) -> ProbeConfig:
        values = dict(
            user="prober",
            community="127.0.0.1:9100",
            password="secret",
            avatar_file=None,
            interval=0.01,
            loop_count=3,
            message_size=10,
            max_lag=5,
            op_timeout=1.0,
            connect_timeout=1.0,
            handshake_timeout=2.0,
        )
        values.update(overrides)
        return ProbeConfig(**values)

    return factory


@pytest.fixture
def make_transport():
    return FakeTransport

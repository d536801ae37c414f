"""Events delivered to the probe's single event queue.

Transports translate inbound control frames into these dataclasses; the
runner adds its own timer and watchdog events. Everything is consumed by one
dispatch coroutine, so handlers never overlap.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Optional


class Reason(enum.IntEnum):
    OK = 0
    ROOM_IS_FULL = 1
    AUTH_FAILED = 2
    NO_SUCH_ROOM = 3
    CONNECTION_LOST = 4
    PROTOCOL_ERROR = 5
    SERVER_SHUTDOWN = 6
    TIMEOUT = 7


def reason_name(code: int) -> str:
    try:
        return Reason(code).name
    except ValueError:
        return f"UNKNOWN_{code}"


@dataclass(frozen=True)
class Position:
    x: int
    y: int


@dataclass(frozen=True)
class LinkConnected:
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PlaceConnected:
    member_id: int


@dataclass(frozen=True)
class Disconnecting:
    reason: int
    scope: str = "link"


@dataclass(frozen=True)
class Navigated:
    reason: int
    room: str = ""
    position: Optional[Position] = None
    copy: int = 0
    title: str = ""


@dataclass(frozen=True)
class Whispered:
    sender_id: int
    sender_name: str
    text: str


@dataclass(frozen=True)
class RoomChat:
    sender_name: str
    text: str


@dataclass(frozen=True)
class TimerFired:
    pass


@dataclass(frozen=True)
class HandshakeTimedOut:
    pass


@dataclass(frozen=True)
class NavigationTimedOut:
    attempt: int

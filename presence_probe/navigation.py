"""Room placement: entry, random walk and overflow into room copies."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import NavigationError
from .events import Navigated, NavigationTimedOut, Position, Reason, reason_name
from .session import Session
from .transport import PresenceTransport

AXIS_LIMIT = 10000
ENTRY_POSITION = Position(500, 500)
FIRST_COPY = 1


def random_position(rng: random.Random) -> Position:
    return Position(rng.randrange(AXIS_LIMIT), rng.randrange(AXIS_LIMIT))


@dataclass
class RoomPresence:
    room: Optional[str] = None
    position: Position = ENTRY_POSITION
    copy: int = 0
    arrived: bool = False

    def wander(self, rng: random.Random) -> Position:
        self.position = random_position(rng)
        return self.position


class RoomNavigator:
    """Issues navigation requests and reacts to their results.

    A ``ROOM_IS_FULL`` result is retried forever, each time in the next room
    copy at a fresh random spot. Any other failure ends the session.
    """

    def __init__(self,
                 session: Session,
                 transport: PresenceTransport,
                 presence: RoomPresence,
                 rng: random.Random,
                 on_pending: Optional[Callable[[int], None]] = None) -> None:
        self.session = session
        self.transport = transport
        self.presence = presence
        self.rng = rng
        self._on_pending = on_pending
        self.attempt = 0
        self.pending: Optional[int] = None

    async def enter(self, room: str) -> None:
        self.presence.room = room
        self.presence.position = ENTRY_POSITION
        self.presence.copy = FIRST_COPY
        self.presence.arrived = False
        await self._request()

    async def _request(self) -> None:
        if self.presence.room is None:
            raise NavigationError("no room to navigate to", Reason.NO_SUCH_ROOM)
        self.attempt += 1
        self.pending = self.attempt
        logging.debug("[%s] navigate #%d to %s copy=%d at (%d, %d)",
                      self.session.name,
                      self.attempt,
                      self.presence.room,
                      self.presence.copy,
                      self.presence.position.x,
                      self.presence.position.y)
        await self.transport.navigate(self.presence.room, self.presence.position, self.presence.copy)
        if self._on_pending is not None:
            self._on_pending(self.attempt)

    async def on_navigated(self, event: Navigated) -> None:
        if self.pending is None:
            logging.warning("[%s] stray navigation result %s for %s ignored",
                            self.session.name, reason_name(event.reason), event.room or self.presence.room)
            return
        self.pending = None
        if event.reason == Reason.OK:
            self.presence.arrived = True
            logging.info("[%s] entered %s copy %d %s",
                         self.session.name,
                         event.room or self.presence.room,
                         event.copy or self.presence.copy,
                         event.title)
            return
        if event.reason == Reason.ROOM_IS_FULL:
            self.presence.position = random_position(self.rng)
            self.presence.copy += 1
            self.session.stats.overflow_retries += 1
            logging.info("[%s] %s is full, trying copy %d",
                         self.session.name, self.presence.room, self.presence.copy)
            await self._request()
            return
        raise NavigationError(
            f"navigation to {self.presence.room} failed ({reason_name(event.reason)})",
            event.reason,
        )

    def on_timeout(self, event: NavigationTimedOut) -> None:
        if self.pending is not None and event.attempt == self.pending:
            raise NavigationError(
                f"no navigation result for {self.presence.room} copy {self.presence.copy}",
                Reason.TIMEOUT,
            )

"""Work done on every timer tick: room entry, probes, wandering and chatter."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional

from .config import ProbeConfig
from .errors import NavigationError, TransportError
from .events import Reason
from .navigation import RoomNavigator, RoomPresence
from .probe import ProbeMessage, broadcast, make_filler
from .quotes import QuoteCorpus
from .session import EXIT_OK, Session
from .transport import PresenceTransport


class ProbeScheduler:
    def __init__(self,
                 config: ProbeConfig,
                 session: Session,
                 transport: PresenceTransport,
                 presence: RoomPresence,
                 navigator: RoomNavigator,
                 corpus: Optional[QuoteCorpus],
                 rng: random.Random,
                 clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self.session = session
        self.transport = transport
        self.presence = presence
        self.navigator = navigator
        self.corpus = corpus
        self.rng = rng
        self.clock = clock
        self.remaining = config.loop_count
        self.talk_countdown = config.talk_every
        self.filler = make_filler(config.message_size)

    async def tick(self) -> None:
        session = self.session
        if not session.connected:
            logging.warning("[%s] timer fired while %s", session.name, session.phase.value)
            return

        if not session.entered_room:
            session.entered_room = True
            await self.enter_room()

        if self.remaining <= 0:
            session.finish(EXIT_OK, f"sent {session.stats.probes_sent} probes")
            return
        self.remaining -= 1

        message = ProbeMessage.compose(self.clock(), self.filler)
        try:
            await self.transport.whisper(session.member_id, message.encode())
        except TransportError as exc:
            session.fail(f"failed to whisper to myself ({exc})")
            return
        session.stats.probes_sent += 1

        position = self.presence.wander(self.rng)
        try:
            await self.transport.move(position)
        except TransportError as exc:
            logging.warning("[%s] move failed: %s", session.name, exc)

        self.talk_countdown -= 1
        if self.talk_countdown <= 0:
            self.talk_countdown = self.config.talk_every
            await self.babble()

    async def enter_room(self) -> None:
        room = self.config.room or self.session.lobby_url
        if not room:
            raise NavigationError("no room configured and the community has no lobby", Reason.NO_SUCH_ROOM)
        await self.navigator.enter(room)
        await self.put_on_avatar()

    async def put_on_avatar(self) -> None:
        path = self.config.avatar_file
        if path is None:
            return
        try:
            image = path.read_bytes()
        except OSError as exc:
            logging.debug("[%s] avatar %s skipped: %s", self.session.name, path, exc)
            return
        if not image:
            return
        try:
            await self.transport.set_face(image)
        except TransportError as exc:
            logging.debug("[%s] avatar not applied: %s", self.session.name, exc)

    async def babble(self) -> None:
        if not self.corpus:
            return
        await broadcast(self.session, self.transport, self.corpus.pick(self.rng))

"""Connection lifecycle of the single probe session."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import TransportError
from .events import Disconnecting, LinkConnected, PlaceConnected, reason_name
from .transport import PresenceTransport

EXIT_OK = 0
EXIT_FAILURE = 1


class Phase(enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass
class ProbeStats:
    probes_sent: int = 0
    echoes: int = 0
    lag_reports: int = 0
    worst_latency: int = 0
    relayed: int = 0
    overflow_retries: int = 0
    broadcast_failures: int = 0


@dataclass
class Session:
    name: str
    password: str = ""
    phase: Phase = Phase.CONNECTING
    member_id: Optional[int] = None
    entered_room: bool = False
    community_name: Optional[str] = None
    lobby_url: Optional[str] = None
    exit_code: Optional[int] = None
    exit_reason: str = ""
    stats: ProbeStats = field(default_factory=ProbeStats)

    @property
    def connected(self) -> bool:
        return self.phase is Phase.CONNECTED

    def is_self(self, member_id: int) -> bool:
        return self.member_id is not None and member_id == self.member_id

    def finish(self, exit_code: int, reason: str) -> None:
        # The first cause to end the session decides the exit status.
        if self.phase is Phase.DISCONNECTED:
            return
        self.phase = Phase.DISCONNECTED
        self.exit_code = exit_code
        self.exit_reason = reason
        if exit_code == EXIT_OK:
            logging.info("[%s] session finished: %s", self.name, reason)
        else:
            logging.error("[%s] %s", self.name, reason)

    def fail(self, reason: str) -> None:
        self.finish(EXIT_FAILURE, reason)


class SessionMachine:
    """Applies transport lifecycle events to the session."""

    def __init__(self,
                 session: Session,
                 transport: PresenceTransport,
                 on_connected: Callable[[], None]) -> None:
        self.session = session
        self.transport = transport
        self._on_connected = on_connected

    async def link_connected(self, event: LinkConnected) -> None:
        session = self.session
        if session.phase is not Phase.CONNECTING:
            logging.warning("[%s] link connected while %s", session.name, session.phase.value)
            return
        session.community_name = event.attributes.get("community")
        session.lobby_url = event.attributes.get("lobby_url")
        logging.info("[%s] community=%s lobby=%s", session.name, session.community_name, session.lobby_url)
        try:
            await self.transport.sign_on(session.name, session.password)
        except TransportError as exc:
            session.fail(f"cannot sign-on ({exc})")

    def place_connected(self, event: PlaceConnected) -> None:
        session = self.session
        if session.phase is not Phase.CONNECTING:
            logging.warning("[%s] place connected while %s", session.name, session.phase.value)
            return
        session.member_id = event.member_id
        session.phase = Phase.CONNECTED
        logging.info("[%s] signed on as member %d", session.name, event.member_id)
        self._on_connected()

    def disconnecting(self, event: Disconnecting) -> None:
        if event.reason:
            self.session.fail(f"{event.scope} disconnected ({reason_name(event.reason)})")
        else:
            self.session.finish(EXIT_OK, f"{event.scope} signed off")

    def handshake_timed_out(self) -> None:
        if self.session.phase is Phase.CONNECTING:
            self.session.fail("sign-on did not complete in time")

"""Probe messages and round-trip evaluation of their echoes."""

from __future__ import annotations

import logging
import string
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import TransportError
from .events import Whispered
from .session import Session
from .transport import PresenceTransport

FIELD_SEPARATOR = "\t"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
REPORT_TIME_FORMAT = "%Y%m%d %H:%M:%S"

LAG_LOGGER = logging.getLogger("presence_probe.lag")


def make_filler(size: int) -> str:
    alphabet = string.ascii_lowercase
    return "".join(alphabet[i % len(alphabet)] for i in range(size))


@dataclass(frozen=True)
class ProbeMessage:
    sent_at: int
    time_text: str
    filler: str

    @classmethod
    def compose(cls, now: float, filler: str) -> "ProbeMessage":
        return cls(int(now), time.strftime(TIME_FORMAT, time.localtime(now)), filler)

    def encode(self) -> str:
        return FIELD_SEPARATOR.join((str(self.sent_at), self.time_text, self.filler))

    @staticmethod
    def parse_timestamp(text: str) -> int:
        head = text.split(FIELD_SEPARATOR, 1)[0]
        return int(head.strip())


def format_lag_report(now: float, name: str, elapsed: int) -> str:
    stamp = time.strftime(REPORT_TIME_FORMAT, time.localtime(now))
    return f"{stamp} - {name} - LAG {elapsed} seconds"


async def broadcast(session: Session, transport: PresenceTransport, text: str) -> bool:
    """Say ``text`` in the room; failures are counted, not fatal."""
    try:
        await transport.chat(text)
    except TransportError as exc:
        session.stats.broadcast_failures += 1
        logging.warning("[%s] room chat failed: %s", session.name, exc)
        return False
    return True


class LatencyEvaluator:
    def __init__(self,
                 session: Session,
                 transport: PresenceTransport,
                 max_lag: int,
                 lag_to_log: bool = False,
                 clock: Callable[[], float] = time.time) -> None:
        self.session = session
        self.transport = transport
        self.max_lag = max_lag
        self.lag_to_log = lag_to_log
        self.clock = clock

    async def on_whisper(self, event: Whispered) -> Optional[str]:
        """Handle a whisper; returns the lag report when one was produced."""
        if self.session.is_self(event.sender_id):
            return await self._evaluate_echo(event.text)
        await self._relay(event)
        return None

    async def _evaluate_echo(self, text: str) -> Optional[str]:
        session = self.session
        try:
            sent_at = ProbeMessage.parse_timestamp(text)
        except ValueError:
            logging.warning("[%s] unreadable probe echo %r", session.name, text[:40])
            return None
        now = self.clock()
        elapsed = int(now) - sent_at
        session.stats.echoes += 1
        session.stats.worst_latency = max(session.stats.worst_latency, elapsed)
        if elapsed <= self.max_lag:
            logging.debug("[%s] echo after %ds", session.name, elapsed)
            return None

        report = format_lag_report(now, session.name, elapsed)
        session.stats.lag_reports += 1
        if self.lag_to_log:
            LAG_LOGGER.warning("%s", report)
        else:
            await broadcast(session, self.transport, report)
        return report

    async def _relay(self, event: Whispered) -> None:
        self.session.stats.relayed += 1
        await broadcast(self.session, self.transport, f"{event.sender_name} said: {event.text}")

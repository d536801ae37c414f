"""Event loop driving one probe session from connect to exit."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Callable, Optional

from .config import ProbeConfig
from .errors import ProbeError, TransportError
from .events import (
    Disconnecting,
    HandshakeTimedOut,
    LinkConnected,
    Navigated,
    NavigationTimedOut,
    PlaceConnected,
    RoomChat,
    TimerFired,
    Whispered,
)
from .navigation import RoomNavigator, RoomPresence
from .probe import LatencyEvaluator
from .quotes import QuoteCorpus
from .scheduler import ProbeScheduler
from .session import EXIT_FAILURE, Phase, Session, SessionMachine
from .transport import PresenceTransport


class ProbeRunner:
    """Owns the session context and its single event queue.

    Transport callbacks, the probe timer and the watchdogs all post events to
    ``self.events``; :meth:`run` consumes them one at a time until the session
    is disconnected.
    """

    def __init__(self,
                 config: ProbeConfig,
                 transport: PresenceTransport,
                 corpus: Optional[QuoteCorpus] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self.transport = transport
        self.rng = rng or random.Random(config.seed)
        self.events: asyncio.Queue = asyncio.Queue()
        self.session = Session(name=config.user, password=config.password)
        self.presence = RoomPresence()
        self.machine = SessionMachine(self.session, transport, on_connected=self._arm_timer)
        self.navigator = RoomNavigator(
            self.session, transport, self.presence, self.rng, on_pending=self._arm_navigation_watchdog
        )
        self.evaluator = LatencyEvaluator(
            self.session, transport, config.max_lag, lag_to_log=config.lag_to_log, clock=clock
        )
        self.scheduler = ProbeScheduler(
            config, self.session, transport, self.presence, self.navigator, corpus, self.rng, clock=clock
        )
        self._timer: Optional[asyncio.TimerHandle] = None
        self._handshake_watchdog: Optional[asyncio.TimerHandle] = None
        self._navigation_watchdog: Optional[asyncio.TimerHandle] = None

    def _post_later(self, delay: float, event: object) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self.events.put_nowait, event)

    def _arm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._post_later(self.config.interval, TimerFired())

    def _arm_navigation_watchdog(self, attempt: int) -> None:
        self._disarm_navigation_watchdog()
        self._navigation_watchdog = self._post_later(self.config.op_timeout, NavigationTimedOut(attempt))

    def _disarm_navigation_watchdog(self) -> None:
        if self._navigation_watchdog is not None:
            self._navigation_watchdog.cancel()
            self._navigation_watchdog = None

    async def run(self) -> int:
        config = self.config
        session = self.session
        logging.info("[%s] target=%s loop interval=%gs loops=%d msg size=%d max lag=%ds",
                     session.name,
                     config.transport.label,
                     config.interval,
                     config.loop_count,
                     config.message_size,
                     config.max_lag)
        try:
            await asyncio.wait_for(self.transport.open(self.events), timeout=config.connect_timeout)
        except asyncio.TimeoutError:
            session.fail(f"connect to {config.transport.label} timed out after {config.connect_timeout:g}s")
        except TransportError as exc:
            session.fail(f"failed connecting: {exc}")
        else:
            self._handshake_watchdog = self._post_later(config.handshake_timeout, HandshakeTimedOut())
            while session.phase is not Phase.DISCONNECTED:
                event = await self.events.get()
                await self.dispatch(event)
        finally:
            self._cancel_timers()
            await self.transport.close()

        summarize_session(session)
        return session.exit_code if session.exit_code is not None else EXIT_FAILURE

    async def dispatch(self, event: object) -> None:
        try:
            if isinstance(event, TimerFired):
                self._timer = None
                await self.scheduler.tick()
                if self.session.connected:
                    self._arm_timer()
            elif isinstance(event, Whispered):
                await self.evaluator.on_whisper(event)
            elif isinstance(event, Navigated):
                if self.navigator.pending is not None:
                    self._disarm_navigation_watchdog()
                await self.navigator.on_navigated(event)
            elif isinstance(event, LinkConnected):
                await self.machine.link_connected(event)
            elif isinstance(event, PlaceConnected):
                self.machine.place_connected(event)
            elif isinstance(event, Disconnecting):
                self.machine.disconnecting(event)
            elif isinstance(event, NavigationTimedOut):
                self.navigator.on_timeout(event)
            elif isinstance(event, HandshakeTimedOut):
                self.machine.handshake_timed_out()
            elif isinstance(event, RoomChat):
                logging.debug("[%s] %s: %s", self.session.name, event.sender_name, event.text)
            else:
                logging.debug("ignored event %r", event)
        except ProbeError as exc:
            self.session.fail(str(exc))

    def _cancel_timers(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._handshake_watchdog is not None:
            self._handshake_watchdog.cancel()
            self._handshake_watchdog = None
        self._disarm_navigation_watchdog()


def summarize_session(session: Session) -> None:
    stats = session.stats
    logging.info("[%s] exit=%s reason=%s", session.name, session.exit_code, session.exit_reason)
    logging.info("[%s] probes sent=%d echoes=%d lag reports=%d worst latency=%ds",
                 session.name, stats.probes_sent, stats.echoes, stats.lag_reports, stats.worst_latency)
    logging.info("[%s] relayed whispers=%d overflow retries=%d broadcast failures=%d",
                 session.name, stats.relayed, stats.overflow_retries, stats.broadcast_failures)

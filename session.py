"""
WebSocket streaming session.

Each connection runs three concurrent loops that share one termination signal:

- sender: fetch a snapshot, push it as a text frame, then wait for the next
  tick, sending pings on the same timeline when the gap would exceed the
  ping interval
- receiver: "close" ends the session, a non-negative integer changes the
  push interval (milliseconds) from the next tick on, anything else is ignored
- watchdog: ends the session when nothing was heard from or delivered to the
  client for ping_interval + ping_grace seconds

Whichever loop reaches a terminal condition first wins; the others are cancelled.
"""

import asyncio
import itertools
import logging
from enum import Enum
from typing import Optional, Callable, Awaitable

from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

EMPTY_SNAPSHOT = "[]"


class SessionState(Enum):
    ACTIVE = "active"
    CLIENT_CLOSED = "client_closed"
    SERVER_TIMEOUT = "server_timeout"
    SEND_FAILED = "send_failed"
    ABORTED = "aborted"


class StreamingSession:
    """One WebSocket client receiving periodic snapshots"""

    _ids = itertools.count(1)

    def __init__(self, websocket, cache, interval_ms: int, ping_interval: float = 10.0,
                 ping_grace: float = 5.0, send_retries: int = 3, send_retry_delay: float = 0.5):
        """
        Args:
            websocket: websockets ServerConnection (or anything with send/ping/recv iteration)
            cache: SnapshotCache providing fetch_fresh()
            interval_ms: Initial push interval in milliseconds
            ping_interval: Seconds between liveness pings, 0 disables pings and the watchdog
            ping_grace: Extra seconds of silence before the client is declared gone
            send_retries: Retries after a failed send before giving up
            send_retry_delay: Seconds between send retries
        """
        self.id = next(StreamingSession._ids)
        self.websocket = websocket
        self.cache = cache
        # Written by the receiver, read by the sender once per tick
        self.interval_ms = interval_ms
        self.ping_interval = ping_interval
        self.ping_grace = ping_grace
        self.send_retries = send_retries
        self.send_retry_delay = send_retry_delay
        self.state = SessionState.ACTIVE
        self.frames_sent = 0
        self.pings_sent = 0
        self.last_activity = 0.0
        self._done: Optional[asyncio.Event] = None

    @property
    def watchdog_enabled(self) -> bool:
        return self.ping_interval > 0

    def touch(self):
        """Record client activity (successful send, pong, or incoming frame)"""
        self.last_activity = asyncio.get_running_loop().time()

    def finish(self, state: SessionState):
        """Move to a terminal state; the first caller wins"""
        if self.state is SessionState.ACTIVE:
            self.state = state
            logger.info(f"[session {self.id}] {state.value} after {self.frames_sent} frame(s), {self.pings_sent} ping(s)")
        if self._done is not None:
            self._done.set()

    async def run(self) -> SessionState:
        """Run until a terminal condition, then cancel every loop"""
        self._done = asyncio.Event()
        self.touch()
        logger.info(f"[session {self.id}] opened, interval={self.interval_ms}ms")

        loops = [self._sender(), self._receiver()]
        if self.watchdog_enabled:
            loops.append(self._watchdog())
        tasks = [asyncio.ensure_future(loop) for loop in loops]
        done_waiter = asyncio.ensure_future(self._done.wait())

        try:
            await asyncio.wait(tasks + [done_waiter], return_when=asyncio.FIRST_COMPLETED)
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is not None:
                    logger.error(f"[session {self.id}] loop failed", exc_info=task.exception())
                    self.finish(SessionState.ABORTED)
            # A loop that returned without a verdict still ends the session
            self.finish(SessionState.ABORTED)
        finally:
            for task in tasks + [done_waiter]:
                task.cancel()
            await asyncio.gather(*tasks, done_waiter, return_exceptions=True)

        return self.state

    # -------------------------------------------------------------------------
    # Sender
    # -------------------------------------------------------------------------

    async def fetch(self) -> str:
        """Fresh snapshot, bounded by the ping interval when pings are enabled"""
        if not self.watchdog_enabled:
            return await self.cache.fetch_fresh()
        try:
            return await asyncio.wait_for(self.cache.fetch_fresh(), timeout=self.ping_interval)
        except asyncio.TimeoutError:
            logger.warning(f"[session {self.id}] snapshot not ready after {self.ping_interval}s, sending empty")
            return EMPTY_SNAPSHOT

    async def _deliver(self, what: str, action: Callable[[], Awaitable]) -> bool:
        """
        Run a send action with bounded retries.

        Returns:
            True once the action succeeds, False after the last retry fails
        """
        for attempt in range(self.send_retries + 1):
            try:
                await action()
                return True
            except (WebSocketException, OSError) as e:
                if attempt >= self.send_retries:
                    logger.warning(f"[session {self.id}] {what} failed after {attempt + 1} attempts: {e}")
                    return False
                logger.warning(f"[session {self.id}] {what} failed ({e}), retrying in {self.send_retry_delay}s")
                await asyncio.sleep(self.send_retry_delay)
        return False

    async def _send_snapshot(self, payload: str):
        await self.websocket.send(payload)
        self.frames_sent += 1
        self.touch()

    async def _send_ping(self):
        pong_waiter = await self.websocket.ping()
        self.pings_sent += 1
        pong_waiter.add_done_callback(self._on_pong)

    def _on_pong(self, future: asyncio.Future):
        if not future.cancelled() and future.exception() is None:
            self.touch()

    async def _sender(self):
        loop = asyncio.get_running_loop()

        while True:
            started = loop.time()
            # Changes made by the receiver apply from the next tick
            due = started + self.interval_ms / 1000

            payload = await self.fetch()
            if not await self._deliver("send", lambda: self._send_snapshot(payload)):
                self.finish(SessionState.SEND_FAILED)
                return
            last_frame = loop.time()

            while True:
                now = loop.time()
                if now >= due:
                    break
                ping_at = last_frame + self.ping_interval
                if self.watchdog_enabled and ping_at < due:
                    await asyncio.sleep(max(0.0, ping_at - now))
                    if not await self._deliver("ping", self._send_ping):
                        self.finish(SessionState.SEND_FAILED)
                        return
                    last_frame = loop.time()
                else:
                    await asyncio.sleep(due - now)

            # Interval 0: still yield to the other loops
            await asyncio.sleep(0)

    # -------------------------------------------------------------------------
    # Receiver
    # -------------------------------------------------------------------------

    def handle_message(self, message) -> bool:
        """
        Apply one client frame.

        Returns:
            False when the client asked to close
        """
        self.touch()
        if not isinstance(message, str):
            return True

        text = message.strip()
        if text.lower() == "close":
            return False

        # Plain ASCII digits only: no sign, underscores or full-width digits
        if not (text.isascii() and text.isdigit()):
            logger.debug(f"[session {self.id}] ignoring message: {text[:32]!r}")
            return True

        interval = int(text)
        logger.info(f"[session {self.id}] interval {self.interval_ms}ms -> {interval}ms")
        self.interval_ms = interval
        return True

    async def _receiver(self):
        try:
            async for message in self.websocket:
                if not self.handle_message(message):
                    break
        except ConnectionClosed as e:
            logger.debug(f"[session {self.id}] connection closed: {e}")
        self.finish(SessionState.CLIENT_CLOSED)

    # -------------------------------------------------------------------------
    # Watchdog
    # -------------------------------------------------------------------------

    async def _watchdog(self):
        loop = asyncio.get_running_loop()
        limit = self.ping_interval + self.ping_grace

        while True:
            remaining = self.last_activity + limit - loop.time()
            if remaining <= 0:
                logger.warning(f"[session {self.id}] no activity for {limit}s, closing")
                self.finish(SessionState.SERVER_TIMEOUT)
                return
            await asyncio.sleep(remaining)

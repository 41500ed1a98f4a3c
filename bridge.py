"""
NHI Bridge Server - HTTP polling and WebSocket streaming
========================================================
Serves the NHI card snapshot over a single websockets server:

- GET /         JSON array of the cards currently in the readers
- GET /version  version descriptor
- GET /ws       WebSocket stream of snapshots (see session.py)
"""

import asyncio
import email.utils
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from http import HTTPStatus
from typing import Optional, Callable, Dict, Any, List
from urllib.parse import urlsplit, parse_qs

from websockets.datastructures import Headers
from websockets.http11 import Response

from config import BridgeConfig
from nhicard import __version__, CardRecord, PlatformError, serialize_snapshot
from session import StreamingSession

logger = logging.getLogger(__name__)

EMPTY_SNAPSHOT = "[]"


class SnapshotCache:
    """
    Process-wide cache of the last serialized snapshot.

    Two locks:
    - acquisition lock: held for the whole hardware pass, only ever claimed
      non-blockingly, so at most one acquisition runs at a time
    - publish lock: guards the payload string, held only for the copy/swap,
      never across hardware I/O

    A caller that finds an acquisition in flight gets the previous snapshot
    immediately instead of queuing behind slow readers.
    """

    def __init__(self, acquire: Callable[[], List[CardRecord]],
                 executor: Optional[ThreadPoolExecutor] = None):
        """
        Args:
            acquire: Blocking callable returning a full snapshot
                     (e.g. CardAcquirer.acquire)
            executor: Thread pool for the blocking acquisition
        """
        self._acquire = acquire
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="nhi_reader")
        self._payload = EMPTY_SNAPSHOT
        self._acquisition_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._inflight: Optional[asyncio.Future] = None
        self.cycles = 0

    @property
    def busy(self) -> bool:
        """True while an acquisition is running"""
        return self._acquisition_lock.locked()

    def fetch_cached(self) -> str:
        """Current serialized snapshot. Never touches the hardware."""
        with self._publish_lock:
            return self._payload

    async def fetch_fresh(self) -> str:
        """
        Run one acquisition and return its snapshot, or return the previous
        snapshot right away if another acquisition is already running.
        """
        with self._publish_lock:
            claimed = self._acquisition_lock.acquire(blocking=False)

        if not claimed:
            logger.debug("Acquisition in flight, serving cached snapshot")
            return self.fetch_cached()

        # Shielded: the acquisition finishes and publishes even if this caller goes away
        self._inflight = asyncio.ensure_future(self._refresh())
        return await asyncio.shield(self._inflight)

    async def _refresh(self) -> str:
        try:
            loop = asyncio.get_running_loop()
            try:
                records = await loop.run_in_executor(self._executor, self._acquire)
                payload = serialize_snapshot(records)
            except PlatformError as e:
                logger.error(f"Acquisition failed, keeping previous snapshot: {e.message}")
                return self.fetch_cached()
            except Exception:
                logger.exception("Unexpected acquisition error, keeping previous snapshot")
                return self.fetch_cached()

            with self._publish_lock:
                self._payload = payload
                self.cycles += 1
            logger.debug(f"Snapshot #{self.cycles} published: {len(records)} card(s)")
            return payload
        finally:
            self._acquisition_lock.release()

    async def wait_idle(self):
        """Wait for the in-flight acquisition, if any, to publish"""
        if self._inflight is not None and not self._inflight.done():
            await asyncio.shield(self._inflight)

    def close(self):
        self._executor.shutdown(wait=False)


def version_info(version: str = __version__) -> Dict[str, Any]:
    """Split a version string like '1.2.3-beta.1' into its parts"""
    core, _, pre = version.partition("-")
    parts = (core.split(".") + ["0", "0", "0"])[:3]
    major, minor, patch = (int(p) for p in parts)
    return {
        "text": version,
        "major": major,
        "minor": minor,
        "patch": patch,
        "pre": pre,
    }


def make_response(status: HTTPStatus, body: str,
                  content_type: str = "application/json; charset=utf-8") -> Response:
    """Build a plain HTTP response for the websockets server"""
    data = body.encode("utf-8")
    headers = Headers([
        ("Date", email.utils.formatdate(usegmt=True)),
        ("Connection", "close"),
        ("Content-Length", str(len(data))),
        ("Content-Type", content_type),
    ])
    return Response(status.value, status.phrase, headers, data)


def parse_interval(path: str) -> Optional[int]:
    """
    Read the ``interval`` query parameter (milliseconds).

    Returns:
        The interval, or None if absent

    Raises:
        ValueError if present but not a non-negative integer
    """
    query = parse_qs(urlsplit(path).query)
    values = query.get("interval")
    if not values:
        return None
    text = values[-1]
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"invalid interval: {text!r}")
    return int(text)


class NHIBridge:
    """Routes HTTP requests and WebSocket sessions onto the snapshot cache"""

    def __init__(self, cache: SnapshotCache, config: Optional[BridgeConfig] = None):
        self.cache = cache
        self.config = config or BridgeConfig()
        self.sessions: Dict[int, StreamingSession] = {}

    async def process_request(self, connection, request) -> Optional[Response]:
        """
        websockets process_request hook.

        Answers / and /version as plain HTTP; returns None for /ws so the
        WebSocket handshake goes ahead.
        """
        path = urlsplit(request.path).path

        if path == "/":
            response = make_response(HTTPStatus.OK, await self.cache.fetch_fresh())
        elif path == "/version":
            response = make_response(HTTPStatus.OK, json.dumps(version_info()))
        elif path == "/ws":
            try:
                parse_interval(request.path)
            except ValueError:
                response = make_response(HTTPStatus.BAD_REQUEST, "invalid interval",
                                         content_type="text/plain; charset=utf-8")
            else:
                return None
        else:
            response = make_response(HTTPStatus.NOT_FOUND, "not found",
                                     content_type="text/plain; charset=utf-8")

        logger.info(f"GET {request.path} -> {response.status_code}")
        return response

    def process_response(self, connection, request, response: Response) -> Optional[Response]:
        """websockets process_response hook: headers set on every response"""
        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"
        if "Access-Control-Allow-Origin" not in response.headers:
            response.headers["Access-Control-Allow-Origin"] = "*"
        return None

    async def handler(self, websocket):
        """Handle WebSocket connection"""
        interval = parse_interval(websocket.request.path)
        if interval is None:
            interval = self.config.default_interval_ms

        session = StreamingSession(
            websocket,
            self.cache,
            interval_ms=interval,
            ping_interval=self.config.ping_interval,
            ping_grace=self.config.ping_grace,
            send_retries=self.config.send_retries,
            send_retry_delay=self.config.send_retry_delay,
        )
        self.sessions[session.id] = session
        logger.info(f"Client connected. Total: {len(self.sessions)}")

        try:
            await session.run()
        finally:
            self.sessions.pop(session.id, None)
            await websocket.close()
            logger.info(f"Client disconnected. Total: {len(self.sessions)}")

"""
NHI Bridge Server
=================
Reads Taiwan NHI cards (健保卡) from every attached PC/SC reader and serves
them over HTTP and WebSocket.

Default: http://127.0.0.1:8000

    nhi-bridge                       # listen on 127.0.0.1:8000
    nhi-bridge -i 0.0.0.0 -p 12345   # listen on 0.0.0.0:12345
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, List

import websockets

from bridge import NHIBridge, SnapshotCache
from config import BridgeConfig
from nhicard import __version__, CardAcquirer
from nhicard.pcsc import PCSCContext

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 2.0  # seconds


def setup_logging(level: str = "INFO", log_file: str = ""):
    """Log to the console and, if a path is given, to a UTF-8 file"""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    # websockets logs every handshake failure at INFO; keep our own access log
    logging.getLogger("websockets").setLevel(logging.WARNING)


def parse_args(argv: Optional[List[str]] = None, defaults: Optional[BridgeConfig] = None) -> BridgeConfig:
    """Command line flags on top of environment/default configuration"""
    defaults = defaults or BridgeConfig.from_env()

    parser = argparse.ArgumentParser(
        prog="nhi-bridge",
        description="Read Taiwan NHI cards over an HTTP API and a WebSocket stream.",
    )
    parser.add_argument("-i", "--interface", "--ip", dest="host", default=defaults.host,
                        help="network interface IP to listen on")
    parser.add_argument("-p", "--port", type=int, default=defaults.port,
                        help="port to listen on")
    parser.add_argument("--interval", "--default-ws-card-fetch-interval", dest="default_interval_ms",
                        type=int, default=defaults.default_interval_ms, metavar="MILLI_SECONDS",
                        help="default WebSocket push interval in milliseconds")
    parser.add_argument("--ping-interval", type=float, default=defaults.ping_interval, metavar="SECONDS",
                        help="WebSocket ping interval, 0 disables pings and the liveness watchdog")
    parser.add_argument("--ping-grace", type=float, default=defaults.ping_grace, metavar="SECONDS",
                        help="extra silence tolerated before a client is dropped")
    parser.add_argument("--send-retries", type=int, default=defaults.send_retries,
                        help="retries after a failed WebSocket send")
    parser.add_argument("--send-retry-delay", type=float, default=defaults.send_retry_delay, metavar="SECONDS",
                        help="delay between send retries")
    parser.add_argument("--log-level", default=defaults.log_level,
                        help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", default=defaults.log_file,
                        help="log file path, empty to disable")
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)
    config = BridgeConfig(**vars(args))
    try:
        config.validate()
    except ValueError as e:
        parser.error(str(e))
    return config


async def main(config: BridgeConfig):
    context = PCSCContext()
    cache = SnapshotCache(CardAcquirer(context).acquire)
    bridge = NHIBridge(cache, config)

    print("=" * 60)
    print(f"  NHI Bridge Server v{__version__}")
    print("=" * 60)
    print(f"  HTTP      : http://{config.host}:{config.port}/")
    print(f"  WebSocket : ws://{config.host}:{config.port}/ws")
    print(f"  Interval  : {config.default_interval_ms} ms")
    print("=" * 60)
    print()

    try:
        async with websockets.serve(
            bridge.handler,
            config.host,
            config.port,
            process_request=bridge.process_request,
            process_response=bridge.process_response,
            # Liveness is handled per session
            ping_interval=None,
        ):
            logger.info(f"listening on http://{config.host}:{config.port}")
            await asyncio.Future()
    finally:
        # Let a running acquisition publish before the context goes away
        try:
            await asyncio.wait_for(cache.wait_idle(), timeout=SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Acquisition still running at shutdown")
        cache.close()
        if not cache.busy:
            context.release()


def run(argv: Optional[List[str]] = None):
    config = parse_args(argv)
    setup_logging(config.log_level, config.log_file)
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        print("\nServer stopped.")
    except OSError as e:
        logger.error(f"Cannot start server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()

"""
NHI Bridge configuration.

Defaults can be overridden with NHI_BRIDGE_* environment variables and then
with command line flags (see server.py).
"""

import os
from dataclasses import dataclass, fields

# Configuration
HOST = "127.0.0.1"
PORT = 8000
DEFAULT_INTERVAL_MS = 3000     # WebSocket push cadence, milliseconds
PING_INTERVAL = 10.0           # seconds, 0 disables pings and the watchdog
PING_GRACE = 5.0               # seconds of silence tolerated past PING_INTERVAL
SEND_RETRIES = 3
SEND_RETRY_DELAY = 0.5         # seconds
LOG_LEVEL = "INFO"
LOG_FILE = "nhi_bridge.log"

ENV_PREFIX = "NHI_BRIDGE_"


@dataclass
class BridgeConfig:
    host: str = HOST
    port: int = PORT
    default_interval_ms: int = DEFAULT_INTERVAL_MS
    ping_interval: float = PING_INTERVAL
    ping_grace: float = PING_GRACE
    send_retries: int = SEND_RETRIES
    send_retry_delay: float = SEND_RETRY_DELAY
    log_level: str = LOG_LEVEL
    log_file: str = LOG_FILE

    # default_interval_ms is read from NHI_BRIDGE_INTERVAL
    _ENV_NAMES = {"default_interval_ms": "INTERVAL"}

    @classmethod
    def from_env(cls, environ=None) -> "BridgeConfig":
        """Build a config from NHI_BRIDGE_* environment variables"""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            name = ENV_PREFIX + cls._ENV_NAMES.get(f.name, f.name.upper())
            raw = environ.get(name)
            if raw is None:
                continue
            try:
                values[f.name] = f.type(raw) if f.type in (int, float) else raw
            except ValueError:
                raise ValueError(f"{name} must be {f.type.__name__}, got {raw!r}")
        config = cls(**values)
        config.validate()
        return config

    def validate(self):
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")
        if self.default_interval_ms < 0:
            raise ValueError("interval must not be negative")
        if self.ping_interval < 0 or self.ping_grace < 0:
            raise ValueError("ping interval and grace must not be negative")
        if self.send_retries < 0 or self.send_retry_delay < 0:
            raise ValueError("send retries and delay must not be negative")

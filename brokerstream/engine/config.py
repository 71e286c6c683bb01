"""Write-once stream configuration and logging setup for engine modules."""
from __future__ import annotations

import dataclasses
import os
import pathlib
import sys
from typing import Final

import whenever
from loguru import logger

DEFAULT_URL: Final = "wss://ws.derivws.com/websockets/v3"
DEFAULT_APP_ID: Final = "1089"


def _envFloat(name: str, default: float | None) -> float | None:
    val = os.getenv(name)
    if val is None or val == "":
        return default

    return float(val)


@dataclasses.dataclass
class StreamConfig:
    """Connection settings shared by every session built from this config.

    All fields default from BROKERSTREAM_* environment variables so one
    deployment can retarget the endpoint without code changes.
    """

    url: str = dataclasses.field(
        default_factory=lambda: os.getenv("BROKERSTREAM_URL", DEFAULT_URL)
    )
    appId: str = dataclasses.field(
        default_factory=lambda: os.getenv("BROKERSTREAM_APP_ID", DEFAULT_APP_ID)
    )

    # fixed delay between a drop and the next connect attempt
    reconnectDelay: float = dataclasses.field(
        default_factory=lambda: _envFloat("BROKERSTREAM_RECONNECT_DELAY", 3.0)
    )

    # 1.0 keeps the delay fixed; >1.0 grows it per failed attempt up to reconnectDelayMax
    reconnectBackoff: float = 1.0
    reconnectDelayMax: float = 60.0

    # None means retry forever
    reconnectAttemptsMax: int | None = None

    # None means a request without a reply waits until the connection drops
    requestTimeout: float | None = dataclasses.field(
        default_factory=lambda: _envFloat("BROKERSTREAM_REQUEST_TIMEOUT", None)
    )

    # websocket keepalive
    pingInterval: float | None = 20
    pingTimeout: float | None = 20
    openTimeout: float = 10
    closeTimeout: float = 2

    def __post_init__(self) -> None:
        assert self.reconnectDelay >= 0
        assert self.reconnectBackoff >= 1.0

    @property
    def endpoint(self) -> str:
        """Full websocket URL including the application id."""
        if not self.appId:
            return self.url

        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}app_id={self.appId}"

    def delayForAttempt(self, attempt: int) -> float:
        """Seconds to wait before reconnect attempt number ``attempt`` (1-based)."""
        delay = self.reconnectDelay * self.reconnectBackoff ** max(attempt - 1, 0)
        return min(delay, max(self.reconnectDelayMax, self.reconnectDelay))


def setupLogging(level: str | None = None, logdir: str | None = None) -> str:
    """Replace the default loguru sink with a console sink plus full TRACE file logs.

    Returns the log file prefix used for this run.
    """
    now = whenever.ZonedDateTime.now("UTC")
    LOGDIR = (
        pathlib.Path(logdir or os.getenv("BROKERSTREAM_LOGDIR", "runlogs"))
        / f"{now.year}"
        / f"{now.month:02}"
    )
    LOGDIR.mkdir(exist_ok=True, parents=True)
    LOG_FILE_TEMPLATE = str(
        LOGDIR / f"brokerstream-pid={os.getpid()}-{now.py_datetime():%Y%m%d-%H%M%S}"
    )

    logger.remove()
    logger.add(
        sys.stderr,
        colorize=True,
        level=level or os.getenv("BROKERSTREAM_LOGLEVEL", "INFO"),
    )

    # frames are logged at TRACE, so only the files see them
    logger.add(sink=LOG_FILE_TEMPLATE + "-stream.log", level="TRACE", colorize=False)

    logger.info("Logging session with prefix: {}", LOG_FILE_TEMPLATE)

    return LOG_FILE_TEMPLATE

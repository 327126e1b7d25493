import logging
import os
from enum import Enum
from typing import Callable, Optional

logging.basicConfig(level=logging.INFO)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logger = logging.getLogger("mcplink")

if LOG_LEVEL in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    logger.setLevel(LOG_LEVEL)

# aiohttp is chatty at DEBUG; keep its access logs out of client output
aiohttp_logger = logging.getLogger("aiohttp")
aiohttp_logger.setLevel(logging.WARNING)
httpx_logger = logging.getLogger("httpx")
httpx_logger.setLevel(logging.WARNING)


class ClientLogLevel(str, Enum):
    """Levels understood by a client log sink."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


ClientLogSink = Callable[[str, ClientLogLevel], None]

_LEVEL_MAP = {
    ClientLogLevel.DEBUG: logging.DEBUG,
    ClientLogLevel.INFO: logging.INFO,
    ClientLogLevel.WARN: logging.WARNING,
    ClientLogLevel.ERROR: logging.ERROR,
}


def safe_log(
    sink: Optional[ClientLogSink],
    message: str,
    level: ClientLogLevel = ClientLogLevel.INFO,
    fallback: Optional[logging.Logger] = None,
) -> None:
    """Send a message to a client log sink without ever raising.

    The message always goes to ``fallback`` (or the package logger) as well,
    so diagnostics survive even when no sink is attached.
    """
    (fallback or logger).log(_LEVEL_MAP.get(level, logging.INFO), message)
    if sink is None:
        return
    try:
        sink(message, level)
    except Exception as e:
        logger.debug(f"Client log sink failed: {e}")
